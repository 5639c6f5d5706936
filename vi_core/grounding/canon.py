"""Canon store and resolver.

Canon is the authoritative lore the agent must not contradict: typed
entities with aliases, facts with verification status, priority-ordered
rules and the sources they cite. CanonResolver answers "what does canon
say about this text"; the stores only hold data.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Protocol

from sqlalchemy import select

from vi_core.errors import CanonNotFoundError
from vi_core.grounding.schemas import (
    CanonEntity,
    CanonFact,
    CanonResolution,
    CanonSource,
    EntityType,
    VerificationStatus,
    VerseRule,
)
from vi_core.storage.database import Database
from vi_core.storage.models import CanonEntityRow, CanonFactRow, CanonRuleRow, CanonSourceRow

logger = logging.getLogger(__name__)

RESOLUTION_CONFIDENCE_CAP = 0.95

LORE_KEYWORDS = (
    "astralis",
    "codex",
    "movado",
    "azula",
    "akima",
    "verse",
    "lore",
    "canon",
    "timeline",
    "sovereign",
    "character_sheet",
)

_WHO_IS = re.compile(r"who is [A-Z][a-z]+")
_TELL_ME_ABOUT = re.compile(r"tell me about [A-Z][a-z]+")


class CanonStore(Protocol):
    async def list_entities(self) -> list[CanonEntity]: ...

    async def get_entity(self, entity_id: str) -> CanonEntity | None: ...

    async def facts_for(self, entity_id: str) -> list[CanonFact]: ...

    async def rules_for(self, entity_id: str) -> list[VerseRule]: ...

    async def get_source(self, source_id: str) -> CanonSource | None: ...


@dataclass
class CanonSeed:
    entities: list[CanonEntity] = field(default_factory=list)
    facts: list[CanonFact] = field(default_factory=list)
    rules: list[VerseRule] = field(default_factory=list)
    sources: list[CanonSource] = field(default_factory=list)


def sample_canon() -> CanonSeed:
    """Astralis sample canon used by tests and the default wiring."""
    entities = [
        CanonEntity(
            id="movado_character",
            name="Movado",
            entity_type=EntityType.CHARACTER,
            aliases=["The Adversary", "Time Breaker"],
            description="Primary antagonist. Master of temporal manipulation.",
            attributes={"age": "unknown", "origin": "astralis", "primary_goal": "temporal_domination"},
        ),
        CanonEntity(
            id="azula_character",
            name="Azula",
            entity_type=EntityType.CHARACTER,
            aliases=["Timeline Guardian"],
            description="Sovereign of the Astralis verse. Guardian of the Timeline.",
            attributes={"age": "immortal", "origin": "astralis_native", "primary_goal": "maintain_timeline"},
        ),
        CanonEntity(
            id="akima_character",
            name="Akima",
            entity_type=EntityType.CHARACTER,
            aliases=["Bridge-walker", "Reality Shifter"],
            description="Bridge-walker. Moves between realities.",
            attributes={"age": "variable", "origin": "astralis", "primary_goal": "maintain_bridges"},
        ),
        CanonEntity(
            id="astralis_location",
            name="Astralis",
            entity_type=EntityType.LOCATION,
            aliases=["Pocket Dimension"],
            description="The Verse. A pocket dimension holding multiple timelines.",
            attributes={"dimension_type": "pocket", "timeline_count": "multiple", "stability": "contested"},
        ),
        CanonEntity(
            id="codex_artifact",
            name="Codex",
            entity_type=EntityType.ARTIFACT,
            aliases=["Astralis Codex", "The Codex", "Living Record"],
            description="The living record of Astralis canon. Repository of all verified lore.",
            attributes={"type": "living_document", "authority": "absolute", "accessibility": "restricted"},
        ),
    ]
    facts = [
        CanonFact(
            id="fact_movado_origin",
            subject_id="movado_character",
            predicate="origin",
            value="Outside Astralis, invaded during Timeline Fracture",
            confidence=0.95,
            source_id="codex_movado",
        ),
        CanonFact(
            id="fact_azula_role",
            subject_id="azula_character",
            predicate="role",
            value="Timeline Guardian and Sovereign of Astralis",
            confidence=0.99,
            source_id="codex_azula",
        ),
        CanonFact(
            id="fact_azula_age",
            subject_id="azula_character",
            predicate="age",
            value="Immortal, predates current timeline",
            confidence=0.8,
            source_id="codex_azula",
            verification_status=VerificationStatus.EXTENDED_CANON,
        ),
        CanonFact(
            id="fact_akima_ability",
            subject_id="akima_character",
            predicate="unique_ability",
            value="Can traverse between Astralis and external dimensions",
            confidence=0.9,
            source_id="codex_akima",
            verification_status=VerificationStatus.EXTENDED_CANON,
        ),
        CanonFact(
            id="fact_astralis_nature",
            subject_id="astralis_location",
            predicate="nature",
            value="Pocket dimension containing multiple branching timelines",
            confidence=0.99,
            source_id="codex_laws",
        ),
        CanonFact(
            id="fact_astralis_timeline_count",
            subject_id="astralis_location",
            predicate="timeline_count",
            value="Multiple contested timelines, number unstable",
            confidence=0.6,
            source_id="codex_laws",
            verification_status=VerificationStatus.UNCERTAIN,
        ),
        CanonFact(
            id="fact_codex_purpose",
            subject_id="codex_artifact",
            predicate="purpose",
            value="Authoritative repository of all Astralis canon, verse rules, and verified facts",
            confidence=1.0,
            source_id="codex_meta",
        ),
    ]
    rules = [
        VerseRule(
            id="rule_timeline_inviolate",
            title="The Timeline Is Inviolate",
            description="The primary timeline cannot be altered without consensus",
            text="Primary timeline exists in locked state. All changes require Sovereign approval.",
            applies_to=["azula_character", "astralis_location"],
            priority=100,
            source_id="codex_laws",
        ),
        VerseRule(
            id="rule_invaders_contained",
            title="Invaders Are Contained",
            description="External entities cannot leave Astralis without Sovereign approval",
            text="All non-native entities attempting to exit face Sovereign judgment.",
            applies_to=["movado_character", "astralis_location"],
            priority=95,
            source_id="codex_laws",
        ),
    ]
    sources = [
        CanonSource(
            id="codex_movado",
            title="The Invader: Movado Chronicles",
            source_type="codex_entry",
            content="Movado arrived during the Timeline Fracture event...",
            authority_level=95,
        ),
        CanonSource(
            id="codex_azula",
            title="Azula: Sovereign of Time",
            source_type="character_sheet",
            content="Azula has governed Astralis since its inception...",
            authority_level=99,
        ),
        CanonSource(
            id="codex_akima",
            title="Akima: Walker of Bridges",
            source_type="character_sheet",
            content="Akima keeps the bridges between realities open...",
            authority_level=90,
        ),
        CanonSource(
            id="codex_laws",
            title="Verse Laws and Governance",
            source_type="codex_entry",
            content="The following laws govern interaction within Astralis...",
            authority_level=98,
        ),
        CanonSource(
            id="codex_meta",
            title="The Codex: About the Repository",
            source_type="codex_entry",
            content="The Codex is the canonical source for all Astralis lore...",
            authority_level=100,
        ),
    ]
    return CanonSeed(entities=entities, facts=facts, rules=rules, sources=sources)


class InMemoryCanonStore:
    def __init__(self, seed: CanonSeed | None = None) -> None:
        self._entities: dict[str, CanonEntity] = {}
        self._facts: dict[str, list[CanonFact]] = {}
        self._rules: dict[str, list[VerseRule]] = {}
        self._sources: dict[str, CanonSource] = {}
        if seed is not None:
            self.load(seed)

    def load(self, seed: CanonSeed) -> None:
        for entity in seed.entities:
            self._entities[entity.id] = entity
        for fact in seed.facts:
            self._facts.setdefault(fact.subject_id, []).append(fact)
        for rule in seed.rules:
            # a rule is visible from every entity it applies to
            for entity_id in rule.applies_to:
                self._rules.setdefault(entity_id, []).append(rule)
        for source in seed.sources:
            self._sources[source.id] = source

    async def list_entities(self) -> list[CanonEntity]:
        return list(self._entities.values())

    async def get_entity(self, entity_id: str) -> CanonEntity | None:
        return self._entities.get(entity_id)

    async def facts_for(self, entity_id: str) -> list[CanonFact]:
        return list(self._facts.get(entity_id, []))

    async def rules_for(self, entity_id: str) -> list[VerseRule]:
        return list(self._rules.get(entity_id, []))

    async def get_source(self, source_id: str) -> CanonSource | None:
        return self._sources.get(source_id)


class SqlCanonStore:
    """Canon backed by the vi_canon schema."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def list_entities(self) -> list[CanonEntity]:
        async with self.db.session() as session:
            result = await session.execute(select(CanonEntityRow).order_by(CanonEntityRow.id))
            return [self._entity(r) for r in result.scalars().all()]

    async def get_entity(self, entity_id: str) -> CanonEntity | None:
        async with self.db.session() as session:
            row = await session.get(CanonEntityRow, entity_id)
            return self._entity(row) if row else None

    async def facts_for(self, entity_id: str) -> list[CanonFact]:
        async with self.db.session() as session:
            result = await session.execute(
                select(CanonFactRow).where(CanonFactRow.subject_id == entity_id).order_by(CanonFactRow.id)
            )
            return [
                CanonFact(
                    id=r.id,
                    subject_id=r.subject_id,
                    predicate=r.predicate,
                    value=r.value,
                    object_id=r.object_id,
                    confidence=r.confidence,
                    source_id=r.source_id,
                    verification_status=VerificationStatus(r.verification_status),
                    contradictions=list(r.contradictions or []),
                )
                for r in result.scalars().all()
            ]

    async def rules_for(self, entity_id: str) -> list[VerseRule]:
        async with self.db.session() as session:
            result = await session.execute(
                select(CanonRuleRow).where(CanonRuleRow.applies_to.any(entity_id))
            )
            return [
                VerseRule(
                    id=r.id,
                    title=r.title,
                    description=r.description or "",
                    text=r.rule_text,
                    applies_to=list(r.applies_to or []),
                    priority=r.priority,
                    source_id=r.source_id,
                )
                for r in result.scalars().all()
            ]

    async def get_source(self, source_id: str) -> CanonSource | None:
        async with self.db.session() as session:
            row = await session.get(CanonSourceRow, source_id)
            if row is None:
                return None
            return CanonSource(
                id=row.id,
                title=row.title,
                source_type=row.source_type,
                content=row.content or "",
                authority_level=row.authority_level,
            )

    async def load(self, seed: CanonSeed) -> None:
        """Upsert a canon seed (sources first so fact/rule FKs resolve)."""
        async with self.db.session() as session:
            for s in seed.sources:
                await session.merge(
                    CanonSourceRow(
                        id=s.id,
                        title=s.title,
                        source_type=s.source_type,
                        content=s.content,
                        authority_level=s.authority_level,
                    )
                )
            for e in seed.entities:
                await session.merge(
                    CanonEntityRow(
                        id=e.id,
                        name=e.name,
                        aliases=e.aliases,
                        description=e.description,
                        entity_type=e.entity_type.value,
                        attributes=e.attributes,
                    )
                )
            await session.flush()
            for f in seed.facts:
                await session.merge(
                    CanonFactRow(
                        id=f.id,
                        subject_id=f.subject_id,
                        predicate=f.predicate,
                        object_id=f.object_id,
                        value=f.value,
                        confidence=f.confidence,
                        source_id=f.source_id,
                        verification_status=f.verification_status.value,
                        contradictions=f.contradictions,
                    )
                )
            for r in seed.rules:
                await session.merge(
                    CanonRuleRow(
                        id=r.id,
                        title=r.title,
                        description=r.description,
                        rule_text=r.text,
                        applies_to=r.applies_to,
                        priority=r.priority,
                        source_id=r.source_id,
                    )
                )
            await session.commit()

    @staticmethod
    def _entity(row: CanonEntityRow) -> CanonEntity:
        return CanonEntity(
            id=row.id,
            name=row.name,
            entity_type=EntityType(row.entity_type),
            description=row.description or "",
            aliases=list(row.aliases or []),
            attributes=row.attributes or {},
        )


class CanonResolver:
    """Resolve free text against canon.

    Entities match when their name or any alias appears in the query
    (case-insensitive substring). Facts, rules and source citations are
    collected for every matched entity.
    """

    def __init__(self, store: CanonStore, uncertainty_threshold: float = 0.7) -> None:
        self.store = store
        self.uncertainty_threshold = uncertainty_threshold

    async def find_entities(self, text: str) -> list[CanonEntity]:
        lowered = text.lower()
        matches = []
        for entity in await self.store.list_entities():
            names = [entity.name, *entity.aliases]
            if any(name.lower() in lowered for name in names if name):
                matches.append(entity)
        return matches

    async def resolve_canon(
        self, query: str, *, entity_id: str | None = None, strict: bool = False
    ) -> CanonResolution:
        """Resolve a query to canon.

        Raises CanonNotFoundError when nothing matches and strict is set;
        otherwise an empty resolution carries an uncertainty note.
        """
        if entity_id is not None:
            entity = await self.store.get_entity(entity_id)
            entities = [entity] if entity else []
        else:
            entities = await self.find_entities(query)

        if not entities:
            if strict:
                raise CanonNotFoundError(query)
            return CanonResolution(
                confidence=0.0,
                uncertainties=[
                    f'Entity not found in canon: "{query}". '
                    "This information is unavailable or external to the verse."
                ],
                warnings=["Query did not match any known canon entities"],
            )

        facts: list[CanonFact] = []
        rules: dict[str, VerseRule] = {}
        citations: dict[str, CanonSource] = {}
        uncertainties: list[str] = []
        warnings: list[str] = []

        for entity in entities:
            entity_facts = await self.store.facts_for(entity.id)
            facts.extend(entity_facts)
            for rule in await self.store.rules_for(entity.id):
                rules.setdefault(rule.id, rule)

            for fact in entity_facts:
                if fact.source_id and fact.source_id not in citations:
                    source = await self.store.get_source(fact.source_id)
                    if source is not None:
                        citations[source.id] = source
                if fact.contradictions:
                    warnings.append(f"Contradiction detected on fact {fact.id}: conflicting information exists")
                if (
                    fact.verification_status in (VerificationStatus.UNCERTAIN, VerificationStatus.DISPUTED)
                    or fact.confidence < self.uncertainty_threshold
                ):
                    uncertainties.append(f"Uncertain: {fact.predicate} (confidence: {fact.confidence})")

        confidence = sum(f.confidence for f in facts) / len(facts) if facts else 0.0

        return CanonResolution(
            entities=entities,
            facts=facts,
            rules=sorted(rules.values(), key=lambda r: r.priority, reverse=True),
            citations=list(citations.values()),
            confidence=min(confidence, RESOLUTION_CONFIDENCE_CAP),
            uncertainties=uncertainties,
            warnings=warnings,
        )

    async def try_resolve(self, query: str) -> CanonResolution | None:
        """Non-raising resolve for callers that degrade on failure."""
        try:
            return await self.resolve_canon(query)
        except Exception:
            logger.warning("Canon resolution failed for query %r", query[:80])
            return None

    @staticmethod
    def is_lore_query(message: str) -> bool:
        lowered = message.lower()
        if any(keyword in lowered for keyword in LORE_KEYWORDS):
            return True
        # proper noun right after the phrase, e.g. "who is Movado"
        return bool(_WHO_IS.search(message) or _TELL_ME_ABOUT.search(message))

    @staticmethod
    def format_citations(sources: list[CanonSource]) -> str:
        if not sources:
            return ""
        lines = [f"[{s.id}] {s.title} (Authority: {s.authority_level}/100)" for s in sources]
        return "\n\n**Canon Sources:**\n" + "\n".join(lines)

    @staticmethod
    def format_warnings(warnings: list[str]) -> str:
        if not warnings:
            return ""
        return "\n\n⚠️ **Canon Notes:**\n" + "\n".join(f"- {w}" for w in warnings)

    @staticmethod
    def format_uncertainties(uncertainties: list[str]) -> str:
        if not uncertainties:
            return ""
        return "\n\n❓ **Uncertain Information:**\n" + "\n".join(f"- {u}" for u in uncertainties)
