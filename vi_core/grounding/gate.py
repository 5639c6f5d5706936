"""Grounding gate: back the claims of a generated response with citations.

Claims are sentence-level. Each claim is resolved canon first, then user
memory, then memories the caller already hydrated into context. The gate
never blocks a response; callers use annotate() to append a note when a
response is uncertain or partly ungrounded.
"""

from __future__ import annotations

import logging
import re

from vi_core.grounding.canon import CanonResolver
from vi_core.grounding.schemas import (
    Citation,
    CitationSourceType,
    Claim,
    ClaimType,
    GroundingCheck,
    GroundingRequirements,
    GroundingStatus,
    Recommendation,
)
from vi_core.memory.engine import MemoryEngine
from vi_core.utils import truncate

logger = logging.getLogger(__name__)

CANON_CITATION_CONFIDENCE = 0.95
CONTEXT_MEMORY_CONFIDENCE = 0.75
MIN_CLAIM_LENGTH = 10
# confidence reported when validation itself errors out
FAILED_VALIDATION_CONFIDENCE = 0.5
FAILED_VALIDATION_MARKER = "Grounding validation failed"
UNCERTAIN_BELOW = 0.7

_SENTENCE_SPLIT = re.compile(r"[^.!?]+")
_ENTITY_REF = re.compile(r"\b[A-Z][a-zA-Z]*\b")

# (predicate on lowered claim text, claim type), checked in order
_CLAIM_RULES: list[tuple[re.Pattern[str], ClaimType]] = [
    (re.compile(r"\?|i don't know|unknown"), "uncertainty"),
    (re.compile(r"^(to|don't|can't|should|must)"), "directive"),
    (re.compile(r"^how to|steps|process"), "procedural"),
]


class MemoryResolver:
    """Look up user memories that support a claim."""

    def __init__(self, memory: MemoryEngine, min_relevance: float = 0.6, max_results: int = 3) -> None:
        self.memory = memory
        self.min_relevance = min_relevance
        self.max_results = max_results

    async def resolve(self, user_id: str, text: str) -> list[Citation]:
        try:
            hits = await self.memory.retrieve_relevant(text, user_id, limit=self.max_results, mark_accessed=False)
        except Exception:
            logger.warning("Memory grounding lookup failed for user %s", user_id)
            return []
        return [
            Citation(
                id=f"memory-{hit.record.id}",
                source_type=CitationSourceType.MEMORY,
                source_id=str(hit.record.id),
                source_text=hit.record.text,
                confidence=min(1.0, hit.score),
                timestamp=hit.record.created_at,
                metadata={"dimension": hit.record.dimension.value},
            )
            for hit in hits
            if hit.score >= self.min_relevance
        ]


def classify_claim(text: str) -> ClaimType:
    lowered = text.lower()
    for pattern, claim_type in _CLAIM_RULES:
        if pattern.search(lowered):
            return claim_type
    return "factual"


def extract_claims(text: str) -> list[Claim]:
    claims: list[Claim] = []
    for match in _SENTENCE_SPLIT.finditer(text):
        sentence = match.group().strip()
        if len(sentence) < MIN_CLAIM_LENGTH:
            continue
        claims.append(
            Claim(
                id=f"claim-{len(claims)}",
                text=sentence,
                start=match.start(),
                end=match.end(),
                claim_type=classify_claim(sentence),
                entities=list(dict.fromkeys(_ENTITY_REF.findall(sentence))),
            )
        )
    return claims


def dedupe_citations(citations: list[Citation]) -> list[Citation]:
    seen: set[str] = set()
    unique = []
    for c in citations:
        key = f"{c.source_type}:{c.source_id}"
        if key not in seen:
            seen.add(key)
            unique.append(c)
    return unique


class GroundingGate:
    def __init__(
        self,
        canon: CanonResolver,
        memory: MemoryResolver | None = None,
        requirements: GroundingRequirements | None = None,
    ) -> None:
        self.canon = canon
        self.memory = memory
        self.requirements = requirements or GroundingRequirements()

    async def validate_response(
        self,
        response: str,
        user_id: str | None = None,
        context_memories: dict[str, str] | None = None,
        requirements: GroundingRequirements | None = None,
    ) -> GroundingCheck:
        reqs = requirements or self.requirements
        try:
            return await self._validate(response, user_id, context_memories or {}, reqs)
        except Exception:
            logger.warning("Grounding validation failed; degrading confidence", exc_info=True)
            return GroundingCheck(
                passed=True,
                confidence=FAILED_VALIDATION_CONFIDENCE,
                missing_grounding=[FAILED_VALIDATION_MARKER],
                recommendation="warn",
                reason="Grounding validation encountered an error",
                status="uncertain",
            )

    async def _validate(
        self,
        response: str,
        user_id: str | None,
        context_memories: dict[str, str],
        reqs: GroundingRequirements,
    ) -> GroundingCheck:
        claims = extract_claims(response)
        citations: list[Citation] = []
        ungrounded: list[Claim] = []
        total = 0.0

        for claim in claims:
            found = await self.find_sources(claim, user_id, context_memories)
            if found:
                citations.extend(found)
                total += sum(c.confidence for c in found) / len(found)
            elif claim.claim_type == "uncertainty":
                total += 1.0
            else:
                ungrounded.append(claim)

        confidence = total / len(claims) if claims else 1.0
        recommendation = self._recommend(reqs, ungrounded, confidence)
        return GroundingCheck(
            passed=recommendation != "block",
            citations=dedupe_citations(citations),
            confidence=confidence,
            missing_grounding=[c.text for c in ungrounded],
            ungrounded_claims=ungrounded,
            recommendation=recommendation,
            reason=self._reason(recommendation, ungrounded, confidence),
            status=self._status(recommendation, ungrounded, confidence),
        )

    async def find_sources(
        self, claim: Claim, user_id: str | None, context_memories: dict[str, str]
    ) -> list[Citation]:
        entities = await self.canon.find_entities(claim.text)
        if entities:
            return [
                Citation(
                    id=f"canon-{e.id}",
                    source_type=CitationSourceType.CANON_ENTITY,
                    source_id=e.id,
                    source_text=e.description,
                    confidence=CANON_CITATION_CONFIDENCE,
                )
                for e in entities
            ]

        if self.memory is not None and user_id:
            found = await self.memory.resolve(user_id, claim.text)
            if found:
                return found

        return [
            Citation(
                id=f"context-{name}",
                source_type=CitationSourceType.MEMORY,
                source_id=name,
                source_text=context_memories[name],
                confidence=CONTEXT_MEMORY_CONFIDENCE,
            )
            for name in claim.entities
            if name in context_memories
        ]

    @staticmethod
    def _recommend(reqs: GroundingRequirements, ungrounded: list[Claim], confidence: float) -> Recommendation:
        if reqs.require_citations and len(ungrounded) > reqs.max_ungrounded_claims:
            return "block"
        if confidence < reqs.min_confidence:
            return "warn"
        if ungrounded and reqs.max_ungrounded_claims == 0:
            return "ask_user"
        return "allow"

    @staticmethod
    def _reason(recommendation: Recommendation, ungrounded: list[Claim], confidence: float) -> str:
        if recommendation == "block":
            return f"Too many ungrounded claims ({len(ungrounded)})"
        if recommendation == "warn":
            return f"Low confidence ({confidence * 100:.1f}%)"
        if recommendation == "ask_user":
            return f"Contains {len(ungrounded)} ungrounded claim(s)"
        return "Response is grounded"

    @staticmethod
    def _status(recommendation: Recommendation, ungrounded: list[Claim], confidence: float) -> GroundingStatus:
        if recommendation == "block":
            return "blocked"
        if confidence < UNCERTAIN_BELOW:
            return "uncertain"
        if ungrounded:
            return "ungrounded"
        return "grounded"

    @staticmethod
    def annotate(response: str, check: GroundingCheck) -> str:
        """Append an uncertainty or warning note; the response itself is kept."""
        if check.status == "grounded":
            return response
        if check.status == "uncertain":
            return (
                f"{response}\n\n_Note: I'm not fully certain about parts of this answer "
                f"(confidence {check.confidence:.0%})._"
            )
        n = len(check.ungrounded_claims)
        first = truncate(check.ungrounded_claims[0].text, 60) if n else ""
        return f'{response}\n\n_Note: {n} statement(s) could not be verified against canon or memory, e.g. "{first}"._'
