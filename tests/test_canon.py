"""Tests for CanonResolver against the sample Astralis canon."""

import pytest

from vi_core.errors import CanonNotFoundError
from vi_core.grounding.canon import CanonResolver, CanonSeed, InMemoryCanonStore
from vi_core.grounding.schemas import CanonEntity, CanonFact, EntityType, VerificationStatus


async def test_resolve_by_name(canon):
    resolution = await canon.resolve_canon("What is Movado's origin?")
    assert [e.id for e in resolution.entities] == ["movado_character"]
    assert [f.id for f in resolution.facts] == ["fact_movado_origin"]
    assert [r.id for r in resolution.rules] == ["rule_invaders_contained"]
    assert [s.id for s in resolution.citations] == ["codex_movado"]
    assert resolution.confidence == pytest.approx(0.95)
    assert resolution.uncertainties == []


async def test_resolve_by_alias_case_insensitive(canon):
    resolution = await canon.resolve_canon("tell me about the time breaker")
    assert [e.id for e in resolution.entities] == ["movado_character"]


async def test_uncertain_facts_reported(canon):
    resolution = await canon.resolve_canon("How many timelines does Astralis hold?")
    assert "Uncertain: timeline_count (confidence: 0.6)" in resolution.uncertainties
    # rules come back highest priority first and deduplicated
    priorities = [r.priority for r in resolution.rules]
    assert priorities == sorted(priorities, reverse=True)
    assert len({r.id for r in resolution.rules}) == len(resolution.rules)


async def test_multiple_entities_merge(canon):
    resolution = await canon.resolve_canon("Azula and Movado")
    ids = {e.id for e in resolution.entities}
    assert ids == {"azula_character", "movado_character"}
    assert resolution.rules[0].id == "rule_timeline_inviolate"
    assert resolution.confidence <= 0.95


async def test_miss_returns_uncertainty(canon):
    resolution = await canon.resolve_canon("Who is Gandalf?")
    assert resolution.entities == []
    assert resolution.confidence == 0.0
    assert "Entity not found in canon" in resolution.uncertainties[0]


async def test_strict_miss_raises(canon):
    with pytest.raises(CanonNotFoundError) as exc:
        await canon.resolve_canon("Who is Gandalf?", strict=True)
    assert exc.value.query == "Who is Gandalf?"


async def test_resolve_by_entity_id(canon):
    resolution = await canon.resolve_canon("ignored text", entity_id="codex_artifact")
    assert [e.name for e in resolution.entities] == ["Codex"]


async def test_contradiction_warning():
    seed = CanonSeed(
        entities=[CanonEntity(id="x", name="Xander", entity_type=EntityType.CHARACTER)],
        facts=[
            CanonFact(
                id="fact_x_home",
                subject_id="x",
                predicate="home",
                value="North",
                confidence=0.9,
                verification_status=VerificationStatus.DISPUTED,
                contradictions=["fact_x_home_alt"],
            )
        ],
    )
    resolution = await CanonResolver(InMemoryCanonStore(seed)).resolve_canon("Xander")
    assert resolution.warnings == ["Contradiction detected on fact fact_x_home: conflicting information exists"]
    assert resolution.uncertainties == ["Uncertain: home (confidence: 0.9)"]


async def test_try_resolve_swallows_store_errors():
    class BrokenStore(InMemoryCanonStore):
        async def list_entities(self):
            raise RuntimeError("canon offline")

    assert await CanonResolver(BrokenStore()).try_resolve("Movado") is None


@pytest.mark.parametrize(
    "message, expected",
    [
        ("Tell me about the codex", True),
        ("who is Azula", True),
        ("tell me about Zed", True),
        ("what is the weather", False),
        ("who is someone", False),
    ],
)
def test_is_lore_query(message, expected):
    assert CanonResolver.is_lore_query(message) is expected
