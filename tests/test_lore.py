"""Tests for the lore-mode gate and canon context injection."""

from vi_core.grounding.lore import LoreModeEngine
from vi_core.grounding.schemas import CanonResolution, LoreModeContext

# ---------------------------------------------------------------------------
# determine_lore_mode()
# ---------------------------------------------------------------------------


async def test_auto_detect_keywords_and_entity(lore):
    context = await lore.determine_lore_mode("u1", "Who is Movado in the verse?")
    assert context.enabled
    assert not context.locked
    assert context.detected_entities == ["movado_character"]
    assert context.reason == "Auto-detected: lore keywords + canon entities found"


async def test_unrelated_message_stays_off(lore):
    context = await lore.determine_lore_mode("u1", "What should I cook tonight?")
    assert not context.enabled
    assert context.resolution is None


async def test_keywords_without_entities_respect_user_default(canon):
    engine = LoreModeEngine(canon)
    off = await engine.determine_lore_mode("u1", "Tell me some lore")
    assert not off.enabled

    engine.set_user_preference("u1", True)
    on = await engine.determine_lore_mode("u1", "Tell me some lore")
    assert on.enabled
    assert on.reason == "User default: lore mode enabled"


async def test_user_default_never_applies_without_keywords(canon):
    engine = LoreModeEngine(canon, user_default=True)
    context = await engine.determine_lore_mode("u1", "What should I cook tonight?")
    assert not context.enabled


async def test_explicit_command_locks_session(lore):
    forced = await lore.determine_lore_mode("u1", "lore mode please", session_id="s1")
    assert forced.enabled and forced.locked

    # later unrelated message stays in lore mode for that session
    follow_up = await lore.determine_lore_mode("u1", "What should I cook tonight?", session_id="s1")
    assert follow_up.enabled
    assert follow_up.reason == "Session locked: lore mode enabled"

    # other sessions are unaffected
    other = await lore.determine_lore_mode("u1", "What should I cook tonight?", session_id="s2")
    assert not other.enabled


async def test_opt_out_beats_opt_in_phrase(lore):
    context = await lore.determine_lore_mode("u1", "disable lore mode", session_id="s1")
    assert not context.enabled
    assert lore.session_lock("s1") is False

    still_off = await lore.determine_lore_mode("u1", "Who is Movado in the verse?", session_id="s1")
    assert not still_off.enabled

    lore.unlock_session("s1")
    back = await lore.determine_lore_mode("u1", "Who is Movado in the verse?", session_id="s1")
    assert back.enabled


async def test_explicit_command_without_session_is_not_locked(lore):
    context = await lore.determine_lore_mode("u1", "enable lore")
    assert context.enabled
    assert not context.locked


# ---------------------------------------------------------------------------
# inject_canon_context()
# ---------------------------------------------------------------------------


async def test_inject_canon_context_block(lore):
    context, text = await lore.inject_canon_context("u1", "Tell me about Azula of Astralis")
    assert context.enabled
    assert text.startswith("**VERSE CONTEXT - ASTRALIS CANON:**")
    assert "- **Azula** (character)" in text
    assert "✓ role: Timeline Guardian and Sovereign of Astralis" in text
    assert "◆ age: Immortal, predates current timeline" in text
    assert "**The Timeline Is Inviolate**" in text
    assert "[codex_azula] Azula: Sovereign of Time (Authority: 99/100)" in text
    assert "Uncertain: timeline_count" in text


async def test_inject_nothing_when_off(lore):
    context, text = await lore.inject_canon_context("u1", "What should I cook tonight?")
    assert not context.enabled
    assert text == ""


# ---------------------------------------------------------------------------
# Response checks
# ---------------------------------------------------------------------------


async def test_contradiction_flagged_when_fact_missing(lore):
    report = await lore.detect_canon_contradictions(
        "Where does Movado come from?", "Movado was born in a quiet village."
    )
    assert report.severity == "warning"
    assert "origin" in report.contradictions[0]


async def test_no_contradiction_when_fact_present(lore):
    report = await lore.detect_canon_contradictions(
        "Where does Movado come from?",
        "Canon says: outside astralis, invaded during timeline fracture.",
    )
    assert report.contradictions == []


async def test_hedged_response_not_flagged(lore):
    report = await lore.detect_canon_contradictions("Where does Movado come from?", "I don't know that yet.")
    assert report.contradictions == []


def test_format_canon_response_notes():
    low = LoreModeContext(enabled=True, resolution=CanonResolution(confidence=0.2))
    assert "Limited canon information" in LoreModeEngine.format_canon_response("Answer.", low)

    uncertain = LoreModeContext(enabled=True, resolution=CanonResolution(confidence=0.9, uncertainties=["x"]))
    assert "uncertain or disputed" in LoreModeEngine.format_canon_response("Answer.", uncertain)

    off = LoreModeContext(enabled=False)
    assert LoreModeEngine.format_canon_response("Answer.", off) == "Answer."
