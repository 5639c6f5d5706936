"""Tests for the self-model manager, enforcer and regenerator."""

import asyncio
import json

import pytest

from vi_core.cognition.gateway import StubGateway
from vi_core.identity.enforcer import count_name_usage, detect_tone
from vi_core.identity.manager import InMemorySelfModelRepository, SelfModelManager
from vi_core.identity.regenerator import SelfModelRegenerator, adjust_self_model
from vi_core.identity.schemas import DEFAULT_SELF_MODEL, SelfModel, ViolationReport


def _violation(severity: str = "high", **overrides) -> ViolationReport:
    fields = dict(
        type="boundary",
        boundary="no-personal-info",
        severity=severity,
        confidence=0.7,
        expected_behavior="Avoid sharing personal biographical information",
        actual_behavior="Response contains personal info",
    )
    fields.update(overrides)
    return ViolationReport(**fields)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class TestManager:
    async def test_initialize_seeds_default(self):
        manager = SelfModelManager(InMemorySelfModelRepository())
        with pytest.raises(RuntimeError):
            manager.active
        active = await manager.initialize()
        assert active == DEFAULT_SELF_MODEL
        assert manager.active_version == "1.0.0"

    async def test_initialize_keeps_existing_active(self):
        repo = InMemorySelfModelRepository()
        await repo.upsert(DEFAULT_SELF_MODEL.model_copy(update={"version": "2.0.0"}))
        manager = SelfModelManager(repo)
        assert (await manager.initialize()).version == "2.0.0"

    async def test_activate_switches_version(self, self_models):
        await self_models.activate(DEFAULT_SELF_MODEL.model_copy(update={"version": "1.1.0"}))
        versions = {v.version: v.is_active for v in await self_models.list_versions()}
        assert versions == {"1.0.0": False, "1.1.0": True}

    def test_self_model_is_frozen(self):
        with pytest.raises(ValueError):
            DEFAULT_SELF_MODEL.tone = "warm"


# ---------------------------------------------------------------------------
# Enforcer
# ---------------------------------------------------------------------------


class TestAnalyze:
    def test_clean_response(self, enforcer):
        assert enforcer.analyze_response("Here is a summary of the options.", DEFAULT_SELF_MODEL) is None

    def test_personal_info_boundary(self, enforcer):
        violation = enforcer.analyze_response("I live in Lisbon, actually.", DEFAULT_SELF_MODEL)
        assert violation.type == "boundary"
        assert violation.boundary == "no-personal-info"
        assert violation.severity == "high"

    def test_disabled_boundary_not_enforced(self, enforcer):
        # no-advice is off in the default model
        assert enforcer.analyze_response("You should rest more.", DEFAULT_SELF_MODEL) is None
        strict = DEFAULT_SELF_MODEL.model_copy(update={"boundaries": {"no-advice": True}})
        assert enforcer.analyze_response("You should rest more.", strict).boundary == "no-advice"

    def test_deception_needs_user_trigger(self, enforcer):
        response = "I know for sure the bridge opens at nine."
        assert enforcer.analyze_response(response, DEFAULT_SELF_MODEL, user_message="When does it open") is None
        violation = enforcer.analyze_response(response, DEFAULT_SELF_MODEL, user_message="Are you sure?")
        assert violation.boundary == "no-deception"
        assert violation.severity == "medium"

    def test_stance_violation(self, enforcer):
        model = DEFAULT_SELF_MODEL.model_copy(update={"stances": {"default": "strategic"}})
        violation = enforcer.analyze_response("Check the function signature first.", model)
        assert violation.type == "stance"
        assert violation.severity == "low"

    def test_sparse_name_preference(self, enforcer):
        violation = enforcer.analyze_response("Sure.", DEFAULT_SELF_MODEL, name_usage_count=3)
        assert violation.type == "preference"
        assert violation.actual_behavior == "Name used 3 times in response"

    def test_tone_conflict(self, enforcer):
        model = DEFAULT_SELF_MODEL.model_copy(update={"tone": "direct"})
        violation = enforcer.analyze_response("Sorry, I made an error there.", model)
        assert violation.type == "tone"
        assert violation.actual_behavior == "Detected tone: apologetic"

    def test_boundary_checked_before_tone(self, enforcer):
        model = DEFAULT_SELF_MODEL.model_copy(update={"tone": "direct"})
        violation = enforcer.analyze_response("Sorry, I live in Lisbon.", model)
        assert violation.type == "boundary"

    @pytest.mark.parametrize(
        "response, tone",
        [
            ("Sorry about that.", "apologetic"),
            ("It might be raining.", "hedging"),
            ("Certainly, here it is.", "direct"),
            ("Happy to help with that.", "warm"),
            ("The build passed.", "neutral"),
        ],
    )
    def test_detect_tone(self, response, tone):
        assert detect_tone(response) == tone

    def test_count_name_usage(self):
        assert count_name_usage("Ana, see you. Bye ana!", "Ana") == 2
        assert count_name_usage("Banana split", "Ana") == 0
        assert count_name_usage("Hi", None) == 0


async def test_enforce_logs_violation(self_models, enforcer):
    await enforcer.enforce(_violation("low"), self_models.active)
    events = await self_models.list_events()
    assert [e.event_type for e in events] == ["violation_detected"]
    assert events[0].details["severity"] == "low"


# ---------------------------------------------------------------------------
# Regenerator
# ---------------------------------------------------------------------------


class TestRegenerator:
    async def test_three_high_violations_regenerate_once(self, self_models, regenerator):
        model = self_models.active
        assert await regenerator.record_violation(_violation(), model) is None
        assert await regenerator.record_violation(_violation(), model) is None
        regenerated = await regenerator.record_violation(_violation(), model)

        assert regenerated is not None
        assert self_models.active_version == regenerated.version
        assert regenerated.version.startswith("1.0.0-regen-")
        assert regenerated.boundaries["no-personal-info"] == "strict"
        counts = regenerator.counts_for(regenerated.version)
        assert (counts.high, counts.medium) == (0, 0)

        events = [e.event_type for e in await self_models.list_events()]
        assert events.count("regeneration_triggered") == 1
        assert events.count("regeneration_applied") == 1

    async def test_medium_threshold(self, self_models):
        regenerator = SelfModelRegenerator(self_models, medium_threshold=2)
        model = self_models.active
        assert await regenerator.record_violation(_violation("medium", type="tone", boundary=None), model) is None
        regenerated = await regenerator.record_violation(_violation("medium", type="tone", boundary=None), model)
        assert regenerated.tone == "neutral"

    async def test_low_severity_never_counts(self, self_models, regenerator):
        for _ in range(10):
            assert await regenerator.record_violation(_violation("low"), self_models.active) is None
        assert self_models.active_version == "1.0.0"

    async def test_concurrent_violations_single_regeneration(self, self_models, regenerator):
        model = self_models.active
        results = await asyncio.gather(*(regenerator.record_violation(_violation(), model) for _ in range(6)))
        assert sum(r is not None for r in results) == 1
        events = [e.event_type for e in await self_models.list_events()]
        assert events.count("regeneration_triggered") == 1

    async def test_window_expiry_resets_counts(self, self_models):
        regenerator = SelfModelRegenerator(self_models, window_seconds=0.01)
        model = self_models.active
        await regenerator.record_violation(_violation(), model)
        await regenerator.record_violation(_violation(), model)
        await asyncio.sleep(0.02)
        assert await regenerator.record_violation(_violation(), model) is None
        assert regenerator.counts_for(model.version).high == 1

    async def test_llm_refinement_applied(self, self_models):
        refined_json = json.dumps({"version": "2.0.0", "tone": "warm"})
        regenerator = SelfModelRegenerator(
            self_models, gateway=StubGateway(completion=refined_json), high_threshold=1, llm_refinement=True
        )
        regenerated = await regenerator.record_violation(_violation(), self_models.active)
        assert regenerated.version == "2.0.0"
        assert regenerated.tone == "warm"
        assert regenerated.boundaries["no-personal-info"] == "strict"

    async def test_llm_refinement_garbage_falls_back(self, self_models):
        regenerator = SelfModelRegenerator(
            self_models, gateway=StubGateway(completion="not json"), high_threshold=1, llm_refinement=True
        )
        regenerated = await regenerator.record_violation(_violation(), self_models.active)
        assert regenerated.version.startswith("1.0.0-regen-")

    def test_adjust_stance_flips(self):
        model = SelfModel(version="1", stances={"default": "strategic"})
        violation = _violation("low", type="stance", boundary=None, stance="strategic")
        assert adjust_self_model(model, violation).stances["default"] == "technical"


async def test_enforcer_triggers_regeneration_from_pipeline_path(self_models, enforcer):
    enforcer_result = None
    for _ in range(3):
        model = self_models.active
        violation = enforcer.analyze_response("I live in Lisbon.", model)
        enforcer_result = await enforcer.enforce(violation, model)
    assert enforcer_result is not None
    assert self_models.active_version == enforcer_result.version
