"""Tests for the Reflector and ThoughtState stage ordering."""

import pytest

from vi_core.cognition.reflector import Reflector
from vi_core.cognition.schemas import (
    Execution,
    ExecutionResult,
    Intent,
    IntentCategory,
    Perception,
    Plan,
    ReflectionDelta,
    StepType,
    ThoughtStage,
    ThoughtState,
    ToolCallResult,
)
from vi_core.tools.schemas import ToolStatus


def _thought(execution: Execution, input: str = "What is 2 + 2?") -> ThoughtState:
    thought = ThoughtState(user_id="user-1", input=input)
    thought = thought.advance(ThoughtStage.PERCEIVED, Perception(raw=input))
    thought = thought.advance(
        ThoughtStage.INTENT_CLASSIFIED,
        Intent(category=IntentCategory.QUERY, description=input, confidence=0.8),
    )
    thought = thought.advance(ThoughtStage.PLANNED, Plan(steps=[], reasoning="test"))
    return thought.advance(ThoughtStage.EXECUTED, execution)


# ---------------------------------------------------------------------------
# ThoughtState
# ---------------------------------------------------------------------------


def test_advance_rejects_skips_and_regressions():
    thought = ThoughtState(user_id="u", input="hi")
    with pytest.raises(ValueError):
        thought.advance(ThoughtStage.PLANNED, Plan(steps=[], reasoning="x"))
    perceived = thought.advance(ThoughtStage.PERCEIVED, Perception(raw="hi"))
    with pytest.raises(ValueError):
        perceived.advance(ThoughtStage.PERCEIVED, Perception(raw="hi"))
    # original state untouched
    assert thought.stage == ThoughtStage.INIT
    assert thought.perception is None


# ---------------------------------------------------------------------------
# Reflector
# ---------------------------------------------------------------------------


def test_success_proposes_interaction_memories():
    execution = Execution(
        success=True,
        steps_executed=[ExecutionResult(step_id="s1", type=StepType.RESPOND, duration_ms=2.0, success=True)],
    )
    reflection = Reflector().reflect(_thought(execution))
    assert reflection.confidence == 0.8
    assert reflection.summary == "Completed query intent with success. Executed 1 steps in 2ms."
    kinds = [m.type for m in reflection.memory_to_store]
    assert kinds == ["interaction", "context"]
    assert reflection.memory_to_store[0].content == "User message: What is 2 + 2?"
    assert all(m.ttl_seconds == 7 * 24 * 3600 for m in reflection.memory_to_store)
    assert reflection.memory_to_store[1].timestamp > reflection.memory_to_store[0].timestamp


def test_failure_reflection():
    execution = Execution(success=False, errors=["Tool failed", "Timeout"])
    reflection = Reflector().reflect(_thought(execution))
    assert reflection.confidence == 0.2
    assert reflection.key_findings == ["Execution failed: Tool failed, Timeout"]
    assert reflection.memory_to_store == []
    assert reflection.next_step_suggestions


def test_incomplete_thought():
    reflection = Reflector().reflect(ThoughtState(user_id="u", input="hi"))
    assert reflection.summary == "Incomplete thought state; cannot reflect"
    assert reflection.confidence == 0.0


def test_policy_decisions_from_policy_steps():
    execution = Execution(
        success=False,
        steps_executed=[
            ExecutionResult(
                step_id="p1",
                type=StepType.POLICY_CHECK,
                duration_ms=0.1,
                success=False,
                result={"authorized": False, "policy_id": "command_execution"},
            )
        ],
    )
    reflection = Reflector().reflect(_thought(execution))
    assert [d.action for d in reflection.policy_decisions] == ["deny"]


def test_policy_decision_keeps_rule_id_and_reason():
    execution = Execution(
        success=False,
        steps_executed=[
            ExecutionResult(
                step_id="p1",
                type=StepType.POLICY_CHECK,
                duration_ms=0.1,
                success=False,
                result={
                    "authorized": False,
                    "policy_id": "no_shell_after_hours",
                    "reason": "Denied by rule no_shell_after_hours",
                },
            )
        ],
    )
    (decision,) = Reflector().reflect(_thought(execution)).policy_decisions
    assert decision.policy_id == "no_shell_after_hours"
    assert decision.name == "No Shell After Hours"
    assert decision.reason == "Denied by rule no_shell_after_hours"


@pytest.mark.parametrize(
    "success, grounding, expected",
    [
        (True, None, 0.8),
        (True, 1.0, 0.8),
        (True, 0.5, 0.5),
        (False, 0.5, 0.2),
    ],
)
def test_grounding_caps_confidence(success, grounding, expected):
    reflection = Reflector().reflect(_thought(Execution(success=success)), grounding_confidence=grounding)
    assert reflection.confidence == expected
    capped = any(f.startswith("Confidence capped by grounding") for f in reflection.key_findings)
    assert capped == (expected == 0.5)


def test_tool_citations_collected():
    execution = Execution(
        success=True,
        tool_results=[ToolCallResult(tool_name="calculate", status=ToolStatus.SUCCESS, result={"result": 4})],
    )
    reflection = Reflector().reflect(_thought(execution))
    assert [c.id for c in reflection.citations] == ["tool-calculate"]
    assert reflection.memory_to_store[0].citations == reflection.citations


def test_delta_recorded():
    delta = ReflectionDelta(attempts=2, recovered=True, fallback_plan_applied=True)
    reflection = Reflector().reflect(_thought(Execution(success=True)), delta)
    assert reflection.delta == delta
    assert "Recovered via fallback plan" in reflection.key_findings
