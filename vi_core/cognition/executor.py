"""Plan execution.

Executor runs every step in order, recording failures without stopping.
BacktrackingExecutor retries a failed plan once with a respond-only
fallback and reports what happened as a ReflectionDelta.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from vi_core.cognition.policy import PolicyEngine
from vi_core.cognition.schemas import (
    Execution,
    ExecutionResult,
    Plan,
    PlanStep,
    ReflectionDelta,
    StepType,
    ToolCallResult,
    VerificationOutcome,
    VerificationSummary,
)
from vi_core.grounding.schemas import Citation, CitationSourceType
from vi_core.tools.runner import ToolRunner
from vi_core.tools.schemas import ToolContext, ToolResult, ToolStatus

logger = logging.getLogger(__name__)

NO_OUTPUT = "No output generated"
TOOL_CITATION_CONFIDENCE = 0.8


@dataclass
class StepOutcome:
    success: bool
    data: Any = None
    error: str | None = None
    tool_result: ToolCallResult | None = None


def tool_citations(result: ToolResult) -> list[Citation]:
    """Cite a successful tool result as its own source."""
    if not result.success:
        return []
    return [
        Citation(
            id=f"tool-{result.tool_name}",
            source_type=CitationSourceType.TOOL_OUTPUT,
            source_id=result.tool_name,
            source_text=str(result.data)[:100],
            confidence=TOOL_CITATION_CONFIDENCE,
        )
    ]


def verify_tool_result(result: ToolCallResult, verifier: str | None = None) -> VerificationOutcome:
    """Default verification mirrors the tool status."""
    return VerificationOutcome(
        status="verified" if result.status == ToolStatus.SUCCESS else "failed",
        verifier=verifier or "status",
        errors=[result.error] if result.error else [],
    )


class Executor:
    def __init__(self, policy: PolicyEngine, runner: ToolRunner) -> None:
        self.policy = policy
        self.runner = runner

    async def execute_plan(self, plan: Plan, user_id: str, session_id: str | None = None) -> Execution:
        steps_executed: list[ExecutionResult] = []
        tool_results: list[ToolCallResult] = []
        errors: list[str] = []
        summary = VerificationSummary()
        success = True
        output = ""

        for step in plan.steps:
            start = time.monotonic()
            try:
                outcome = await self.execute_step(step, user_id, session_id)
            except Exception as e:
                logger.warning("Step %s (%s) raised: %s", step.id, step.type, e)
                outcome = StepOutcome(success=False, error=str(e))

            steps_executed.append(
                ExecutionResult(
                    step_id=step.id,
                    type=step.type,
                    duration_ms=(time.monotonic() - start) * 1000,
                    success=outcome.success,
                    result=outcome.data,
                    error=outcome.error,
                )
            )
            if not outcome.success:
                success = False
                errors.append(outcome.error or "Step failed")

            if step.type == StepType.RESPOND and outcome.success:
                output = (outcome.data or {}).get("output") or output

            if outcome.tool_result is not None:
                verification = verify_tool_result(
                    outcome.tool_result, step.verification.verifier if step.verification else None
                )
                if verification.status == "verified":
                    summary.verified += 1
                else:
                    summary.failed += 1
                    required = step.verification.required if step.verification else False
                    if required and outcome.success:
                        success = False
                        errors.append("; ".join(verification.errors) or "Verification failed")
                tool_results.append(outcome.tool_result.model_copy(update={"verification": verification}))

        return Execution(
            steps_executed=steps_executed,
            success=success,
            output=output or NO_OUTPUT,
            tool_results=tool_results,
            memory_used=any(r.tool_name == "search_memory" and r.status == ToolStatus.SUCCESS for r in tool_results),
            errors=errors,
            verification_summary=summary,
        )

    async def execute_step(self, step: PlanStep, user_id: str, session_id: str | None = None) -> StepOutcome:
        if step.type == StepType.RESPOND:
            return StepOutcome(success=True, data={"output": f"Response to your request. (Step: {step.id})"})

        if step.type == StepType.POLICY_CHECK:
            decision = self.policy.check_policy(step, user_id)
            return StepOutcome(
                success=decision.allowed,
                data={"authorized": decision.allowed, "policy_id": decision.policy_id, "reason": decision.reason},
                error=None if decision.allowed else "Policy denied execution",
            )

        if step.type == StepType.TOOL_CALL:
            return await self._run_tool(step, user_id, session_id)

        if step.type == StepType.MEMORY_ACCESS:
            return StepOutcome(success=False, error="Memory access steps are served by the search_memory tool")

        return StepOutcome(success=False, error=f"Unknown step type: {step.type}")

    async def _run_tool(self, step: PlanStep, user_id: str, session_id: str | None) -> StepOutcome:
        tool_name = step.tool_name or step.params.get("tool_name") or "list_tools"
        params = dict(step.tool_params or step.params)

        decision = self.policy.check_policy(step.model_copy(update={"tool_name": tool_name}), user_id)
        if not decision.allowed:
            return StepOutcome(
                success=False,
                error="Policy denied tool execution",
                tool_result=ToolCallResult(
                    tool_name=tool_name,
                    input=params,
                    status=ToolStatus.PERMISSION_DENIED,
                    error="Policy denied tool execution",
                ),
            )

        result = await self.runner.execute(tool_name, params, ToolContext(user_id=user_id, session_id=session_id))
        # failed tools contribute no partial result
        data = result.data if result.success else None
        return StepOutcome(
            success=result.success,
            data=data,
            error=result.error,
            tool_result=ToolCallResult(
                tool_name=tool_name,
                input=params,
                status=result.status,
                result=data,
                error=result.error,
                citations=tool_citations(result),
            ),
        )


@dataclass
class BacktrackingResult:
    execution: Execution
    attempts: list[Execution] = field(default_factory=list)
    delta: ReflectionDelta | None = None


def fallback_plan() -> Plan:
    return Plan(
        steps=[
            PlanStep(
                type=StepType.RESPOND,
                description="Self-correction fallback response",
                params={"intent_category": "fallback"},
            )
        ],
        reasoning="Self-correction fallback plan",
    )


class BacktrackingExecutor:
    def __init__(self, executor: Executor) -> None:
        self.executor = executor

    async def execute(self, plan: Plan, user_id: str, session_id: str | None = None) -> BacktrackingResult:
        primary = await self.executor.execute_plan(plan, user_id, session_id)
        if primary.success:
            return BacktrackingResult(
                execution=primary,
                attempts=[primary],
                delta=ReflectionDelta(attempts=1, notes=["Primary plan succeeded"]),
            )

        logger.info("Plan failed (%s); applying fallback plan", "; ".join(primary.errors))
        fallback = await self.executor.execute_plan(fallback_plan(), user_id, session_id)
        recovered = fallback.success
        execution = primary
        if recovered:
            # keep the failed tool records for the audit trail; their result is already None
            execution = fallback.model_copy(
                update={
                    "steps_executed": primary.steps_executed + fallback.steps_executed,
                    "tool_results": primary.tool_results,
                    "errors": primary.errors,
                    "verification_summary": primary.verification_summary,
                }
            )
        return BacktrackingResult(
            execution=execution,
            attempts=[primary, fallback],
            delta=ReflectionDelta(
                attempts=2,
                recovered=recovered,
                original_errors=primary.errors,
                fallback_plan_applied=True,
                notes=(
                    ["Recovered via fallback respond plan"]
                    if recovered
                    else ["Fallback failed; returning primary failure"]
                ),
            ),
        )
