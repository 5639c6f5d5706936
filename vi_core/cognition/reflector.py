"""Post-turn reflection: summary, findings, proposed memories, policy decisions."""

from __future__ import annotations

from datetime import timedelta

from vi_core.cognition.schemas import (
    PolicyDecision,
    ProposedMemory,
    Reflection,
    ReflectionDelta,
    StepType,
    ThoughtState,
    ToolCallResult,
)
from vi_core.grounding.schemas import Citation, CitationSourceType

CONVERSATION_TTL_SECONDS = 7 * 24 * 60 * 60
SUCCESS_CONFIDENCE = 0.8
FAILURE_CONFIDENCE = 0.2
DEFAULT_POLICY_ID = "command_execution"


def extract_tool_citations(tool_results: list[ToolCallResult]) -> list[Citation]:
    citations: list[Citation] = []
    for result in tool_results:
        if result.citations:
            citations.extend(result.citations)
        elif result.status == "success":
            citations.append(
                Citation(
                    id=f"tool-{result.tool_name}",
                    source_type=CitationSourceType.TOOL_OUTPUT,
                    source_id=result.tool_name,
                    source_text=str(result.result)[:100] if result.result is not None else "",
                    confidence=0.8,
                )
            )
    return citations


class Reflector:
    def reflect(
        self,
        thought: ThoughtState,
        delta: ReflectionDelta | None = None,
        grounding_confidence: float | None = None,
    ) -> Reflection:
        """Summarize a finished turn.

        Confidence starts from the execution outcome and is capped by
        grounding_confidence when the response was checked against sources.
        """
        if thought.intent is None or thought.plan is None or thought.execution is None:
            return Reflection(summary="Incomplete thought state; cannot reflect", confidence=0.0)

        execution = thought.execution
        findings: list[str] = []
        proposed: list[ProposedMemory] = []
        citations = extract_tool_citations(execution.tool_results)

        if execution.success:
            findings.append(f"Successfully completed {thought.intent.category} intent")
            findings.append(f"Executed {len(execution.steps_executed)} steps")
            if thought.input:
                proposed.append(
                    ProposedMemory(
                        type="interaction",
                        content=f"User message: {thought.input}",
                        user_id=thought.user_id,
                        timestamp=thought.timestamp,
                        citations=citations,
                        ttl_seconds=CONVERSATION_TTL_SECONDS,
                    )
                )
                proposed.append(
                    ProposedMemory(
                        type="context",
                        content=f'Assistant responded to "{thought.input[:50]}..." with understanding',
                        user_id=thought.user_id,
                        timestamp=thought.timestamp + timedelta(milliseconds=100),
                        citations=citations,
                        ttl_seconds=CONVERSATION_TTL_SECONDS,
                    )
                )
        else:
            findings.append(f"Execution failed: {', '.join(execution.errors)}")

        if delta is not None and delta.fallback_plan_applied:
            findings.append(
                "Recovered via fallback plan" if delta.recovered else "Fallback plan did not recover"
            )

        decisions: list[PolicyDecision] = []
        for step in execution.steps_executed:
            if step.type != StepType.POLICY_CHECK:
                continue
            result = step.result or {}
            authorized = bool(result.get("authorized"))
            policy_id = result.get("policy_id") or DEFAULT_POLICY_ID
            decisions.append(
                PolicyDecision(
                    policy_id=policy_id,
                    name=policy_id.replace("_", " ").title(),
                    action="allow" if authorized else "deny",
                    reason=result.get("reason")
                    or ("Authorized by policy engine" if authorized else "Policy denied execution"),
                    severity="info" if authorized else "block",
                )
            )

        suggestions: list[str] = []
        if not execution.success:
            suggestions.append("Ask the user to rephrase or provide more detail")

        confidence = SUCCESS_CONFIDENCE if execution.success else FAILURE_CONFIDENCE
        if grounding_confidence is not None and grounding_confidence < confidence:
            confidence = grounding_confidence
            findings.append(f"Confidence capped by grounding at {grounding_confidence:.2f}")

        total_ms = sum(s.duration_ms for s in execution.steps_executed)
        outcome = "success" if execution.success else "failure"
        return Reflection(
            summary=(
                f"Completed {thought.intent.category} intent with {outcome}. "
                f"Executed {len(execution.steps_executed)} steps in {round(total_ms)}ms."
            ),
            key_findings=findings,
            confidence=confidence,
            memory_to_store=proposed,
            policy_decisions=decisions,
            next_step_suggestions=suggestions,
            citations=citations,
            delta=delta,
        )
