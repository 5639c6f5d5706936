"""Pydantic models for one cognition turn.

A ThoughtState moves strictly forward through its stages; advance()
returns a new state with the next payload attached and rejects any skip
or regression. Payloads are never mutated once attached.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any, Literal
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from vi_core.grounding.schemas import Citation
from vi_core.tools.schemas import ToolStatus
from vi_core.utils import utcnow


class ThoughtStage(StrEnum):
    INIT = "init"
    PERCEIVED = "perceived"
    INTENT_CLASSIFIED = "intent_classified"
    PLANNED = "planned"
    EXECUTED = "executed"
    REFLECTED = "reflected"


STAGE_ORDER = list(ThoughtStage)


class IntentCategory(StrEnum):
    QUERY = "query"
    COMMAND = "command"
    CONVERSATION = "conversation"
    CLARIFICATION = "clarification"
    FEEDBACK = "feedback"
    UNKNOWN = "unknown"


class StepType(StrEnum):
    RESPOND = "respond"
    TOOL_CALL = "tool_call"
    MEMORY_ACCESS = "memory_access"
    POLICY_CHECK = "policy_check"


AmbiguityType = Literal[
    "malformed_query", "dangling_reference", "underspecified_comparison", "contradictory_request"
]


class AmbiguityDetection(BaseModel):
    type: AmbiguityType
    confidence: float = Field(ge=0.0, le=1.0)
    clarification_prompt: str


# ---------------------------------------------------------------------------
# Stage payloads
# ---------------------------------------------------------------------------


class Perception(BaseModel):
    raw: str
    context: dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(default=0.9, ge=0.0, le=1.0)


class Intent(BaseModel):
    category: IntentCategory
    description: str = ""
    entities: dict[str, str] = Field(default_factory=dict)
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""
    requires_tooling: bool = False
    requires_memory: bool = False


class StepVerification(BaseModel):
    expected: Any = None
    verifier: str | None = None
    required: bool = False


class PlanStep(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    type: StepType
    description: str
    params: dict[str, Any] = Field(default_factory=dict)
    tool_name: str | None = None
    tool_params: dict[str, Any] = Field(default_factory=dict)
    tool_reasoning: str | None = None
    dependencies: list[str] = Field(default_factory=list)
    fallback: PlanStep | None = None
    verification: StepVerification | None = None


class Plan(BaseModel):
    steps: list[PlanStep]
    reasoning: str
    estimated_complexity: Literal["simple", "moderate", "complex"] = "simple"
    tools_needed: list[str] = Field(default_factory=list)
    memory_access_needed: bool = False


class ExecutionResult(BaseModel):
    step_id: str
    type: StepType
    duration_ms: float
    success: bool
    result: Any = None
    error: str | None = None


class VerificationOutcome(BaseModel):
    status: Literal["verified", "failed", "skipped"]
    verifier: str | None = None
    errors: list[str] = Field(default_factory=list)


class ToolCallResult(BaseModel):
    tool_name: str
    input: dict[str, Any] = Field(default_factory=dict)
    status: ToolStatus
    result: Any = None  # only populated on success
    error: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)
    citations: list[Citation] = Field(default_factory=list)
    verification: VerificationOutcome | None = None


class VerificationSummary(BaseModel):
    verified: int = 0
    failed: int = 0
    skipped: int = 0


class Execution(BaseModel):
    steps_executed: list[ExecutionResult] = Field(default_factory=list)
    success: bool
    output: str = ""
    tool_results: list[ToolCallResult] = Field(default_factory=list)
    memory_used: bool = False
    errors: list[str] = Field(default_factory=list)
    verification_summary: VerificationSummary = Field(default_factory=VerificationSummary)


class PolicyDecision(BaseModel):
    policy_id: str
    name: str
    action: Literal["allow", "deny", "require_approval"]
    reason: str
    severity: Literal["info", "warn", "block"] = "info"

    @property
    def allowed(self) -> bool:
        return self.action == "allow"


class ProposedMemory(BaseModel):
    """A record the reflector proposes to persist after the turn."""

    type: Literal["fact", "preference", "entity", "interaction", "context"]
    content: str
    user_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    citations: list[Citation] = Field(default_factory=list)
    ttl_seconds: int | None = None  # None = indefinite


class ReflectionDelta(BaseModel):
    attempts: int = 1
    recovered: bool = False
    original_errors: list[str] = Field(default_factory=list)
    fallback_plan_applied: bool = False
    notes: list[str] = Field(default_factory=list)


class Reflection(BaseModel):
    summary: str
    key_findings: list[str] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)
    memory_to_store: list[ProposedMemory] = Field(default_factory=list)
    policy_decisions: list[PolicyDecision] = Field(default_factory=list)
    next_step_suggestions: list[str] = Field(default_factory=list)
    citations: list[Citation] = Field(default_factory=list)
    delta: ReflectionDelta | None = None


# ---------------------------------------------------------------------------
# ThoughtState
# ---------------------------------------------------------------------------

_PAYLOAD_FOR_STAGE = {
    ThoughtStage.PERCEIVED: "perception",
    ThoughtStage.INTENT_CLASSIFIED: "intent",
    ThoughtStage.PLANNED: "plan",
    ThoughtStage.EXECUTED: "execution",
    ThoughtStage.REFLECTED: "reflection",
}


class ThoughtState(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: str
    session_id: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)
    stage: ThoughtStage = ThoughtStage.INIT
    input: str
    perception: Perception | None = None
    intent: Intent | None = None
    plan: Plan | None = None
    execution: Execution | None = None
    reflection: Reflection | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def advance(self, stage: ThoughtStage, payload: BaseModel) -> ThoughtState:
        """Return a copy at the next stage with its payload attached.

        Raises ValueError if stage is not the immediate successor.
        """
        current = STAGE_ORDER.index(self.stage)
        if STAGE_ORDER.index(stage) != current + 1:
            raise ValueError(f"Cannot move thought from {self.stage} to {stage}")
        return self.model_copy(update={"stage": stage, _PAYLOAD_FOR_STAGE[stage]: payload})


class RunRecord(BaseModel):
    """Durable artifact of one turn; append-only once saved."""

    id: UUID = Field(default_factory=uuid4)
    thought_id: UUID
    user_id: str
    session_id: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)
    input_text: str
    intent: Intent
    plan: Plan
    execution: Execution
    reflection: Reflection
    output: str
    citations: list[Citation] = Field(default_factory=list)
    total_duration_ms: float
    success: bool
    short_circuit: str | None = None  # e.g. "ambiguity"
    degraded: list[str] = Field(default_factory=list)


class CognitionEvent(BaseModel):
    type: Literal[
        "perception", "intent", "plan", "execution", "reflection", "response", "ambiguity_detected"
    ]
    payload: Any = None
    timestamp: datetime = Field(default_factory=utcnow)


class ProcessResult(BaseModel):
    output: str
    record_id: UUID
    citations: list[Citation] = Field(default_factory=list)
    had_violation: bool = False
    degraded: list[str] = Field(default_factory=list)
