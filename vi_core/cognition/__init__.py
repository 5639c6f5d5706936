"""Cognition: ambiguity gate, five-stage pipeline and its collaborators."""

from vi_core.cognition.ambiguity import AmbiguityGate
from vi_core.cognition.executor import BacktrackingExecutor, BacktrackingResult, Executor
from vi_core.cognition.gateway import AnthropicGateway, InferenceGateway, StubGateway
from vi_core.cognition.pipeline import CognitionPipeline
from vi_core.cognition.planner import Planner
from vi_core.cognition.policy import PolicyEngine
from vi_core.cognition.records import InMemoryRunRecordStore, RunRecordStore, SqlRunRecordStore
from vi_core.cognition.reflector import Reflector
from vi_core.cognition.schemas import (
    AmbiguityDetection,
    CognitionEvent,
    Execution,
    Intent,
    IntentCategory,
    Perception,
    Plan,
    PlanStep,
    PolicyDecision,
    ProcessResult,
    Reflection,
    RunRecord,
    StepType,
    ThoughtStage,
    ThoughtState,
)

__all__ = [
    "AmbiguityGate",
    "CognitionPipeline",
    "Executor",
    "BacktrackingExecutor",
    "BacktrackingResult",
    "Planner",
    "PolicyEngine",
    "Reflector",
    # Gateways
    "AnthropicGateway",
    "InferenceGateway",
    "StubGateway",
    # Run records
    "InMemoryRunRecordStore",
    "RunRecordStore",
    "SqlRunRecordStore",
    # Types
    "AmbiguityDetection",
    "CognitionEvent",
    "Execution",
    "Intent",
    "IntentCategory",
    "Perception",
    "Plan",
    "PlanStep",
    "PolicyDecision",
    "ProcessResult",
    "Reflection",
    "RunRecord",
    "StepType",
    "ThoughtStage",
    "ThoughtState",
]
