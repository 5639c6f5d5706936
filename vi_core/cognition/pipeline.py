"""Cognition pipeline: one user turn from utterance to persisted RunRecord.

Stages run strictly in order (perceive, classify, plan, execute, reflect)
on an immutable ThoughtState. The ambiguity gate runs first and may end
the turn with a clarification before any planning happens.

Failures in memory retrieval, canon injection, grounding, enforcement,
memory writes and record persistence degrade the turn and are listed in
ProcessResult.degraded. A failure to generate the response is fatal and
raises GenerationError.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable

from vi_core.cognition.ambiguity import AmbiguityGate
from vi_core.cognition.executor import BacktrackingExecutor
from vi_core.cognition.gateway import InferenceGateway
from vi_core.cognition.planner import Planner
from vi_core.cognition.records import RunRecordStore
from vi_core.cognition.reflector import Reflector
from vi_core.cognition.schemas import (
    AmbiguityDetection,
    CognitionEvent,
    Execution,
    Intent,
    IntentCategory,
    Perception,
    Plan,
    ProcessResult,
    ProposedMemory,
    Reflection,
    RunRecord,
    ThoughtStage,
    ThoughtState,
)
from vi_core.errors import GenerationError
from vi_core.events import TURN_COMPLETED, Event, EventBus
from vi_core.grounding.gate import (
    FAILED_VALIDATION_CONFIDENCE,
    FAILED_VALIDATION_MARKER,
    GroundingGate,
    dedupe_citations,
)
from vi_core.grounding.lore import LoreModeEngine
from vi_core.grounding.schemas import Citation, LoreModeContext
from vi_core.identity.enforcer import SelfModelEnforcer, count_name_usage
from vi_core.identity.manager import SelfModelManager
from vi_core.memory.engine import MemoryEngine
from vi_core.memory.schemas import MemoryDimension, MemoryInput
from vi_core.utils import truncate

logger = logging.getLogger(__name__)

EventCallback = Callable[[CognitionEvent], Awaitable[None]]

UNKNOWN_INTENT_CONFIDENCE = 0.1
RECENT_HISTORY_WINDOW = 5

_PROPOSED_DIMENSION = {
    "interaction": MemoryDimension.EPISODIC,
    "context": MemoryDimension.EPISODIC,
    "fact": MemoryDimension.SEMANTIC,
    "preference": MemoryDimension.SEMANTIC,
    "entity": MemoryDimension.RELATIONAL,
}


def recent_history(context: dict[str, Any]) -> list[str]:
    """Last few turns from the caller context, as plain strings."""
    history = context.get("recent_history")
    if history is None:
        pack = context.get("continuityPack") or {}
        history = pack.get("immediate_history") or pack.get("recent_history") or []
    texts: list[str] = []
    for item in history:
        if isinstance(item, str):
            texts.append(item)
        elif isinstance(item, dict):
            texts.append(str(item.get("content") or item.get("text") or ""))
    return [t for t in texts if t][-RECENT_HISTORY_WINDOW:]


def entity_memories(context: dict[str, Any]) -> dict[str, str]:
    """Caller-hydrated memories keyed by entity name."""
    pack = context.get("continuityPack") or {}
    found = context.get("entity_memories") or pack.get("entity_memories") or {}
    return {str(k): str(v) for k, v in found.items()} if isinstance(found, dict) else {}


def user_display_name(context: dict[str, Any]) -> str | None:
    pack = context.get("continuityPack") or {}
    return context.get("user_name") or pack.get("user_name") or pack.get("display_name")


class CognitionPipeline:
    def __init__(
        self,
        gateway: InferenceGateway,
        planner: Planner,
        executor: BacktrackingExecutor,
        records: RunRecordStore,
        *,
        reflector: Reflector | None = None,
        ambiguity: AmbiguityGate | None = None,
        memory: MemoryEngine | None = None,
        lore: LoreModeEngine | None = None,
        grounding: GroundingGate | None = None,
        self_models: SelfModelManager | None = None,
        enforcer: SelfModelEnforcer | None = None,
        bus: EventBus | None = None,
        memory_limit: int = 5,
    ) -> None:
        self.gateway = gateway
        self.planner = planner
        self.executor = executor
        self.records = records
        self.reflector = reflector or Reflector()
        self.ambiguity = ambiguity or AmbiguityGate()
        self.memory = memory
        self.lore = lore
        self.grounding = grounding
        self.self_models = self_models
        self.enforcer = enforcer
        self.bus = bus
        self.memory_limit = memory_limit

    async def process(
        self,
        input: str,
        user_id: str,
        session_id: str | None = None,
        context: dict[str, Any] | None = None,
        on_event: EventCallback | None = None,
    ) -> ProcessResult:
        context = context or {}
        started = time.monotonic()
        thought = ThoughtState(user_id=user_id, session_id=session_id, input=input)

        async def emit(event_type: str, payload: Any = None) -> None:
            if on_event is None:
                return
            try:
                await on_event(CognitionEvent(type=event_type, payload=payload))
            except Exception:
                logger.warning("on_event callback failed for %s", event_type, exc_info=True)

        detection = self.ambiguity.detect(input, recent_history(context))
        if detection is not None:
            return await self._short_circuit(thought, detection, started, emit)

        degraded: list[str] = []

        # 1. perceive
        perception, lore_context = await self._perceive(thought, context, degraded)
        thought = thought.advance(ThoughtStage.PERCEIVED, perception)
        await emit("perception", perception.model_dump(mode="json"))

        # 2. classify
        try:
            intent = await self.gateway.classify_intent(input, perception.context)
        except Exception as e:
            logger.warning("Intent classification failed, using unknown: %s", e)
            degraded.append("intent_classification")
            intent = Intent(
                category=IntentCategory.UNKNOWN,
                description=input,
                confidence=UNKNOWN_INTENT_CONFIDENCE,
                reasoning=f"Classification failed: {e}",
            )
        thought = thought.advance(ThoughtStage.INTENT_CLASSIFIED, intent)
        await emit("intent", intent.model_dump(mode="json"))

        # 3. plan
        plan = await self.planner.generate_plan(intent, context)
        thought = thought.advance(ThoughtStage.PLANNED, plan)
        await emit("plan", plan.model_dump(mode="json"))

        # 4. execute
        outcome = await self.executor.execute(plan, user_id, session_id)
        thought = thought.advance(ThoughtStage.EXECUTED, outcome.execution)
        await emit("execution", outcome.execution.model_dump(mode="json"))

        # 5. respond
        try:
            response = await self.gateway.generate_response(thought)
        except Exception as e:
            logger.error("Response generation failed for user %s: %s", user_id, e)
            raise GenerationError(f"Response generation failed: {e}") from e
        if not response or not response.strip():
            raise GenerationError("Response generation returned empty output")

        # 6. ground
        citations: list[Citation] = [c for r in outcome.execution.tool_results for c in r.citations]
        output = response
        grounding_confidence: float | None = None
        if self.grounding is not None:
            try:
                check = await self.grounding.validate_response(
                    response,
                    user_id=user_id,
                    context_memories=entity_memories(context),
                )
                citations.extend(check.citations)
                output = GroundingGate.annotate(response, check)
                grounding_confidence = check.confidence
                if check.missing_grounding == [FAILED_VALIDATION_MARKER]:
                    degraded.append("grounding")
            except Exception:
                logger.warning("Grounding failed; returning ungrounded response", exc_info=True)
                degraded.append("grounding")
                grounding_confidence = FAILED_VALIDATION_CONFIDENCE

        lore_findings: list[str] = []
        if self.lore is not None and lore_context is not None and lore_context.enabled:
            try:
                report = await self.lore.detect_canon_contradictions(input, response)
                lore_findings = report.contradictions
                output = LoreModeEngine.format_canon_response(output, lore_context)
            except Exception:
                logger.warning("Canon contradiction check failed", exc_info=True)
                degraded.append("canon_check")

        # 7. enforce self-model
        had_violation = await self._enforce(response, input, context, degraded)

        # 8. reflect
        reflection = self.reflector.reflect(thought, outcome.delta, grounding_confidence)
        if lore_findings:
            reflection = reflection.model_copy(
                update={"key_findings": [*reflection.key_findings, *lore_findings]}
            )
        thought = thought.advance(ThoughtStage.REFLECTED, reflection)
        await emit("reflection", reflection.model_dump(mode="json"))
        await self._store_memories(reflection.memory_to_store, session_id, degraded)

        citations = dedupe_citations([*citations, *reflection.citations])
        record = RunRecord(
            thought_id=thought.id,
            user_id=user_id,
            session_id=session_id,
            timestamp=thought.timestamp,
            input_text=input,
            intent=intent,
            plan=plan,
            execution=outcome.execution,
            reflection=reflection,
            output=output,
            citations=citations,
            total_duration_ms=(time.monotonic() - started) * 1000,
            success=outcome.execution.success,
            degraded=degraded,
        )
        await self._persist(record, degraded)

        await emit("response", output)
        await self._turn_completed(record, had_violation)
        return ProcessResult(
            output=output,
            record_id=record.id,
            citations=citations,
            had_violation=had_violation,
            degraded=degraded,
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _short_circuit(
        self,
        thought: ThoughtState,
        detection: AmbiguityDetection,
        started: float,
        emit: Callable[[str, Any], Awaitable[None]],
    ) -> ProcessResult:
        logger.info("Ambiguity gate fired (%s) for user %s", detection.type, thought.user_id)
        await emit("ambiguity_detected", detection.model_dump(mode="json"))

        degraded: list[str] = []
        record = RunRecord(
            thought_id=thought.id,
            user_id=thought.user_id,
            session_id=thought.session_id,
            timestamp=thought.timestamp,
            input_text=thought.input,
            intent=Intent(
                category=IntentCategory.CLARIFICATION,
                description=thought.input,
                confidence=detection.confidence,
                reasoning=f"AmbiguityGate:{detection.type}",
            ),
            plan=Plan(steps=[], reasoning="aborted_ambiguity"),
            execution=Execution(success=True, output=detection.clarification_prompt),
            reflection=Reflection(
                summary=f"Clarification requested ({detection.type})",
                key_findings=[f"Ambiguity detected: {detection.type}"],
                confidence=detection.confidence,
            ),
            output=detection.clarification_prompt,
            total_duration_ms=(time.monotonic() - started) * 1000,
            success=True,
            short_circuit="ambiguity",
        )
        await self._persist(record, degraded)
        await emit("response", detection.clarification_prompt)
        await self._turn_completed(record, False)
        return ProcessResult(
            output=detection.clarification_prompt,
            record_id=record.id,
            degraded=degraded,
        )

    async def _perceive(
        self, thought: ThoughtState, context: dict[str, Any], degraded: list[str]
    ) -> tuple[Perception, LoreModeContext | None]:
        bag: dict[str, Any] = {
            "recent_history": recent_history(context),
            "continuity_pack": context.get("continuityPack") or {},
            "memories": [],
        }
        name = user_display_name(context)
        if name:
            bag["user_name"] = name

        if self.memory is not None:
            try:
                found = await self.memory.retrieve_relevant(thought.input, thought.user_id, limit=self.memory_limit)
                bag["memories"] = [
                    {
                        "id": str(m.record.id),
                        "text": m.record.text,
                        "dimension": str(m.record.dimension),
                        "score": round(m.score, 4),
                    }
                    for m in found
                ]
            except Exception as e:
                logger.warning("Memory retrieval failed for user %s: %s", thought.user_id, e)
                degraded.append("memory_retrieval")

        lore_context: LoreModeContext | None = None
        if self.lore is not None:
            try:
                lore_context, canon_text = await self.lore.inject_canon_context(
                    thought.user_id, thought.input, thought.session_id
                )
                bag["lore_mode"] = lore_context.enabled
                bag["lore_reason"] = lore_context.reason
                if canon_text:
                    bag["canon_context"] = canon_text
            except Exception as e:
                logger.warning("Canon context injection failed: %s", e)
                degraded.append("canon_injection")

        if self.self_models is not None:
            try:
                bag["self_model"] = self.self_models.active.model_dump(mode="json")
            except RuntimeError as e:
                logger.warning("Self-model snapshot unavailable: %s", e)
                degraded.append("self_model")

        confidence = 0.9 if not degraded else 0.6
        return Perception(raw=thought.input, context=bag, confidence=confidence), lore_context

    async def _enforce(self, response: str, input: str, context: dict[str, Any], degraded: list[str]) -> bool:
        if self.enforcer is None or self.self_models is None:
            return False
        try:
            model = self.self_models.active
            violation = self.enforcer.analyze_response(
                response,
                model,
                user_message=input,
                name_usage_count=count_name_usage(response, user_display_name(context)),
            )
        except Exception:
            logger.warning("Self-model analysis failed", exc_info=True)
            degraded.append("self_model_enforcement")
            return False
        if violation is None:
            return False
        await self.enforcer.enforce(violation, model)
        return True

    async def _store_memories(
        self, proposed: list[ProposedMemory], session_id: str | None, degraded: list[str]
    ) -> None:
        if self.memory is None or not proposed:
            return
        for item in proposed:
            try:
                await self.memory.store_memory(
                    _PROPOSED_DIMENSION[item.type],
                    item.user_id,
                    MemoryInput(
                        text=item.content,
                        session_id=session_id,
                        metadata={
                            "kind": item.type,
                            "ttl_seconds": item.ttl_seconds,
                            "citations": [c.id for c in item.citations],
                        },
                    ),
                )
            except Exception as e:
                logger.warning("Failed to store proposed memory (%s): %s", item.type, e)
                if "memory_write" not in degraded:
                    degraded.append("memory_write")

    async def _persist(self, record: RunRecord, degraded: list[str]) -> None:
        try:
            await self.records.save(record)
        except Exception as e:
            logger.warning("Failed to persist run record %s: %s", record.id, e)
            degraded.append("run_record")
            return
        if not record.citations:
            return
        try:
            await self.records.save_citations(record.id, record.citations)
        except Exception as e:
            logger.warning("Failed to persist %d citations for %s: %s", len(record.citations), record.id, e)
            degraded.append("citations")

    async def _turn_completed(self, record: RunRecord, had_violation: bool) -> None:
        if self.bus is None:
            return
        await self.bus.emit(
            Event(
                type=TURN_COMPLETED,
                user_id=record.user_id,
                session_id=record.session_id,
                data={
                    "record_id": str(record.id),
                    "input": truncate(record.input_text, 100),
                    "success": record.success,
                    "short_circuit": record.short_circuit,
                    "had_violation": had_violation,
                    "degraded": list(record.degraded),
                    "duration_ms": round(record.total_duration_ms, 1),
                },
            )
        )
