"""SelfModelRegenerator: adapt the self-model after repeated violations.

Violations are counted per active version in a rolling window, split by
severity. Crossing a threshold derives a new version heuristically,
optionally refines it through the inference gateway, activates it and
starts its counters at zero. Every regeneration is audited as
regeneration_triggered followed by regeneration_applied.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from pydantic import ValidationError

from vi_core.identity.manager import SelfModelManager
from vi_core.identity.schemas import SelfModel, ViolationReport
from vi_core.utils import utcnow

if TYPE_CHECKING:
    from vi_core.cognition.gateway import InferenceGateway

logger = logging.getLogger(__name__)

_REFINE_SYSTEM = (
    "You are refining an assistant's SelfModel. Update fields to better enforce "
    "boundaries/stances/preferences. Return JSON with the same structure. "
    "Only adjust minimally and include a new version string."
)


@dataclass
class ViolationCounts:
    high: int = 0
    medium: int = 0
    window_start: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class Refinement:
    """Outcome of LLM refinement: a model or the error that prevented one."""

    model: SelfModel | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.model is not None

    def or_else(self, fallback: SelfModel) -> SelfModel:
        return self.model if self.model is not None else fallback


def adjust_self_model(model: SelfModel, violation: ViolationReport) -> SelfModel:
    """Deterministic heuristic adjustment keyed to the violation type."""
    stances = dict(model.stances)
    preferences = dict(model.preferences)
    boundaries = dict(model.boundaries)
    tone = model.tone

    if violation.type == "boundary" and violation.boundary:
        boundaries[violation.boundary] = "strict"
    elif violation.type == "stance":
        current = stances.get("default", "balanced")
        stances["default"] = "technical" if current == "strategic" else "strategic"
    elif violation.type == "tone":
        tone = "neutral"
    elif violation.type == "preference" and violation.preference:
        preferences[violation.preference] = "reinforced"

    return model.model_copy(
        update={
            "version": f"{model.version}-regen-{utcnow().isoformat()}",
            "stances": stances,
            "preferences": preferences,
            "boundaries": boundaries,
            "tone": tone,
        }
    )


class SelfModelRegenerator:
    def __init__(
        self,
        manager: SelfModelManager,
        gateway: InferenceGateway | None = None,
        high_threshold: int = 3,
        medium_threshold: int = 5,
        window_seconds: float = 3600.0,
        llm_refinement: bool = False,
    ) -> None:
        self.manager = manager
        self.gateway = gateway
        self.high_threshold = high_threshold
        self.medium_threshold = medium_threshold
        self.window_seconds = window_seconds
        self.llm_refinement = llm_refinement
        self._counts: dict[str, ViolationCounts] = {}
        self._lock = asyncio.Lock()

    def counts_for(self, version: str) -> ViolationCounts:
        return self._counts.get(version) or ViolationCounts()

    async def record_violation(self, violation: ViolationReport, model: SelfModel) -> SelfModel | None:
        """Count a violation; regenerate when a threshold is crossed.

        Counting and regeneration share one lock, so concurrent violations
        against the same version trigger at most one regeneration.
        Violations against a version that is no longer active are ignored.
        """
        async with self._lock:
            active = self.manager.active_version
            if active is not None and model.version != active:
                logger.debug("Ignoring violation for inactive self-model %s", model.version)
                return None

            counts = self._counts.get(model.version)
            now = time.monotonic()
            if counts is None or now - counts.window_start > self.window_seconds:
                counts = ViolationCounts(window_start=now)
                self._counts[model.version] = counts

            if violation.severity == "high":
                counts.high += 1
            elif violation.severity == "medium":
                counts.medium += 1

            if counts.high < self.high_threshold and counts.medium < self.medium_threshold:
                return None

            logger.info(
                "Regeneration threshold reached for self-model %s (high=%d, medium=%d)",
                model.version,
                counts.high,
                counts.medium,
            )
            return await self._regenerate(model, violation, counts)

    async def _regenerate(
        self, model: SelfModel, violation: ViolationReport, counts: ViolationCounts
    ) -> SelfModel:
        await self.manager.log_event(
            model.version,
            "regeneration_triggered",
            {
                "reason": (
                    f"{counts.high} high-severity violations (threshold: {self.high_threshold}) or "
                    f"{counts.medium} medium-severity violations (threshold: {self.medium_threshold})"
                ),
                "triggering_violation": {
                    "type": violation.type,
                    "severity": violation.severity,
                    "confidence": violation.confidence,
                },
            },
        )

        adjusted = adjust_self_model(model, violation)
        refined = (await self.refine(adjusted, violation)).or_else(adjusted)

        await self.manager.activate(refined)
        self._counts.pop(model.version, None)
        self._counts[refined.version] = ViolationCounts()

        await self.manager.log_event(
            refined.version,
            "regeneration_applied",
            {"from_version": model.version, "reason": violation.type},
        )
        return refined

    async def refine(self, model: SelfModel, violation: ViolationReport) -> Refinement:
        """Ask the gateway for a refined model. Never raises."""
        if not self.llm_refinement or self.gateway is None:
            return Refinement(error="refinement disabled")

        prompt = (
            f"Current model:\n{model.model_dump_json(indent=2)}\n\n"
            f"Latest violation:\n{violation.model_dump_json(indent=2)}\n\nProduce updated JSON."
        )
        try:
            raw = await self.gateway.complete(_REFINE_SYSTEM, prompt)
            parsed = json.loads(raw)
            if not isinstance(parsed, dict):
                return Refinement(error="refinement did not return a JSON object")
            merged = {**model.model_dump(), **{k: v for k, v in parsed.items() if v is not None}}
            if merged.get("version") in (None, "", model.version):
                merged["version"] = f"{model.version}-llm"
            return Refinement(model=SelfModel.model_validate(merged))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning("LLM refinement returned an unusable model: %s", e)
            return Refinement(error=str(e))
        except Exception as e:
            logger.warning("LLM refinement failed; using heuristic model: %s", e)
            return Refinement(error=str(e))
