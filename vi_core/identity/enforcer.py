"""SelfModelEnforcer: detect drift of a response from the active self-model.

Checks run in order (boundary, stance, preference, tone) and the first
match wins. Each check is a rule table so it can be tested on its own.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from vi_core.identity.schemas import SelfModel, Severity, ViolationReport
from vi_core.utils import truncate

if TYPE_CHECKING:
    from vi_core.identity.manager import SelfModelManager
    from vi_core.identity.regenerator import SelfModelRegenerator

logger = logging.getLogger(__name__)

_I = re.IGNORECASE


@dataclass(frozen=True)
class BoundaryRule:
    boundary: str
    patterns: tuple[re.Pattern[str], ...]
    severity: Severity
    confidence: float
    expected: str
    actual: str  # formatted with {excerpt}
    # only applies when the user message matches this
    user_trigger: re.Pattern[str] | None = None


BOUNDARY_RULES: tuple[BoundaryRule, ...] = (
    BoundaryRule(
        boundary="no-advice",
        patterns=tuple(
            re.compile(p, _I)
            for p in (
                r"\byou should\b",
                r"\byou must\b",
                r"\byou need to\b",
                r"\bi recommend\b",
                r"\byou ought to\b",
                r"\bthe best thing\b",
                r"\byou should consider\b",
            )
        ),
        severity="high",
        confidence=0.8,
        expected="Avoid prescriptive advice (should/must/recommend)",
        actual='Response contains advice: "{excerpt}..."',
    ),
    BoundaryRule(
        boundary="no-personal-info",
        patterns=tuple(
            re.compile(p, _I)
            for p in (
                r"\bi was born\b",
                r"\bi live in\b",
                r"\bi have\b.*\b(family|kids|partner)\b",
                r"\bmy childhood\b",
            )
        ),
        severity="high",
        confidence=0.7,
        expected="Avoid sharing personal biographical information",
        actual='Response contains personal info: "{excerpt}..."',
    ),
    BoundaryRule(
        boundary="no-deception",
        patterns=tuple(
            re.compile(p, _I)
            for p in (r"\bI am absolutely certain\b", r"\bwithout a doubt\b", r"\bI know for sure\b")
        ),
        severity="medium",
        confidence=0.6,
        expected="Express appropriate uncertainty on uncertain topics",
        actual="Over-confident claim on uncertain question",
        user_trigger=re.compile(r"\b(is it true|can you verify|are you sure)\b", _I),
    ),
)


@dataclass(frozen=True)
class StanceRule:
    stance: str
    patterns: tuple[re.Pattern[str], ...]
    expected: str
    actual: str


STANCE_RULES: dict[str, StanceRule] = {
    "strategic": StanceRule(
        stance="strategic",
        patterns=tuple(
            re.compile(p, _I)
            for p in (r"\bcode snippet\b", r"\bsyntax\b", r"\bAPI endpoint\b", r"\bfunction signature\b")
        ),
        expected="High-level strategic thinking, minimal tactical details",
        actual='Response is overly tactical: "{excerpt}..."',
    ),
    "technical": StanceRule(
        stance="technical",
        patterns=tuple(
            re.compile(p, _I) for p in (r"\bBig picture\b", r"\blong-term vision\b", r"\borganizational alignment\b")
        ),
        expected="Concrete technical depth, implementation focus",
        actual='Response is overly abstract: "{excerpt}..."',
    ),
}

# (tone class, pattern, max words or None), checked in order
TONE_RULES: tuple[tuple[str, re.Pattern[str], int | None], ...] = (
    ("apologetic", re.compile(r"\bsorry\b|\bapologize\b|\bi regret\b", _I), None),
    ("hedging", re.compile(r"\bi might\b|\bmight be\b|\bcould be\b|\bmaybe\b|\bperhaps\b", _I), 100),
    ("uncertain", re.compile(r"\bi'm not sure\b|\bi don't know\b|\bi can't say\b", _I), None),
    ("direct", re.compile(r"^\s*(?:certainly|absolutely|definitely|obviously)\b", _I), None),
    ("warm", re.compile(r"\bhappy to\b|\bdelight to\b|\bwarm regards\b|\bwith affection\b", _I), None),
    ("clinical", re.compile(r"\bfrom a technical perspective\b|\bfrom a clinical standpoint\b", _I), None),
)

# declared tone -> (detected tones that contradict it, expected text, confidence)
TONE_CONFLICTS: dict[str, tuple[frozenset[str], str, float]] = {
    "direct": (frozenset({"apologetic", "hedging", "uncertain"}), "Maintain direct, confident tone", 0.6),
    "warm": (frozenset({"cold", "clinical", "dismissive"}), "Maintain warm, empathetic tone", 0.5),
}


def detect_tone(response: str) -> str:
    words = len(response.split())
    for tone, pattern, max_words in TONE_RULES:
        if pattern.search(response) and (max_words is None or words < max_words):
            return tone
    return "neutral"


def count_name_usage(response: str, name: str | None) -> int:
    if not name:
        return 0
    return len(re.findall(rf"\b{re.escape(name)}\b", response, _I))


class SelfModelEnforcer:
    def __init__(
        self,
        manager: SelfModelManager | None = None,
        regenerator: SelfModelRegenerator | None = None,
    ) -> None:
        self.manager = manager
        self.regenerator = regenerator

    def analyze_response(
        self,
        response: str,
        model: SelfModel,
        user_message: str | None = None,
        name_usage_count: int | None = None,
    ) -> ViolationReport | None:
        """Return the first violation found, or None."""
        return (
            self.check_boundaries(response, model, user_message)
            or self.check_stance(response, model)
            or self.check_preferences(model, name_usage_count)
            or self.check_tone(response, model)
        )

    def check_boundaries(
        self, response: str, model: SelfModel, user_message: str | None = None
    ) -> ViolationReport | None:
        for rule in BOUNDARY_RULES:
            if not model.has_boundary(rule.boundary):
                continue
            if not any(p.search(response) for p in rule.patterns):
                continue
            if rule.user_trigger is not None and not (user_message and rule.user_trigger.search(user_message)):
                continue
            return ViolationReport(
                type="boundary",
                boundary=rule.boundary,
                severity=rule.severity,
                confidence=rule.confidence,
                expected_behavior=rule.expected,
                actual_behavior=rule.actual.format(excerpt=response[:100]),
            )
        return None

    def check_stance(self, response: str, model: SelfModel) -> ViolationReport | None:
        rule = STANCE_RULES.get(model.stances.get("default", "balanced"))
        if rule is None or not any(p.search(response) for p in rule.patterns):
            return None
        return ViolationReport(
            type="stance",
            stance=rule.stance,
            severity="low",
            confidence=0.5,
            expected_behavior=rule.expected,
            actual_behavior=rule.actual.format(excerpt=response[:100]),
        )

    def check_preferences(self, model: SelfModel, name_usage_count: int | None) -> ViolationReport | None:
        usage = model.preferences.get("name-usage")
        count = name_usage_count or 0
        if usage == "sparse" and count > 1:
            return ViolationReport(
                type="preference",
                preference="sparse-names",
                severity="low",
                confidence=0.9,
                expected_behavior="Use user name rarely (0-1 times per response)",
                actual_behavior=f"Name used {count} times in response",
            )
        if usage == "frequent" and count == 0:
            return ViolationReport(
                type="preference",
                preference="frequent-names",
                severity="low",
                confidence=0.6,
                expected_behavior="Use user name frequently (2+ times per response)",
                actual_behavior="Name not used in response",
            )
        return None

    def check_tone(self, response: str, model: SelfModel) -> ViolationReport | None:
        conflict = TONE_CONFLICTS.get(model.tone or "professional")
        if conflict is None:
            return None
        bad_tones, expected, confidence = conflict
        detected = detect_tone(response)
        if detected not in bad_tones:
            return None
        return ViolationReport(
            type="tone",
            severity="medium",
            confidence=confidence,
            expected_behavior=expected,
            actual_behavior=f"Detected tone: {detected}",
        )

    async def enforce(self, violation: ViolationReport, model: SelfModel) -> SelfModel | None:
        """Audit a violation and forward it to the regenerator.

        Returns the regenerated model when this violation crossed a
        threshold, else None. Never raises.
        """
        logger.warning(
            "Self-model violation (%s/%s, conf=%.2f) on version %s: %s",
            violation.type,
            violation.severity,
            violation.confidence,
            model.version,
            truncate(violation.actual_behavior, 120),
        )
        if self.manager is not None:
            await self.manager.log_event(
                model.version,
                "violation_detected",
                {
                    "violation_type": violation.type,
                    "severity": violation.severity,
                    "confidence": violation.confidence,
                    "expected_behavior": violation.expected_behavior,
                    "actual_behavior": violation.actual_behavior,
                },
            )
        if self.regenerator is None:
            return None
        try:
            return await self.regenerator.record_violation(violation, model)
        except Exception:
            logger.warning("Regeneration check failed for version %s", model.version, exc_info=True)
            return None
