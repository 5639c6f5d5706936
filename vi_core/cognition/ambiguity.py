"""Ambiguity gate: short-circuit turns too unclear to plan against.

A pure function of the utterance and a short history window. Checks run
in fixed priority order and the first hit wins:

    contradictory -> underspecified comparison -> malformed -> dangling reference
"""

from __future__ import annotations

import re
from collections.abc import Sequence

from vi_core.cognition.schemas import AmbiguityDetection

_I = re.IGNORECASE

# Short utterances that are complete on their own (prefix match)
RECOGNIZED_SHORT = (
    "hi", "hello", "hey", "thanks", "thank you", "ok", "okay", "yes", "yeah", "no", "nope",
    "sure", "go", "stop", "wait", "please", "sorry", "help", "quit", "bye", "goodbye",
    "compare", "list", "show", "tell", "what", "why", "how", "when", "where", "who",
)

REFERENCE_KEYWORDS = (
    "that", "this", "it", "which", "those", "these",
    "the one", "previous", "earlier", "last", "before", "recently",
)

_REFERENCE = re.compile(r"\b(" + "|".join(re.escape(k) for k in REFERENCE_KEYWORDS) + r")\b", _I)

_GIBBERISH: list[re.Pattern[str]] = [
    re.compile(r"so\s+what\s+not", _I),
    re.compile(r"when\s+time\s+we", _I),
    re.compile(r"the\s+the\s", _I),
    re.compile(r"and\s+and\s", _I),
]

_ALL = re.compile(r"\b(all|everything|everyone|every)\b", _I)
_NONE = re.compile(r"\b(none|nothing|nobody|no one|exclude|exclude all|exclude everything)\b", _I)
_AFFIRMATIVE = re.compile(r"\b(yes|sure|okay|ok|do it|go|proceed)\b", _I)
_NEGATIVE = re.compile(r"\b(no|don't|dont|stop|don't do|never)\b", _I)

_COMPARATIVE = re.compile(r"\b(better|worse|different|same|similar|like)\b", _I)
_THAN_CLAUSE = re.compile(r"\s+than\s+", _I)
_IMPLIED_COMPARISON = re.compile(r"\b(was|is|are|were)\s+(better|worse|different|same|similar|like)\b", _I)
_COMPARE = re.compile(r"\bcompare\b", _I)
_COMPARE_ITEMS = re.compile(r"\b(and|or|vs|versus|with)\b", _I)
_PREFER = re.compile(r"\b(prefer|like)\b", _I)
_PREFER_OBJECT = re.compile(r"\b(prefer|like)\s+\w+", _I)

SHORT_CONTRADICTION_LEN = 30
SHORT_PREFERENCE_LEN = 20
DANGLING_MIN_LEN = 5
SELF_CONTAINED_LEN = 50
MIN_HISTORY_CHARS = 5


def _hit(kind: str, confidence: float, prompt: str) -> AmbiguityDetection:
    return AmbiguityDetection(type=kind, confidence=confidence, clarification_prompt=prompt)


class AmbiguityGate:
    def detect(self, text: str, recent_history: Sequence[str] | None = None) -> AmbiguityDetection | None:
        """Return a detection record, or None to proceed normally."""
        history = list(recent_history or [])
        detection = (
            self.detect_contradictory(text)
            or self.detect_underspecified_comparison(text)
            or self.detect_malformed(text)
        )
        if detection is None and len(text.strip()) > DANGLING_MIN_LEN:
            detection = self.detect_dangling_reference(text, history)
        return detection

    def detect_contradictory(self, text: str) -> AmbiguityDetection | None:
        lowered = text.lower().strip()
        if _ALL.search(lowered) and _NONE.search(lowered):
            return _hit(
                "contradictory_request",
                0.95,
                "That request is contradictory. You're asking for all X but excluding all X. "
                "What do you actually want?",
            )
        if _AFFIRMATIVE.search(lowered) and _NEGATIVE.search(lowered) and len(lowered) < SHORT_CONTRADICTION_LEN:
            return _hit("contradictory_request", 0.85, "You're saying both yes and no. Which is it?")
        return None

    def detect_underspecified_comparison(self, text: str) -> AmbiguityDetection | None:
        lowered = text.lower().strip()
        if _COMPARATIVE.search(lowered) and not _THAN_CLAUSE.search(lowered):
            if _IMPLIED_COMPARISON.search(lowered):
                return _hit(
                    "underspecified_comparison",
                    0.8,
                    "Better/worse than what? Can you specify what you're comparing?",
                )
        if _COMPARE.search(lowered) and not _COMPARE_ITEMS.search(lowered):
            return _hit("underspecified_comparison", 0.85, "Compare that to what? Please specify both items.")
        if _PREFER.search(lowered) and len(lowered) < SHORT_PREFERENCE_LEN and not _PREFER_OBJECT.search(lowered):
            return _hit("underspecified_comparison", 0.75, "What specifically? Prefer or like what?")
        return None

    def detect_malformed(self, text: str) -> AmbiguityDetection | None:
        stripped = text.strip()
        if not stripped:
            return _hit("malformed_query", 1.0, "I didn't catch that. What are you asking?")

        tokens = stripped.split()
        if len(tokens) <= 2:
            normalized = stripped.lower()
            if not any(normalized.startswith(p) for p in RECOGNIZED_SHORT):
                return _hit(
                    "malformed_query", 0.85, "I'm not sure what you mean. Can you rephrase that more clearly?"
                )

        lowered = [t.lower() for t in tokens]
        for a, b, c in zip(lowered, lowered[1:], lowered[2:]):
            if a == b == c:
                return _hit("malformed_query", 0.9, "That doesn't look right. What are you trying to say?")

        if any(p.search(stripped) for p in _GIBBERISH):
            return _hit("malformed_query", 0.95, "That phrase doesn't parse. Did you mean something else?")
        return None

    def detect_dangling_reference(self, text: str, recent_history: list[str]) -> AmbiguityDetection | None:
        if not _REFERENCE.search(text):
            return None
        if len(text.strip()) > SELF_CONTAINED_LEN:
            return None
        if not recent_history:
            return _hit(
                "dangling_reference",
                0.9,
                "I don't have context for what you're referring to. What are you talking about?",
            )
        if len(" ".join(recent_history).strip()) < MIN_HISTORY_CHARS:
            return _hit(
                "dangling_reference", 0.85, "I've lost context. Can you remind me what you're referring to?"
            )
        return None
