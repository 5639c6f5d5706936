"""Lore-mode gate: decide per message whether canon context is injected.

Explicit commands ("lore mode", "no lore", ...) win and lock the session
into that mode until another explicit command. Without a lock the mode is
auto-detected: lore keywords plus at least one matching canon entity.
"""

from __future__ import annotations

import logging
import re

from vi_core.grounding.canon import CanonResolver
from vi_core.grounding.schemas import ContradictionReport, LoreModeContext, VerificationStatus

logger = logging.getLogger(__name__)

_FORCE_ON = re.compile(r"\b(lore mode|verse mode|enable lore|force lore)\b", re.IGNORECASE)
_FORCE_OFF = re.compile(r"\b(no lore|disable lore|normal mode|exit verse)\b", re.IGNORECASE)

_BADGES = {
    VerificationStatus.CANON: "✓",
    VerificationStatus.EXTENDED_CANON: "◆",
}

HIGH_CONFIDENCE_CANON = 0.9
LOW_CANON_CONFIDENCE = 0.5


class LoreModeEngine:
    def __init__(self, resolver: CanonResolver, user_default: bool = False) -> None:
        self.resolver = resolver
        self.user_default = user_default
        self._user_prefs: dict[str, bool] = {}
        self._session_locks: dict[str, bool] = {}

    # ------------------------------------------------------------------
    # Preferences and locks
    # ------------------------------------------------------------------

    def set_user_preference(self, user_id: str, enabled: bool) -> None:
        self._user_prefs[user_id] = enabled

    def get_user_preference(self, user_id: str) -> bool:
        return self._user_prefs.get(user_id, self.user_default)

    def session_lock(self, session_id: str) -> bool | None:
        return self._session_locks.get(session_id)

    def unlock_session(self, session_id: str) -> None:
        self._session_locks.pop(session_id, None)

    # ------------------------------------------------------------------
    # determine_lore_mode()
    # ------------------------------------------------------------------

    async def determine_lore_mode(
        self, user_id: str, message: str, session_id: str | None = None
    ) -> LoreModeContext:
        # "disable lore mode" contains "lore mode", so opt-out is checked first
        force_off = bool(_FORCE_OFF.search(message))
        force_on = not force_off and bool(_FORCE_ON.search(message))
        locked_mode = self._session_locks.get(session_id) if session_id else None
        preference = self.get_user_preference(user_id)

        if force_on or force_off:
            enabled = force_on
            reason = f"User explicit: lore mode {'enabled' if enabled else 'disabled'}"
            if session_id:
                self._session_locks[session_id] = enabled
            locked = session_id is not None
        elif locked_mode is not None:
            enabled = locked_mode
            reason = f"Session locked: lore mode {'enabled' if enabled else 'disabled'}"
            locked = True
        else:
            locked = False
            enabled, reason = await self._auto_detect(message, preference)

        resolution = None
        if enabled:
            resolution = await self.resolver.try_resolve(message)

        return LoreModeContext(
            enabled=enabled,
            locked=locked,
            detected_entities=[e.id for e in resolution.entities] if resolution else [],
            resolution=resolution,
            reason=reason,
        )

    async def _auto_detect(self, message: str, preference: bool) -> tuple[bool, str]:
        if not self.resolver.is_lore_query(message):
            # a user default never forces lore onto clearly unrelated queries
            return False, "No lore keywords detected"

        entities = await self.resolver.find_entities(message)
        if entities:
            return True, "Auto-detected: lore keywords + canon entities found"
        if preference:
            return True, "User default: lore mode enabled"
        return False, "Lore keywords present but no canon entities matched"

    # ------------------------------------------------------------------
    # inject_canon_context()
    # ------------------------------------------------------------------

    async def inject_canon_context(
        self, user_id: str, message: str, session_id: str | None = None
    ) -> tuple[LoreModeContext, str]:
        """Return the lore decision and the canon text block to inject ("" when off)."""
        context = await self.determine_lore_mode(user_id, message, session_id)
        resolution = context.resolution
        if not context.enabled or resolution is None:
            return context, ""

        parts = ["**VERSE CONTEXT - ASTRALIS CANON:**\n"]
        if resolution.entities:
            parts.append("**Known Entities:**")
            parts.extend(f"- **{e.name}** ({e.entity_type.value}): {e.description}" for e in resolution.entities)
            parts.append("")
        if resolution.facts:
            parts.append("**Canon Facts:**")
            for fact in resolution.facts:
                badge = _BADGES.get(fact.verification_status, "?")
                parts.append(f"- {badge} {fact.predicate}: {fact.value or fact.object_id}")
            parts.append("")
        if resolution.rules:
            parts.append("**Verse Rules:**")
            parts.extend(f"- **{r.title}**: {r.description}" for r in resolution.rules)
            parts.append("")

        text = "\n".join(parts)
        text += self.resolver.format_citations(resolution.citations)
        text += self.resolver.format_warnings(resolution.warnings)
        text += self.resolver.format_uncertainties(resolution.uncertainties)
        text += (
            "\n\n**Respond using canon information when available. "
            "Indicate uncertainty when facts are unavailable or disputed.**\n"
        )
        return context, text

    # ------------------------------------------------------------------
    # Response checks
    # ------------------------------------------------------------------

    async def detect_canon_contradictions(self, user_message: str, response: str) -> ContradictionReport:
        """Flag high-confidence canon facts a response fails to reflect.

        Heuristic: a canon fact (confidence > 0.9) whose value is absent
        from the response, in a response that does not admit uncertainty.
        """
        resolution = await self.resolver.try_resolve(user_message)
        report = ContradictionReport()
        if resolution is None or not resolution.facts:
            return report

        lowered = response.lower()
        hedged = "don't know" in lowered or "uncertain" in lowered
        for fact in resolution.facts:
            if fact.verification_status != VerificationStatus.CANON or fact.confidence <= HIGH_CONFIDENCE_CANON:
                continue
            value = (fact.value or "").lower()
            if value and value not in lowered and not hedged:
                report.contradictions.append(
                    f'Possible contradiction on {fact.predicate}: Canon states "{value}" '
                    "but response doesn't mention it"
                )
                report.severity = "warning"
        return report

    @staticmethod
    def format_canon_response(response: str, context: LoreModeContext) -> str:
        resolution = context.resolution
        if not context.enabled or resolution is None:
            return response
        if resolution.confidence < LOW_CANON_CONFIDENCE:
            return response + "\n\n⚠️ *Limited canon information available for this query.*"
        if resolution.uncertainties:
            return response + "\n\n❓ *Some information about this is uncertain or disputed in canon.*"
        return response
