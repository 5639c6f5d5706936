"""Deterministic tool selection.

Three tiers, first hit wins:
  1. keyword table over the intent description  (confidence 0.9)
  2. intent-category table                      (confidence 0.6)
  3. list_tools as the catch-all                 (confidence 0.3)

Disabled or unregistered tools are skipped at every tier.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from vi_core.tools.registry import ToolRegistry
from vi_core.tools.schemas import ToolCategory, ToolSelection

if TYPE_CHECKING:
    from vi_core.cognition.schemas import Intent

KEYWORD_CONFIDENCE = 0.9
INTENT_CONFIDENCE = 0.6
DEFAULT_CONFIDENCE = 0.3
DEFAULT_TOOL = "list_tools"

# (pattern, keyword, tool), checked in order
_KEYWORD_RULES: list[tuple[re.Pattern[str], str, str]] = [
    (re.compile(rf"\b{kw}\b", re.IGNORECASE), kw, tool)
    for kw, tool in [
        ("weather", "get_weather"),
        ("time", "get_current_time"),
        ("calculate", "calculate"),
        ("math", "calculate"),
        ("memory", "search_memory"),
        ("search", "search_memory"),
        ("remember", "store_memory"),
        ("tools", "list_tools"),
        ("help", "list_tools"),
        ("compute", "calculate"),
    ]
]

_INTENT_TOOLS: dict[str, list[str]] = {
    "query": ["list_tools"],
    "command": ["execute_command", "send_email"],
    "conversation": [],
    "clarification": ["list_tools"],
    "feedback": [],
    "unknown": ["list_tools"],
}


class ToolSelector:
    def __init__(self, registry: ToolRegistry) -> None:
        self._registry = registry

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    def _usable(self, name: str) -> bool:
        tool = self._registry.get(name)
        return tool is not None and tool.enabled

    def select_for_intent(self, intent: Intent) -> ToolSelection | None:
        text = intent.description or ""
        for pattern, keyword, tool_name in _KEYWORD_RULES:
            if pattern.search(text) and self._usable(tool_name):
                return ToolSelection(
                    tool_name=tool_name,
                    confidence=KEYWORD_CONFIDENCE,
                    reasoning=f'Keyword "{keyword}" matches tool "{tool_name}"',
                )

        for tool_name in _INTENT_TOOLS.get(intent.category, []):
            if self._usable(tool_name):
                return ToolSelection(
                    tool_name=tool_name,
                    confidence=INTENT_CONFIDENCE,
                    reasoning=f'Intent category "{intent.category}" suggests "{tool_name}"',
                )

        if self._usable(DEFAULT_TOOL):
            return ToolSelection(
                tool_name=DEFAULT_TOOL,
                confidence=DEFAULT_CONFIDENCE,
                reasoning="No specific tool matched; listing available tools",
            )
        return None

    def select_by_name(self, name: str, parameters: dict | None = None) -> ToolSelection | None:
        if not self._usable(name):
            return None
        return ToolSelection(
            tool_name=name,
            confidence=1.0,
            reasoning="Explicitly requested",
            parameters=parameters or {},
        )

    def select_by_category(
        self, category: ToolCategory | str, parameters: dict | None = None
    ) -> ToolSelection | None:
        for tool in self._registry.by_category(category):
            if tool.enabled:
                return ToolSelection(
                    tool_name=tool.name,
                    confidence=0.7,
                    reasoning=f'Selected from "{ToolCategory(category)}" category',
                    parameters=parameters or {},
                )
        return None

    def suggest_tools(self, query: str) -> list[ToolSelection]:
        """Rank enabled tools against a free-text query."""
        needle = query.lower()
        suggestions: list[ToolSelection] = []
        exact: str | None = None
        for tool in self._registry.list_enabled():
            if tool.name.lower() == needle:
                exact = tool.name
                suggestions.append(
                    ToolSelection(tool_name=tool.name, confidence=1.0, reasoning="Exact name match")
                )
                break
        for tool in self._registry.list_enabled():
            if tool.name == exact:
                continue
            if needle in tool.description.lower() or needle in tool.name.lower():
                suggestions.append(
                    ToolSelection(
                        tool_name=tool.name,
                        confidence=0.8,
                        reasoning=f'Description contains "{query}"',
                    )
                )
        return suggestions
