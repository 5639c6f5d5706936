"""Tool registry: an in-memory catalog of tools keyed by unique name.

Tools are registered once at startup and toggled with enable()/disable()
rather than removed. Registration validates the tool record so that bad
tools fail at startup instead of mid-turn.
"""

from __future__ import annotations

import logging

from jsonschema import Draft202012Validator, SchemaError

from vi_core.errors import ToolNotFoundError, ToolRegistrationError
from vi_core.tools.schemas import Tool, ToolCategory, ToolMetadata, ToolPermission

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Catalog of registered tools.

    Not a global: construct one per process (or per test) and inject it.
    """

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """Validate and add a tool. Raises ToolRegistrationError on any problem."""
        if not tool.name or not tool.name.strip():
            raise ToolRegistrationError("Tool must have a name")
        if not tool.description or not tool.description.strip():
            raise ToolRegistrationError(f"Tool '{tool.name}' must have a description")
        if not callable(tool.execute):
            raise ToolRegistrationError(f"Tool '{tool.name}' must have an execute function")
        if not isinstance(tool.input_schema, dict) or not tool.input_schema:
            raise ToolRegistrationError(f"Tool '{tool.name}' must have an input schema")
        try:
            Draft202012Validator.check_schema(tool.input_schema)
        except SchemaError as e:
            raise ToolRegistrationError(f"Tool '{tool.name}' has an invalid input schema: {e.message}") from e
        if tool.name in self._tools:
            raise ToolRegistrationError(f"Tool '{tool.name}' is already registered")

        try:
            tool.category = ToolCategory(tool.category)
            tool.permissions = [ToolPermission(p) for p in tool.permissions]
        except ValueError as e:
            raise ToolRegistrationError(f"Tool '{tool.name}': {e}") from e

        if tool.rate_limit <= 0:
            raise ToolRegistrationError(f"Tool '{tool.name}' rate limit must be positive")
        if tool.cost < 0:
            raise ToolRegistrationError(f"Tool '{tool.name}' cost must be >= 0")
        if tool.timeout_ms <= 0:
            raise ToolRegistrationError(f"Tool '{tool.name}' timeout must be positive")

        self._tools[tool.name] = tool
        logger.debug("Registered tool %s v%s (%s)", tool.name, tool.version, tool.category)

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def get_or_raise(self, name: str) -> Tool:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def exists(self, name: str) -> bool:
        return name in self._tools

    def count(self) -> int:
        return len(self._tools)

    def list(self) -> list[Tool]:
        return list(self._tools.values())

    def list_enabled(self) -> list[Tool]:
        return [t for t in self._tools.values() if t.enabled]

    def list_metadata(self) -> list[ToolMetadata]:
        return [ToolMetadata.from_tool(t) for t in self._tools.values()]

    def search(self, keyword: str) -> list[Tool]:
        """Case-insensitive match on name, description or long description."""
        needle = keyword.lower()
        return [
            t
            for t in self._tools.values()
            if needle in t.name.lower()
            or needle in t.description.lower()
            or needle in t.long_description.lower()
        ]

    def by_category(self, category: ToolCategory | str) -> list[Tool]:
        category = ToolCategory(category)
        return [t for t in self._tools.values() if t.category == category]

    def requiring_permission(self, permission: ToolPermission | str) -> list[Tool]:
        permission = ToolPermission(permission)
        return [t for t in self._tools.values() if permission in t.permissions]

    def enable(self, name: str) -> None:
        self.get_or_raise(name).enabled = True

    def disable(self, name: str) -> None:
        self.get_or_raise(name).enabled = False
