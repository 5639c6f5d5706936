"""Exception types raised across vi_core.

Tool sandbox rejections are not exceptions; they come back as ToolResult
statuses. These classes cover the failures callers are expected to handle.
"""

from __future__ import annotations


class ViCoreError(Exception):
    """Base class for vi_core errors."""


class ToolRegistrationError(ViCoreError):
    """A tool failed validation at registration time."""


class ToolNotFoundError(ViCoreError):
    """Lookup of an unknown tool name."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Tool not found: {name}")
        self.name = name


class CanonNotFoundError(ViCoreError):
    """Strict canon resolution matched no entity."""

    def __init__(self, query: str) -> None:
        super().__init__(f'No canon entity matches "{query}"')
        self.query = query


class InferenceError(ViCoreError):
    """Transport or protocol failure talking to the inference provider."""


class GenerationError(ViCoreError):
    """Response generation failed; the turn cannot produce output."""
