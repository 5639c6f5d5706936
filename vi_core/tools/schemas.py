"""Tool framework types.

A Tool is a closed capability record: name, schema, permissions, limits and
an async execute callable. Categories and permissions are StrEnums so that
registration can reject anything outside the known set.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field

from vi_core.utils import utcnow


class ToolCategory(StrEnum):
    SEARCH = "search"
    COMPUTE = "compute"
    FILE = "file"
    SYSTEM = "system"
    API = "api"
    MEMORY = "memory"
    META = "meta"


class ToolPermission(StrEnum):
    MEMORY = "memory"
    NETWORK = "network"
    FILESYSTEM = "filesystem"
    SHELL = "shell"
    CALENDAR = "calendar"
    EMAIL = "email"
    COMPUTE = "compute"
    USER_CONTEXT = "user_context"


class ToolStatus(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    PERMISSION_DENIED = "permission_denied"
    RATE_LIMITED = "rate_limited"


@dataclass
class ToolContext:
    """Who is calling a tool, and from which session."""

    user_id: str
    session_id: str | None = None
    timestamp: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)


ToolExecute = Callable[[dict[str, Any], ToolContext], Awaitable[Any]]


@dataclass
class Tool:
    name: str
    description: str
    category: ToolCategory
    input_schema: dict[str, Any]
    execute: ToolExecute
    version: str = "1.0.0"
    long_description: str = ""
    examples: list[dict[str, Any]] = field(default_factory=list)
    permissions: list[ToolPermission] = field(default_factory=list)
    rate_limit: int = 60  # calls per minute, per user
    cost: float = 0.0  # credits per execution
    timeout_ms: int = 5000
    enabled: bool = True


class ToolMetadata(BaseModel):
    """Serializable view of a Tool (no execute callable)."""

    name: str
    description: str
    category: ToolCategory
    version: str
    input_schema: dict[str, Any]
    permissions: list[ToolPermission]
    rate_limit: int
    cost: float
    timeout_ms: int
    enabled: bool

    @classmethod
    def from_tool(cls, tool: Tool) -> ToolMetadata:
        return cls(
            name=tool.name,
            description=tool.description,
            category=tool.category,
            version=tool.version,
            input_schema=tool.input_schema,
            permissions=list(tool.permissions),
            rate_limit=tool.rate_limit,
            cost=tool.cost,
            timeout_ms=tool.timeout_ms,
            enabled=tool.enabled,
        )


class ToolAudit(BaseModel):
    tool_name: str
    user_id: str
    session_id: str | None = None
    params: dict[str, Any] = Field(default_factory=dict)
    duration_ms: float = 0.0
    cost: float = 0.0
    status: ToolStatus
    timestamp: datetime = Field(default_factory=utcnow)


class ToolResult(BaseModel):
    tool_name: str
    status: ToolStatus
    data: Any = None
    error: str | None = None
    warnings: list[str] = Field(default_factory=list)
    duration_ms: float = 0.0
    cost: float = 0.0
    audit: ToolAudit | None = None

    @property
    def success(self) -> bool:
        return self.status == ToolStatus.SUCCESS


class ToolSelection(BaseModel):
    tool_name: str
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str
    parameters: dict[str, Any] = Field(default_factory=dict)
