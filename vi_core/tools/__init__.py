"""Tool framework: registry, selector and sandboxed runner.

Public API: ToolRegistry, ToolSelector, ToolRunner + schema types.
"""

from vi_core.tools.builtins import create_builtin_tools, register_builtin_tools
from vi_core.tools.registry import ToolRegistry
from vi_core.tools.runner import (
    CostTracker,
    InMemoryToolAuditStore,
    RateLimiter,
    ToolAuditStore,
    ToolRunner,
    sanitize_output,
    validate_input,
)
from vi_core.tools.schemas import (
    Tool,
    ToolAudit,
    ToolCategory,
    ToolContext,
    ToolMetadata,
    ToolPermission,
    ToolResult,
    ToolSelection,
    ToolStatus,
)
from vi_core.tools.selector import ToolSelector

__all__ = [
    "ToolRegistry",
    "ToolRunner",
    "ToolSelector",
    "create_builtin_tools",
    "register_builtin_tools",
    # Runner pieces
    "CostTracker",
    "InMemoryToolAuditStore",
    "RateLimiter",
    "ToolAuditStore",
    "sanitize_output",
    "validate_input",
    # Types
    "Tool",
    "ToolAudit",
    "ToolCategory",
    "ToolContext",
    "ToolMetadata",
    "ToolPermission",
    "ToolResult",
    "ToolSelection",
    "ToolStatus",
]
