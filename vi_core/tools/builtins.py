"""Built-in tools: list_tools, get_current_time, calculate, search_memory,
get_user_context.

Tools are built as closures over the registry (and memory engine, when one
is supplied) and registered through register_builtin_tools().
"""

from __future__ import annotations

import ast
import logging
import math
import operator
from typing import TYPE_CHECKING, Any

from vi_core.tools.registry import ToolRegistry
from vi_core.tools.schemas import Tool, ToolCategory, ToolContext, ToolPermission

if TYPE_CHECKING:
    from vi_core.memory.engine import MemoryEngine

logger = logging.getLogger(__name__)

_MAX_EXPRESSION_CHARS = 200
_MAX_EXPONENT = 100
_MAX_INT_BITS = 1024

_BIN_OPS: dict[type, Any] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY_OPS: dict[type, Any] = {ast.UAdd: operator.pos, ast.USub: operator.neg}
_FUNCTIONS: dict[str, Any] = {
    "sqrt": math.sqrt,
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
    "abs": abs,
    "floor": math.floor,
    "ceil": math.ceil,
    "round": round,
}


# ---------------------------------------------------------------------------
# Safe arithmetic
# ---------------------------------------------------------------------------


def safe_eval(expression: str) -> float:
    """Evaluate an arithmetic expression without exec/eval.

    Only numbers, + - * / % **, parentheses and the whitelisted functions
    are accepted; anything else raises ValueError.
    """
    if len(expression) > _MAX_EXPRESSION_CHARS:
        raise ValueError("Expression too long")
    expression = expression.replace("Math.", "")
    try:
        tree = ast.parse(expression, mode="eval")
    except SyntaxError as e:
        raise ValueError(f"Invalid expression: {expression}") from e
    return _eval_node(tree.body)


def _eval_node(node: ast.AST) -> float:
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
        return _bounded(node.value)
    if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
        left, right = _eval_node(node.left), _eval_node(node.right)
        if isinstance(node.op, ast.Pow) and abs(right) > _MAX_EXPONENT:
            raise ValueError("Exponent too large")
        return _bounded(_BIN_OPS[type(node.op)](left, right))
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _bounded(_UNARY_OPS[type(node.op)](_eval_node(node.operand)))
    if isinstance(node, ast.Call) and isinstance(node.func, ast.Name):
        func = _FUNCTIONS.get(node.func.id)
        if func is None or node.keywords:
            raise ValueError(f"Disallowed function: {node.func.id}")
        return _bounded(func(*(_eval_node(a) for a in node.args)))
    if isinstance(node, ast.Name):
        raise ValueError(f"Disallowed name: {node.id}")
    raise ValueError(f"Disallowed expression element: {type(node).__name__}")


def _bounded(value: Any) -> float:
    # every intermediate is checked, so a single ** never starts from an
    # operand wider than _MAX_INT_BITS
    if isinstance(value, complex):
        raise ValueError("Result is not a real number")
    if isinstance(value, int) and value.bit_length() > _MAX_INT_BITS:
        raise ValueError("Result too large")
    return value


# ---------------------------------------------------------------------------
# Tool factories
# ---------------------------------------------------------------------------


def create_builtin_tools(registry: ToolRegistry, memory: MemoryEngine | None = None) -> list[Tool]:
    """Build the built-in tool set. search_memory is only included with a memory engine."""

    async def list_tools(params: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        tools = registry.list_enabled()
        category = params.get("category")
        if category:
            tools = [t for t in tools if t.category == category]
        return {
            "tools": [
                {"name": t.name, "description": t.description, "category": str(t.category)}
                for t in tools
            ],
            "count": len(tools),
        }

    async def get_current_time(params: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        fmt = params.get("format", "iso")
        now = context.timestamp
        if fmt == "unix":
            return {"timestamp": int(now.timestamp()), "format": "unix"}
        if fmt == "readable":
            return {"readable": now.strftime("%A, %B %d, %Y %H:%M:%S %Z"), "format": "readable"}
        return {"iso": now.isoformat(), "format": "iso"}

    async def calculate(params: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        expression = params["expression"]
        result = safe_eval(expression)
        return {"expression": expression, "result": result}

    async def get_user_context(params: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        user_context: dict[str, Any] = {
            "user_id": context.user_id,
            "user_name": context.metadata.get("user_name", "User"),
            "session_id": context.session_id,
            "current_time": context.timestamp.isoformat(),
        }
        if params.get("include_preferences", True):
            user_context["preferences"] = context.metadata.get(
                "preferences",
                {"language": "en", "timezone": "UTC", "verbosity": "medium"},
            )
        return user_context

    tools = [
        Tool(
            name="list_tools",
            description="List the tools available to the assistant",
            category=ToolCategory.META,
            input_schema={
                "type": "object",
                "properties": {"category": {"type": "string", "enum": [c.value for c in ToolCategory]}},
            },
            execute=list_tools,
            rate_limit=100,
            cost=0,
            timeout_ms=5000,
        ),
        Tool(
            name="get_current_time",
            description="Get the current date and time",
            long_description="Returns the current time as ISO-8601, unix seconds, or a readable string.",
            category=ToolCategory.SYSTEM,
            input_schema={
                "type": "object",
                "properties": {"format": {"type": "string", "enum": ["iso", "unix", "readable"]}},
            },
            examples=[{"input": {"format": "iso"}, "output": {"iso": "2026-01-01T00:00:00+00:00"}}],
            execute=get_current_time,
            rate_limit=1000,
            cost=0,
            timeout_ms=1000,
        ),
        Tool(
            name="calculate",
            description="Evaluate a math expression (e.g. 2 + 2, sqrt(16), sin(0))",
            category=ToolCategory.COMPUTE,
            input_schema={
                "type": "object",
                "properties": {
                    "expression": {"type": "string", "minLength": 1, "maxLength": _MAX_EXPRESSION_CHARS}
                },
                "required": ["expression"],
            },
            examples=[{"input": {"expression": "sqrt(16)"}, "output": {"result": 4.0}}],
            execute=calculate,
            permissions=[ToolPermission.COMPUTE],
            rate_limit=1000,
            cost=0,
            timeout_ms=1000,
        ),
        Tool(
            name="get_user_context",
            description="Get current user context and preferences",
            category=ToolCategory.SYSTEM,
            input_schema={
                "type": "object",
                "properties": {"include_preferences": {"type": "boolean"}},
            },
            execute=get_user_context,
            permissions=[ToolPermission.USER_CONTEXT],
            rate_limit=100,
            cost=0,
            timeout_ms=1000,
        ),
    ]

    if memory is not None:

        async def search_memory(params: dict[str, Any], context: ToolContext) -> dict[str, Any]:
            query = params["query"]
            kind = params.get("type", "all")
            limit = params.get("limit", 5)
            dimensions = None if kind == "all" else [kind]
            results = await memory.retrieve_relevant(query, context.user_id, limit=limit, dimensions=dimensions)
            return {
                "query": query,
                "results": [
                    {
                        "id": str(r.record.id),
                        "text": r.record.text,
                        "type": str(r.record.dimension),
                        "similarity": round(r.similarity, 4),
                        "relevance": round(r.record.relevance, 4),
                    }
                    for r in results
                ],
                "count": len(results),
            }

        tools.append(
            Tool(
                name="search_memory",
                description="Search the user's memory using semantic search",
                long_description=(
                    "Semantic search across stored memories (episodic, semantic, relational, "
                    "commitment), ranked by similarity times relevance."
                ),
                category=ToolCategory.MEMORY,
                input_schema={
                    "type": "object",
                    "properties": {
                        "query": {"type": "string"},
                        "type": {
                            "type": "string",
                            "enum": ["all", "episodic", "semantic", "relational", "commitment"],
                        },
                        "limit": {"type": "integer", "minimum": 1, "maximum": 20},
                    },
                    "required": ["query"],
                },
                execute=search_memory,
                permissions=[ToolPermission.MEMORY],
                rate_limit=50,
                cost=1,
                timeout_ms=5000,
            )
        )

    return tools


def register_builtin_tools(registry: ToolRegistry, memory: MemoryEngine | None = None) -> None:
    """Register every built-in tool on the registry."""
    for tool in create_builtin_tools(registry, memory):
        registry.register(tool)
    logger.info("Registered %d built-in tools", registry.count())
