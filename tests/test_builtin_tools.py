"""Tests for the built-in tool set and safe arithmetic."""

from datetime import UTC, datetime

import pytest

from vi_core.memory.schemas import MemoryDimension, MemoryInput
from vi_core.tools.builtins import safe_eval
from vi_core.tools.runner import ToolRunner
from vi_core.tools.schemas import ToolContext, ToolStatus

FIXED_TIME = datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)


def _ctx(**metadata) -> ToolContext:
    return ToolContext(user_id="user-1", session_id="sess-1", timestamp=FIXED_TIME, metadata=metadata)


# ---------------------------------------------------------------------------
# safe_eval
# ---------------------------------------------------------------------------


class TestSafeEval:
    @pytest.mark.parametrize(
        "expression, expected",
        [
            ("2 + 2", 4),
            ("(1 + 2) * 3", 9),
            ("sqrt(16)", 4.0),
            ("Math.sqrt(9)", 3.0),
            ("-5 % 3", 1),
            ("2 ** 10", 1024),
            ("abs(-2.5)", 2.5),
        ],
    )
    def test_arithmetic(self, expression, expected):
        assert safe_eval(expression) == expected

    @pytest.mark.parametrize(
        "expression",
        [
            "__import__('os')",
            "open('x')",
            "x + 1",
            "2 ** 1000",
            "[1, 2]",
            "1 +",
            "'a' * 3",
        ],
    )
    def test_rejects_non_arithmetic(self, expression):
        with pytest.raises(ValueError):
            safe_eval(expression)

    def test_rejects_long_expression(self):
        with pytest.raises(ValueError, match="too long"):
            safe_eval("1+" * 150 + "1")

    @pytest.mark.parametrize(
        "expression",
        [
            "(((((9**99)**99)**99)**99)**9)",
            "(2**100)**100 * 3",
            "9**99 * 9**99 * 9**99 * 9**99",
        ],
    )
    def test_rejects_runaway_integers(self, expression):
        with pytest.raises(ValueError, match="too large"):
            safe_eval(expression)

    def test_rejects_complex_result(self):
        with pytest.raises(ValueError, match="real number"):
            safe_eval("(-8) ** 0.5")

    def test_division_by_zero_propagates(self):
        with pytest.raises(ZeroDivisionError):
            safe_eval("1 / 0")


# ---------------------------------------------------------------------------
# Tools through the runner
# ---------------------------------------------------------------------------


def test_builtin_set_without_memory(registry):
    names = {t.name for t in registry.list()}
    assert names == {"list_tools", "get_current_time", "calculate", "get_user_context"}


def test_search_memory_registered_with_memory(registry_with_memory):
    tool = registry_with_memory.get("search_memory")
    assert tool is not None
    assert tool.cost == 1


async def test_calculate(registry):
    result = await ToolRunner(registry).execute("calculate", {"expression": "sqrt(16) + 1"}, _ctx())
    assert result.success
    assert result.data == {"expression": "sqrt(16) + 1", "result": 5.0}


async def test_calculate_bad_expression_fails(registry):
    result = await ToolRunner(registry).execute("calculate", {"expression": "import os"}, _ctx())
    assert result.status == ToolStatus.FAILURE
    assert result.data is None


async def test_calculate_nested_powers_fail_fast(registry):
    result = await ToolRunner(registry).execute(
        "calculate", {"expression": "(((((9**99)**99)**99)**99)**9)"}, _ctx()
    )
    assert result.status == ToolStatus.FAILURE
    assert "too large" in result.error
    assert result.duration_ms < 1000


async def test_schema_bounds_enforced(registry_with_memory):
    runner = ToolRunner(registry_with_memory)
    empty = await runner.execute("calculate", {"expression": ""}, _ctx())
    assert empty.status == ToolStatus.FAILURE
    over = await runner.execute("search_memory", {"query": "tea", "limit": 500}, _ctx())
    assert over.status == ToolStatus.FAILURE
    assert any(w.startswith("limit:") for w in over.warnings)


async def test_get_current_time_formats(registry):
    runner = ToolRunner(registry)
    iso = await runner.execute("get_current_time", {}, _ctx())
    assert iso.data == {"iso": "2026-01-02T03:04:05+00:00", "format": "iso"}

    unix = await runner.execute("get_current_time", {"format": "unix"}, _ctx())
    assert unix.data["timestamp"] == int(FIXED_TIME.timestamp())

    bad = await runner.execute("get_current_time", {"format": "roman"}, _ctx())
    assert bad.status == ToolStatus.FAILURE


async def test_list_tools_filters_category(registry):
    runner = ToolRunner(registry)
    everything = await runner.execute("list_tools", {}, _ctx())
    assert everything.data["count"] == 4

    system = await runner.execute("list_tools", {"category": "system"}, _ctx())
    assert {t["name"] for t in system.data["tools"]} == {"get_current_time", "get_user_context"}


async def test_list_tools_hides_disabled(registry):
    registry.disable("calculate")
    result = await ToolRunner(registry).execute("list_tools", {}, _ctx())
    assert "calculate" not in {t["name"] for t in result.data["tools"]}


async def test_get_user_context(registry):
    result = await ToolRunner(registry).execute(
        "get_user_context", {"include_preferences": False}, _ctx(user_name="Ana")
    )
    assert result.data["user_name"] == "Ana"
    assert result.data["session_id"] == "sess-1"
    assert "preferences" not in result.data


async def test_search_memory(registry_with_memory, memory):
    await memory.store_memory(
        MemoryDimension.SEMANTIC, "user-1", MemoryInput(text="Prefers green tea in the morning")
    )
    await memory.store_memory(MemoryDimension.EPISODIC, "user-1", MemoryInput(text="Talked about trains"))
    await memory.store_memory(
        MemoryDimension.SEMANTIC, "someone-else", MemoryInput(text="Prefers green tea in the morning")
    )

    result = await ToolRunner(registry_with_memory).execute(
        "search_memory", {"query": "Prefers green tea in the morning", "type": "semantic"}, _ctx()
    )
    assert result.success
    assert result.data["count"] == 1
    hit = result.data["results"][0]
    assert hit["type"] == "semantic"
    assert hit["similarity"] == pytest.approx(1.0, abs=1e-3)
