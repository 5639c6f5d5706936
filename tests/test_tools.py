"""Tests for ToolRegistry and ToolSelector."""

import pytest

from vi_core.cognition.schemas import Intent, IntentCategory
from vi_core.errors import ToolNotFoundError, ToolRegistrationError
from vi_core.tools.registry import ToolRegistry
from vi_core.tools.schemas import Tool, ToolCategory, ToolPermission
from vi_core.tools.selector import ToolSelector

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _noop(params, context):
    return {"ok": True}


def _make_tool(name: str = "echo", **overrides) -> Tool:
    fields = dict(
        name=name,
        description=f"{name} tool",
        category=ToolCategory.COMPUTE,
        input_schema={"type": "object", "properties": {}},
        execute=_noop,
    )
    fields.update(overrides)
    return Tool(**fields)


def _intent(description: str, category: IntentCategory = IntentCategory.QUERY) -> Intent:
    return Intent(category=category, description=description, confidence=0.8)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegistration:
    def test_register_and_get(self):
        registry = ToolRegistry()
        registry.register(_make_tool())
        assert registry.exists("echo")
        assert registry.get("echo").description == "echo tool"
        assert registry.count() == 1

    def test_duplicate_name_rejected(self):
        registry = ToolRegistry()
        registry.register(_make_tool())
        with pytest.raises(ToolRegistrationError, match="already registered"):
            registry.register(_make_tool())
        assert registry.count() == 1

    @pytest.mark.parametrize(
        "overrides, message",
        [
            ({"name": ""}, "must have a name"),
            ({"description": "  "}, "must have a description"),
            ({"input_schema": {}}, "input schema"),
            ({"input_schema": {"type": "nope"}}, "invalid input schema"),
            ({"rate_limit": 0}, "rate limit"),
            ({"cost": -1.0}, "cost"),
            ({"timeout_ms": 0}, "timeout"),
            ({"category": "telepathy"}, "telepathy"),
            ({"permissions": ["root"]}, "root"),
        ],
    )
    def test_invalid_tool_rejected(self, overrides, message):
        registry = ToolRegistry()
        with pytest.raises(ToolRegistrationError, match=message):
            registry.register(_make_tool(**overrides))
        assert registry.count() == 0

    def test_non_callable_execute_rejected(self):
        registry = ToolRegistry()
        with pytest.raises(ToolRegistrationError, match="execute"):
            registry.register(_make_tool(execute="not callable"))

    def test_string_category_normalized(self):
        registry = ToolRegistry()
        registry.register(_make_tool(category="search", permissions=["network"]))
        tool = registry.get("echo")
        assert tool.category is ToolCategory.SEARCH
        assert tool.permissions == [ToolPermission.NETWORK]

    def test_get_or_raise_unknown(self):
        with pytest.raises(ToolNotFoundError) as exc:
            ToolRegistry().get_or_raise("missing")
        assert exc.value.name == "missing"


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQueries:
    def test_disable_hides_from_enabled_list(self):
        registry = ToolRegistry()
        registry.register(_make_tool("a"))
        registry.register(_make_tool("b"))
        registry.disable("a")
        assert [t.name for t in registry.list_enabled()] == ["b"]
        assert registry.count() == 2
        registry.enable("a")
        assert len(registry.list_enabled()) == 2

    def test_search_matches_description_case_insensitive(self):
        registry = ToolRegistry()
        registry.register(_make_tool("weather", description="Fetch the WEATHER forecast"))
        registry.register(_make_tool("other"))
        assert [t.name for t in registry.search("forecast")] == ["weather"]

    def test_by_category_and_permission(self):
        registry = ToolRegistry()
        registry.register(_make_tool("calc", permissions=[ToolPermission.COMPUTE]))
        registry.register(_make_tool("files", category=ToolCategory.FILE, permissions=[ToolPermission.FILESYSTEM]))
        assert [t.name for t in registry.by_category("file")] == ["files"]
        assert [t.name for t in registry.requiring_permission(ToolPermission.COMPUTE)] == ["calc"]

    def test_metadata_has_no_callable(self):
        registry = ToolRegistry()
        registry.register(_make_tool(cost=2.5))
        meta = registry.list_metadata()[0].model_dump()
        assert meta["cost"] == 2.5
        assert "execute" not in meta


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


class TestSelector:
    def test_keyword_match_wins(self, registry):
        selection = ToolSelector(registry).select_for_intent(_intent("what time is it in Tokyo"))
        assert selection.tool_name == "get_current_time"
        assert selection.confidence == 0.9

    def test_keyword_for_unregistered_tool_skipped(self, registry):
        # get_weather is not a built-in; falls through to the category table
        selection = ToolSelector(registry).select_for_intent(_intent("weather in Oslo"))
        assert selection.tool_name == "list_tools"
        assert selection.confidence == 0.6

    def test_disabled_tool_never_selected(self, registry):
        registry.disable("calculate")
        selection = ToolSelector(registry).select_for_intent(_intent("calculate 2 + 2"))
        assert selection.tool_name != "calculate"

    def test_conversation_falls_back_to_default(self, registry):
        selection = ToolSelector(registry).select_for_intent(
            _intent("nice chatting", IntentCategory.CONVERSATION)
        )
        assert selection.tool_name == "list_tools"
        assert selection.confidence == 0.3

    def test_no_usable_tool_returns_none(self):
        selection = ToolSelector(ToolRegistry()).select_for_intent(_intent("anything"))
        assert selection is None

    def test_select_by_name(self, registry):
        selector = ToolSelector(registry)
        assert selector.select_by_name("calculate", {"expression": "1+1"}).parameters == {"expression": "1+1"}
        assert selector.select_by_name("missing") is None

    def test_suggest_exact_match_first(self, registry):
        suggestions = ToolSelector(registry).suggest_tools("calculate")
        assert suggestions[0].tool_name == "calculate"
        assert suggestions[0].confidence == 1.0
        assert [s.tool_name for s in suggestions].count("calculate") == 1
