"""Tests for component wiring in main (in-memory stores, no network)."""

from vi_core.cognition.gateway import AnthropicGateway, StubGateway
from vi_core.config import Settings
from vi_core.main import create_components, shutdown_components


async def test_planner_uses_configured_gateway():
    settings = Settings(_env_file=None, ANTHROPIC_API_KEY="sk-test", OPENAI_API_KEY="")
    components = await create_components(settings)
    try:
        gateway = components["gateway"]
        assert isinstance(gateway, AnthropicGateway)
        assert components["pipeline"].planner.gateway is gateway
    finally:
        await shutdown_components(components)


async def test_stub_gateway_keeps_rule_based_planning():
    settings = Settings(_env_file=None, ANTHROPIC_API_KEY="", OPENAI_API_KEY="")
    components = await create_components(settings)
    try:
        assert isinstance(components["gateway"], StubGateway)
        assert components["pipeline"].planner.gateway is None
        assert components["memory"] is not None
    finally:
        await shutdown_components(components)
