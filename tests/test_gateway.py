"""Tests for the inference gateways (httpx.MockTransport, no network)."""

import json
from datetime import timedelta
from email.utils import format_datetime

import httpx
import pytest

from vi_core.cognition.gateway import (
    AnthropicGateway,
    StubGateway,
    build_response_prompt,
    parse_intent,
    retry_delay,
)
from vi_core.cognition.schemas import Intent, IntentCategory, Perception, ThoughtStage, ThoughtState
from vi_core.config import Settings
from vi_core.errors import InferenceError
from vi_core.utils import utcnow


def _ok(text: str) -> httpx.Response:
    return httpx.Response(200, json={"content": [{"type": "text", "text": text}]})


def _gateway(handler) -> AnthropicGateway:
    settings = Settings(_env_file=None, ANTHROPIC_API_KEY="sk-test")
    return AnthropicGateway(settings, transport=httpx.MockTransport(handler))


# ---------------------------------------------------------------------------
# parse_intent
# ---------------------------------------------------------------------------


def test_parse_intent_plain_json():
    intent = parse_intent('{"category": "command", "confidence": 1.7, "entities": {"n": 3}}', "run it")
    assert intent.category == IntentCategory.COMMAND
    assert intent.confidence == 1.0
    assert intent.description == "run it"
    assert intent.entities == {"n": "3"}


def test_parse_intent_code_fence():
    raw = '```json\n{"category": "query", "confidence": 0.9, "requires_tooling": true}\n```'
    intent = parse_intent(raw, "what time")
    assert intent.category == IntentCategory.QUERY
    assert intent.requires_tooling


def test_parse_intent_unknown_category():
    assert parse_intent('{"category": "poetry"}', "x").category == IntentCategory.UNKNOWN


def test_parse_intent_garbage_raises():
    with pytest.raises(ValueError):
        parse_intent("definitely not json", "x")


@pytest.mark.parametrize("raw", ["[1, 2]", "42", '"query"', "null"])
def test_parse_intent_non_object_raises(raw):
    with pytest.raises(ValueError, match="JSON object"):
        parse_intent(raw, "x")


def test_parse_intent_ignores_malformed_entities():
    assert parse_intent('{"category": "query", "entities": ["a", "b"]}', "x").entities == {}


@pytest.mark.parametrize(
    "header, expected",
    [
        (None, 1.0),
        ("0", 0.0),
        ("2.5", 2.5),
        ("120", 30.0),
        ("soon", 1.0),
        ("Wed, 21 Oct 2015 07:28:00 GMT", 0.0),
    ],
)
def test_retry_delay(header, expected):
    assert retry_delay(header) == expected


def test_retry_delay_future_http_date():
    header = format_datetime(utcnow() + timedelta(seconds=10), usegmt=True)
    assert 0.0 < retry_delay(header) <= 10.0


# ---------------------------------------------------------------------------
# AnthropicGateway
# ---------------------------------------------------------------------------


async def test_complete_sends_headers_and_payload():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["headers"] = request.headers
        captured["body"] = json.loads(request.content)
        return _ok("hello")

    gateway = _gateway(handler)
    assert await gateway.complete("system text", "user text") == "hello"
    await gateway.close()

    assert captured["headers"]["x-api-key"] == "sk-test"
    assert captured["headers"]["anthropic-version"] == "2023-06-01"
    assert captured["body"]["messages"] == [{"role": "user", "content": "user text"}]
    assert captured["body"]["system"][0]["text"] == "system text"


async def test_retry_once_on_overloaded():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(
                529,
                headers={"retry-after": "0"},
                json={"error": {"type": "overloaded_error", "message": "busy"}},
            )
        return _ok("second time lucky")

    gateway = _gateway(handler)
    assert await gateway.complete("s", "p") == "second time lucky"
    assert len(calls) == 2


async def test_retry_with_http_date_header():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(429, headers={"retry-after": "Wed, 21 Oct 2015 07:28:00 GMT"})
        return _ok("after the date")

    assert await _gateway(handler).complete("s", "p") == "after the date"
    assert len(calls) == 2


async def test_non_object_error_body():
    gateway = _gateway(lambda request: httpx.Response(400, json=["bad", "request"]))
    with pytest.raises(InferenceError, match=r"\(400\): unknown"):
        await gateway.complete("s", "p")


async def test_classify_intent_json_list_is_unparseable():
    gateway = _gateway(lambda request: _ok('["query"]'))
    with pytest.raises(InferenceError, match="Unparseable"):
        await gateway.classify_intent("what?", {})


async def test_client_error_not_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(400, json={"error": {"type": "invalid_request_error", "message": "bad"}})

    gateway = _gateway(handler)
    with pytest.raises(InferenceError, match="invalid_request_error - bad"):
        await gateway.complete("s", "p")
    assert len(calls) == 1


async def test_connection_error_raises_inference_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused")

    with pytest.raises(InferenceError, match="HTTP error"):
        await _gateway(handler).complete("s", "p")


async def test_empty_completion_raises():
    gateway = _gateway(lambda request: httpx.Response(200, json={"content": []}))
    with pytest.raises(InferenceError, match="Empty completion"):
        await gateway.complete("s", "p")


async def test_classify_intent_unparseable():
    gateway = _gateway(lambda request: _ok("I think it's a question"))
    with pytest.raises(InferenceError, match="Unparseable"):
        await gateway.classify_intent("what?", {})


async def test_classify_intent_success():
    gateway = _gateway(lambda request: _ok('{"category": "feedback", "confidence": 0.6}'))
    intent = await gateway.classify_intent("nice work", {})
    assert intent.category == IntentCategory.FEEDBACK


# ---------------------------------------------------------------------------
# Prompt building and stub
# ---------------------------------------------------------------------------


def test_response_prompt_includes_context():
    thought = ThoughtState(user_id="u", input="Who is Azula?")
    thought = thought.advance(
        ThoughtStage.PERCEIVED,
        Perception(
            raw="Who is Azula?",
            context={
                "self_model": {"identity": "Vi", "tone": "warm", "stances": {}},
                "canon_context": "CANON BLOCK",
                "memories": [{"text": "User likes the Codex arc"}],
            },
        ),
    )
    thought = thought.advance(
        ThoughtStage.INTENT_CLASSIFIED,
        Intent(category=IntentCategory.QUERY, description="Who is Azula?", confidence=0.9),
    )
    system, prompt = build_response_prompt(thought)
    assert "CANON BLOCK" in system
    assert "Tone: warm" in system
    assert "- User likes the Codex arc" in prompt
    assert prompt.endswith("User: Who is Azula?")


async def test_stub_classification_rules():
    stub = StubGateway()
    assert (await stub.classify_intent("what now?", {})).category == IntentCategory.QUERY
    assert (await stub.classify_intent("please list tools", {})).category == IntentCategory.COMMAND
    assert (await stub.classify_intent("nice weather", {})).category == IntentCategory.UNKNOWN
    assert await StubGateway(completion="ok").complete("s", "p") == "ok"
