"""Tests for the REST API (Starlette app over ASGITransport)."""

import json
from uuid import uuid4

import httpx
import pytest

from vi_core.api.rest import create_app
from vi_core.errors import GenerationError

QUERY = "What is the current time in Paris?"


@pytest.fixture
def app(pipeline, registry, records, self_models):
    return create_app(pipeline, registry, records, self_models=self_models)


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def _sse_events(body: str) -> list[dict]:
    return [json.loads(line[len("data: ") :]) for line in body.splitlines() if line.startswith("data: ")]


# ---------------------------------------------------------------------------
# POST /chat
# ---------------------------------------------------------------------------


async def test_chat_returns_output_and_record(client):
    resp = await client.post("/chat", json={"message": QUERY, "user_id": "u1", "session_id": "s1"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["output"]
    assert data["had_violation"] is False
    assert data["degraded"] == []
    assert any(c["id"] == "tool-get_current_time" for c in data["citations"])

    run = await client.get(f"/runs/{data['record_id']}")
    assert run.status_code == 200
    assert run.json()["input_text"] == QUERY
    assert run.json()["session_id"] == "s1"


async def test_chat_ambiguity_clarification(client):
    resp = await client.post("/chat", json={"message": "that was better", "user_id": "u1"})
    assert resp.status_code == 200
    assert resp.json()["output"] == "Better/worse than what? Can you specify what you're comparing?"

    run = await client.get(f"/runs/{resp.json()['record_id']}")
    assert run.json()["short_circuit"] == "ambiguity"


@pytest.mark.parametrize(
    "payload, error",
    [
        ({"user_id": "u1"}, "Missing required field: message"),
        ({"message": 42, "user_id": "u1"}, "Missing required field: message"),
        ({"message": "hi"}, "Missing required field: user_id"),
        (["not", "an", "object"], "Invalid JSON body"),
        ({"message": "hi", "user_id": "u1", "context": "yesterday"}, "Field context must be an object"),
        ({"message": "hi", "user_id": "u1", "context": [1]}, "Field context must be an object"),
        ({"message": "hi", "user_id": "u1", "session_id": 7}, "Field session_id must be a string"),
    ],
)
async def test_chat_bad_input(client, payload, error):
    resp = await client.post("/chat", json=payload)
    assert resp.status_code == 400
    assert resp.json() == {"error": error}


async def test_chat_invalid_json(client):
    resp = await client.post("/chat", content=b"{nope", headers={"content-type": "application/json"})
    assert resp.status_code == 400


async def test_chat_generation_error_is_502(registry, records, self_models, pipeline):
    class Broken:
        async def process(self, *args, **kwargs):
            raise GenerationError("Response generation failed: boom")

    app = create_app(Broken(), registry, records, self_models=self_models)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        resp = await c.post("/chat", json={"message": QUERY, "user_id": "u1"})
    assert resp.status_code == 502
    assert "boom" in resp.json()["error"]


# ---------------------------------------------------------------------------
# POST /chat/stream
# ---------------------------------------------------------------------------


async def test_chat_stream_emits_stages_then_done(client):
    resp = await client.post("/chat/stream", json={"message": QUERY, "user_id": "u1"})
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    types = [e["type"] for e in _sse_events(resp.text)]
    assert types == ["perception", "intent", "plan", "execution", "reflection", "response", "done"]


async def test_chat_stream_bad_input(client):
    resp = await client.post("/chat/stream", json={"message": "hi"})
    assert resp.status_code == 400


# ---------------------------------------------------------------------------
# GET endpoints
# ---------------------------------------------------------------------------


async def test_get_run_invalid_id(client):
    resp = await client.get("/runs/not-a-uuid")
    assert resp.status_code == 400


async def test_get_run_not_found(client):
    resp = await client.get(f"/runs/{uuid4()}")
    assert resp.status_code == 404


async def test_list_tools(client, registry):
    resp = await client.get("/tools")
    data = resp.json()
    assert data["count"] == len(registry.list_metadata())
    assert "calculate" in {t["name"] for t in data["tools"]}


async def test_self_model(client):
    resp = await client.get("/self-model")
    assert resp.status_code == 200
    data = resp.json()
    assert data["active"]["version"] == "1.0.0"
    assert [v["version"] for v in data["versions"]] == ["1.0.0"]


async def test_self_model_unavailable(pipeline, registry, records):
    app = create_app(pipeline, registry, records)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        resp = await c.get("/self-model")
    assert resp.status_code == 503


async def test_health_in_memory(client):
    resp = await client.get("/health")
    assert resp.json() == {"status": "healthy", "storage": "memory"}


class _FakeDatabase:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error

    async def ping(self) -> None:
        if self.error is not None:
            raise self.error


@pytest.mark.parametrize(
    "database, status, body",
    [
        (_FakeDatabase(), 200, {"status": "healthy", "storage": "postgres"}),
        (_FakeDatabase(ConnectionError("refused")), 503, {"status": "unhealthy", "error": "refused"}),
    ],
)
async def test_health_with_database(pipeline, registry, records, database, status, body):
    app = create_app(pipeline, registry, records, database=database)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        resp = await c.get("/health")
    assert resp.status_code == status
    assert resp.json() == body
