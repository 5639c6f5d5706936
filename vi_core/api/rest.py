"""REST API for the vi_core cognition pipeline.

Endpoints:
  POST /chat              - Process one turn, get the response
  POST /chat/stream       - SSE stream of pipeline stage events
  GET  /runs/{id}         - Run record detail
  GET  /tools             - Registered tool metadata
  GET  /self-model        - Active self-model + version history
  GET  /health            - Health check (DB connectivity when configured)
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any
from uuid import UUID

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from vi_core.cognition.pipeline import CognitionPipeline
from vi_core.cognition.records import RunRecordStore
from vi_core.cognition.schemas import CognitionEvent
from vi_core.errors import GenerationError
from vi_core.identity.manager import SelfModelManager
from vi_core.storage.database import Database
from vi_core.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


async def _read_turn(request: Request) -> tuple[dict[str, Any] | None, JSONResponse | None]:
    try:
        body = await request.json()
    except Exception:
        return None, JSONResponse({"error": "Invalid JSON body"}, status_code=400)
    if not isinstance(body, dict):
        return None, JSONResponse({"error": "Invalid JSON body"}, status_code=400)
    if not isinstance(body.get("message"), str):
        return None, JSONResponse({"error": "Missing required field: message"}, status_code=400)
    if not body.get("user_id"):
        return None, JSONResponse({"error": "Missing required field: user_id"}, status_code=400)
    if body.get("context") is not None and not isinstance(body["context"], dict):
        return None, JSONResponse({"error": "Field context must be an object"}, status_code=400)
    if body.get("session_id") is not None and not isinstance(body["session_id"], str):
        return None, JSONResponse({"error": "Field session_id must be a string"}, status_code=400)
    return body, None


def create_app(
    pipeline: CognitionPipeline,
    registry: ToolRegistry,
    records: RunRecordStore,
    self_models: SelfModelManager | None = None,
    database: Database | None = None,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def chat(request: Request) -> JSONResponse:
        """POST /chat - Process a message."""
        body, error = await _read_turn(request)
        if error is not None:
            return error
        try:
            result = await pipeline.process(
                body["message"],
                body["user_id"],
                session_id=body.get("session_id"),
                context=body.get("context") or {},
            )
        except GenerationError as e:
            logger.error("Generation failed: %s", e)
            return JSONResponse({"error": str(e)}, status_code=502)
        except Exception as e:
            logger.error("Chat error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)
        return JSONResponse(
            {
                "output": result.output,
                "record_id": str(result.record_id),
                "citations": [c.model_dump(mode="json") for c in result.citations],
                "had_violation": result.had_violation,
                "degraded": result.degraded,
            }
        )

    async def chat_stream(request: Request) -> StreamingResponse | JSONResponse:
        """POST /chat/stream - SSE stream of stage events."""
        body, error = await _read_turn(request)
        if error is not None:
            return error

        queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()

        async def on_event(event: CognitionEvent) -> None:
            await queue.put({"type": event.type, "payload": event.payload})

        async def run() -> None:
            try:
                result = await pipeline.process(
                    body["message"],
                    body["user_id"],
                    session_id=body.get("session_id"),
                    context=body.get("context") or {},
                    on_event=on_event,
                )
                await queue.put({"type": "done", "payload": {"record_id": str(result.record_id)}})
            except Exception as e:
                logger.error("Stream error: %s", e)
                await queue.put({"type": "error", "payload": str(e)})
            finally:
                await queue.put(None)

        async def event_generator():
            task = asyncio.create_task(run())
            try:
                while (item := await queue.get()) is not None:
                    yield f"data: {json.dumps(item, default=str)}\n\n"
            finally:
                await task

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    async def get_run(request: Request) -> JSONResponse:
        """GET /runs/{id} - Run record detail."""
        try:
            record_id = UUID(request.path_params["id"])
        except ValueError:
            return JSONResponse({"error": "Invalid run record ID"}, status_code=400)
        try:
            record = await records.get(record_id)
        except Exception as e:
            logger.error("Get run error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)
        if record is None:
            return JSONResponse({"error": "Run record not found"}, status_code=404)
        return JSONResponse(record.model_dump(mode="json"))

    async def list_tools(request: Request) -> JSONResponse:
        """GET /tools - Tool metadata."""
        tools = [m.model_dump(mode="json") for m in registry.list_metadata()]
        return JSONResponse({"tools": tools, "count": len(tools)})

    async def get_self_model(request: Request) -> JSONResponse:
        """GET /self-model - Active self-model and known versions."""
        if self_models is None or self_models.active_version is None:
            return JSONResponse({"error": "Self-model not initialized"}, status_code=503)
        try:
            versions = await self_models.list_versions()
        except Exception as e:
            logger.error("Self-model versions error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)
        return JSONResponse(
            {
                "active": self_models.active.model_dump(mode="json"),
                "versions": [v.model_dump(mode="json") for v in versions],
            }
        )

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        if database is None:
            return JSONResponse({"status": "healthy", "storage": "memory"})
        try:
            await database.ping()
            return JSONResponse({"status": "healthy", "storage": "postgres"})
        except Exception as e:
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)

    routes = [
        Route("/chat", chat, methods=["POST"]),
        Route("/chat/stream", chat_stream, methods=["POST"]),
        Route("/runs/{id}", get_run),
        Route("/tools", list_tools),
        Route("/self-model", get_self_model),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
