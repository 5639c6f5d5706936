"""Inference gateways: intent classification and response generation.

AnthropicGateway talks to the Messages API over httpx. StubGateway is a
deterministic stand-in used when no API key is configured and in tests.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC
from email.utils import parsedate_to_datetime
from typing import Any, Protocol

import httpx

from vi_core.cognition.schemas import Intent, IntentCategory, ThoughtState
from vi_core.config import Settings
from vi_core.errors import InferenceError
from vi_core.utils import utcnow

logger = logging.getLogger(__name__)

_API_VERSION = "2023-06-01"
_RETRYABLE = (429, 500, 529)
_MAX_RETRY_AFTER = 30.0

_CLASSIFY_SYSTEM = (
    "Classify the user's message. Reply with a single JSON object with keys "
    '"category" (one of query, command, conversation, clarification, feedback, unknown), '
    '"confidence" (0-1), "description", "entities" (object of strings), '
    '"requires_tooling" and "requires_memory" (booleans). No prose.'
)


class InferenceGateway(Protocol):
    async def classify_intent(self, input: str, context: dict[str, Any]) -> Intent: ...

    async def generate_response(self, thought: ThoughtState) -> str: ...

    async def complete(self, system: str, prompt: str) -> str: ...


def retry_delay(header: str | None, default: float = 1.0) -> float:
    """Seconds to wait from a retry-after header (delta-seconds or HTTP-date)."""
    if not header:
        return default
    try:
        delay = float(header)
    except ValueError:
        try:
            when = parsedate_to_datetime(header)
        except (TypeError, ValueError):
            logger.debug("Ignoring unparseable retry-after header %r", header)
            return default
        if when.tzinfo is None:
            when = when.replace(tzinfo=UTC)
        delay = (when - utcnow()).total_seconds()
    return max(0.0, min(delay, _MAX_RETRY_AFTER))


def parse_intent(raw: str, input: str) -> Intent:
    """Parse a JSON classification, tolerating a fenced code block."""
    text = raw.strip()
    if text.startswith("```"):
        text = text.strip("`")
        text = text.split("\n", 1)[1] if "\n" in text else text
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    category = data.get("category", "unknown")
    if category not in IntentCategory.__members__.values():
        category = IntentCategory.UNKNOWN
    entities = data.get("entities")
    if not isinstance(entities, dict):
        entities = {}
    return Intent(
        category=category,
        description=data.get("description") or input,
        entities={str(k): str(v) for k, v in entities.items()},
        confidence=max(0.0, min(1.0, float(data.get("confidence", 0.5)))),
        reasoning=data.get("reasoning", "LLM classification"),
        requires_tooling=bool(data.get("requires_tooling", False)),
        requires_memory=bool(data.get("requires_memory", False)),
    )


def build_response_prompt(thought: ThoughtState) -> tuple[str, str]:
    """Return (system, user prompt) for the final response of a turn."""
    context = thought.perception.context if thought.perception else {}
    system_parts = ["You are Vi, a grounded conversational assistant."]
    model = context.get("self_model")
    if model:
        system_parts.append(
            f"Identity: {model.get('identity', '')}\nTone: {model.get('tone', '')}\n"
            f"Stances: {json.dumps(model.get('stances', {}))}"
        )
    canon = context.get("canon_context")
    if canon:
        system_parts.append(canon)

    lines: list[str] = []
    memories = context.get("memories") or []
    if memories:
        lines.append("Relevant memories:")
        lines.extend(f"- {m['text']}" for m in memories)
    if thought.execution:
        for tr in thought.execution.tool_results:
            if tr.status == "success":
                lines.append(f"Tool {tr.tool_name} returned: {json.dumps(tr.result, default=str)[:500]}")
    if thought.intent:
        lines.append(f"Intent: {thought.intent.category}")
    lines.append(f"User: {thought.input}")
    return "\n\n".join(system_parts), "\n".join(lines)


class AnthropicGateway:
    """Messages API client. One retry on 429/500/529 and on timeouts."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        headers = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }
        if settings.anthropic_api_key:
            headers["x-api-key"] = settings.anthropic_api_key
        else:
            logger.warning("ANTHROPIC_API_KEY is not set -- API calls will fail")
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=httpx.Timeout(
                connect=settings.api_timeout_connect,
                read=settings.api_timeout_read,
                write=10.0,
                pool=10.0,
            ),
            transport=transport,
        )

    async def close(self) -> None:
        await self._http.aclose()

    async def classify_intent(self, input: str, context: dict[str, Any]) -> Intent:
        raw = await self.complete(_CLASSIFY_SYSTEM, input)
        try:
            return parse_intent(raw, input)
        except (ValueError, TypeError) as e:
            raise InferenceError(f"Unparseable intent classification: {e}") from e

    async def generate_response(self, thought: ThoughtState) -> str:
        system, prompt = build_response_prompt(thought)
        return await self.complete(system, prompt)

    async def complete(self, system: str, prompt: str) -> str:
        payload = {
            "model": self._settings.model,
            "max_tokens": self._settings.max_tokens,
            "system": [{"type": "text", "text": system, "cache_control": {"type": "ephemeral"}}],
            "messages": [{"role": "user", "content": prompt}],
        }
        data = await self._call_api(payload)
        text = "".join(b.get("text", "") for b in data.get("content", []) if b.get("type") == "text")
        if not text:
            raise InferenceError("Empty completion from API")
        return text

    async def _call_api(self, payload: dict[str, Any]) -> dict[str, Any]:
        last_error: InferenceError | None = None
        for attempt in range(2):
            try:
                response = await self._http.post("/v1/messages", json=payload)
                if response.status_code == 200:
                    return response.json()

                error_type = "unknown"
                error_msg = response.text[:200]
                try:
                    body = response.json()
                except ValueError:
                    body = None
                err = body.get("error") if isinstance(body, dict) else None
                if isinstance(err, dict):
                    error_type = err.get("type", error_type)
                    error_msg = err.get("message", error_msg)

                if response.status_code in _RETRYABLE and attempt == 0:
                    retry_after = retry_delay(response.headers.get("retry-after"))
                    logger.warning(
                        "API error %d (%s), retrying in %.1fs: %s",
                        response.status_code,
                        error_type,
                        retry_after,
                        error_msg,
                    )
                    await asyncio.sleep(retry_after)
                    continue

                last_error = InferenceError(
                    f"Anthropic API error ({response.status_code}): {error_type} - {error_msg}"
                )
                break
            except httpx.TimeoutException as e:
                last_error = InferenceError(f"API request timed out: {e}")
                if attempt == 0:
                    logger.warning("API timeout, retrying: %s", e)
                    await asyncio.sleep(1)
                    continue
            except httpx.HTTPError as e:
                last_error = InferenceError(f"HTTP error: {e}")
                break  # connection errors are not retried

        raise last_error or InferenceError("API call failed with unknown error")


class StubGateway:
    """Deterministic gateway: no network, canned responses per intent."""

    def __init__(self, completion: str = "{}") -> None:
        self._completion = completion

    async def classify_intent(self, input: str, context: dict[str, Any]) -> Intent:
        lowered = input.lower()
        if "?" in input:
            category = IntentCategory.QUERY
        elif "please" in lowered or "can you" in lowered:
            category = IntentCategory.COMMAND
        else:
            category = IntentCategory.UNKNOWN
        return Intent(
            category=category,
            description=input,
            confidence=0.75,
            reasoning="Stub classification",
        )

    async def generate_response(self, thought: ThoughtState) -> str:
        category = thought.intent.category if thought.intent else IntentCategory.UNKNOWN
        if category == IntentCategory.QUERY:
            return (
                f'I understood your question: "{thought.input}". '
                "Here's my response based on the information I have."
            )
        if category == IntentCategory.COMMAND:
            return f'I\'ll help with that. Command executed: "{thought.input}".'
        return f'I didn\'t fully understand. Could you clarify: "{thought.input}"?'

    async def complete(self, system: str, prompt: str) -> str:
        return self._completion
