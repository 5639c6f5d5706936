"""Sandboxed tool execution.

ToolRunner.execute() applies its checks in a fixed order and stops at the
first rejection:

    validate -> rate limit -> cost -> timeout -> sanitize

Rejections come back as ToolResult statuses, never as exceptions. Every
call, accepted or not, produces a ToolAudit that is attached to the result
and handed to the audit store.

RateLimiter and CostTracker are shared per process and keyed by
(user, tool) / user. Check-and-record happens under an asyncio.Lock so two
concurrent calls cannot both squeeze through a limit meant for one.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import deque
from typing import Any, Protocol

from jsonschema import Draft202012Validator

from vi_core.tools.registry import ToolRegistry
from vi_core.tools.schemas import ToolAudit, ToolContext, ToolResult, ToolStatus

logger = logging.getLogger(__name__)

RATE_WINDOW_SECONDS = 60.0

# (pattern, replacement) applied to string output
_REDACTIONS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"api[_-]?key[=:]\s*\S+", re.IGNORECASE), "API_KEY_REDACTED"),
    (re.compile(r"password[=:]\s*\S+", re.IGNORECASE), "PASSWORD_REDACTED"),
    (re.compile(r"token[=:]\s*\S+", re.IGNORECASE), "TOKEN_REDACTED"),
]
_SENSITIVE_KEYS = ("password", "api_key", "secret", "token")


def validate_input(params: dict[str, Any], schema: dict[str, Any]) -> list[str]:
    """Check params against the tool's JSON Schema (draft 2020-12).

    Returns one message per violation, prefixed with the field path when
    the violation is below the top level.
    """
    validator = Draft202012Validator(schema)
    errors: list[str] = []
    for error in sorted(validator.iter_errors(params), key=lambda e: e.json_path):
        path = ".".join(str(p) for p in error.absolute_path)
        errors.append(f"{path}: {error.message}" if path else error.message)
    return errors


def sanitize_output(output: Any) -> Any:
    """Recursively redact secrets from tool output."""
    if isinstance(output, str):
        for pattern, replacement in _REDACTIONS:
            output = pattern.sub(replacement, output)
        return output
    if isinstance(output, dict):
        return {
            k: "REDACTED" if any(s in str(k).lower() for s in _SENSITIVE_KEYS) else sanitize_output(v)
            for k, v in output.items()
        }
    if isinstance(output, (list, tuple)):
        return [sanitize_output(v) for v in output]
    return output


class RateLimiter:
    """Sliding-window call counter per (user, tool).

    Keys whose window has emptied are evicted on a sweep that runs at most
    once per window, so idle users do not accumulate.
    """

    def __init__(self, window_seconds: float = RATE_WINDOW_SECONDS) -> None:
        self._window = window_seconds
        self._calls: dict[str, deque[float]] = {}
        self._last_sweep = time.monotonic()
        self._lock = asyncio.Lock()

    @staticmethod
    def _key(user_id: str, tool_name: str) -> str:
        return f"{user_id}:{tool_name}"

    def _prune(self, calls: deque[float], now: float) -> None:
        while calls and now - calls[0] >= self._window:
            calls.popleft()

    def _sweep(self, now: float) -> None:
        for key in list(self._calls):
            self._prune(self._calls[key], now)
            if not self._calls[key]:
                del self._calls[key]
        self._last_sweep = now

    async def acquire(self, user_id: str, tool_name: str, calls_per_minute: int) -> bool:
        """Record a call if under the limit. Returns False when the limit is hit."""
        async with self._lock:
            now = time.monotonic()
            if now - self._last_sweep >= self._window:
                self._sweep(now)
            calls = self._calls.setdefault(self._key(user_id, tool_name), deque())
            self._prune(calls, now)
            if len(calls) >= calls_per_minute:
                return False
            calls.append(now)
            return True

    def usage(self, user_id: str, tool_name: str) -> int:
        key = self._key(user_id, tool_name)
        calls = self._calls.get(key)
        if not calls:
            return 0
        self._prune(calls, time.monotonic())
        if not calls:
            del self._calls[key]
        return len(calls)

    @property
    def tracked_keys(self) -> int:
        return len(self._calls)

    def clear(self) -> None:
        self._calls.clear()


class CostTracker:
    """Per-user credit balances. Unknown users start at the default balance."""

    def __init__(self, default_balance: float = 100.0) -> None:
        self._default = default_balance
        self._balances: dict[str, float] = {}
        self._lock = asyncio.Lock()

    def get_balance(self, user_id: str) -> float:
        return self._balances.get(user_id, self._default)

    def can_afford(self, user_id: str, cost: float) -> bool:
        return self.get_balance(user_id) >= cost

    def deduct(self, user_id: str, cost: float) -> None:
        self._balances[user_id] = max(0.0, self.get_balance(user_id) - cost)

    def grant(self, user_id: str, amount: float) -> None:
        self._balances[user_id] = self.get_balance(user_id) + amount

    def reset(self, user_id: str) -> None:
        self._balances.pop(user_id, None)

    async def reserve(self, user_id: str, cost: float) -> bool:
        """Atomically check and deduct. Pair with refund() if the call fails."""
        async with self._lock:
            if not self.can_afford(user_id, cost):
                return False
            self.deduct(user_id, cost)
            return True

    async def refund(self, user_id: str, cost: float) -> None:
        async with self._lock:
            self.grant(user_id, cost)


class ToolAuditStore(Protocol):
    async def record(self, audit: ToolAudit) -> None: ...

    async def list_for_user(self, user_id: str, limit: int = 100) -> list[ToolAudit]: ...


class InMemoryToolAuditStore:
    """Bounded in-process audit log."""

    MAX_RECORDS = 10000

    def __init__(self) -> None:
        self._records: deque[ToolAudit] = deque(maxlen=self.MAX_RECORDS)

    async def record(self, audit: ToolAudit) -> None:
        self._records.append(audit)

    async def list_for_user(self, user_id: str, limit: int = 100) -> list[ToolAudit]:
        matches = [a for a in reversed(self._records) if a.user_id == user_id]
        return matches[:limit]


class ToolRunner:
    """Executes registered tools under the sandbox contract."""

    def __init__(
        self,
        registry: ToolRegistry,
        rate_limiter: RateLimiter | None = None,
        cost_tracker: CostTracker | None = None,
        audit_store: ToolAuditStore | None = None,
        costs_enabled: bool = True,
    ) -> None:
        self.registry = registry
        self.rate_limiter = rate_limiter or RateLimiter()
        self.cost_tracker = cost_tracker or CostTracker()
        self.audit_store = audit_store or InMemoryToolAuditStore()
        self.costs_enabled = costs_enabled

    async def list_available(self) -> list[str]:
        return [t.name for t in self.registry.list_enabled()]

    async def execute(
        self, tool_name: str, params: dict[str, Any], context: ToolContext
    ) -> ToolResult:
        start = time.monotonic()
        tool = self.registry.get(tool_name)

        if tool is None:
            return await self._finish(
                tool_name, params, context, start, ToolStatus.FAILURE, error=f'Tool "{tool_name}" not found'
            )
        if not tool.enabled:
            return await self._finish(
                tool_name, params, context, start, ToolStatus.FAILURE, error=f'Tool "{tool_name}" is disabled'
            )

        # 1. validate
        errors = validate_input(params, tool.input_schema)
        if errors:
            return await self._finish(
                tool_name,
                params,
                context,
                start,
                ToolStatus.FAILURE,
                error=f"Invalid input: {'; '.join(errors)}",
                warnings=errors,
            )

        # 2. rate limit
        if not await self.rate_limiter.acquire(context.user_id, tool_name, tool.rate_limit):
            logger.info("Rate limit hit: user=%s tool=%s", context.user_id, tool_name)
            return await self._finish(
                tool_name,
                params,
                context,
                start,
                ToolStatus.RATE_LIMITED,
                error=f'Rate limit exceeded for tool "{tool_name}" ({tool.rate_limit} calls/minute)',
            )

        # 3. cost
        cost = tool.cost if self.costs_enabled else 0.0
        if cost > 0 and not await self.cost_tracker.reserve(context.user_id, cost):
            balance = self.cost_tracker.get_balance(context.user_id)
            logger.info("Insufficient credits: user=%s tool=%s", context.user_id, tool_name)
            return await self._finish(
                tool_name,
                params,
                context,
                start,
                ToolStatus.PERMISSION_DENIED,
                error=f"Insufficient credits: need {cost}, have {balance}",
            )

        # 4. timeout
        try:
            data = await asyncio.wait_for(tool.execute(params, context), timeout=tool.timeout_ms / 1000)
        except asyncio.TimeoutError:
            if cost > 0:
                await self.cost_tracker.refund(context.user_id, cost)
            logger.warning("Tool %s timed out after %dms", tool_name, tool.timeout_ms)
            return await self._finish(
                tool_name,
                params,
                context,
                start,
                ToolStatus.TIMEOUT,
                error=f'Tool "{tool_name}" timed out after {tool.timeout_ms}ms',
            )
        except Exception as e:
            if cost > 0:
                await self.cost_tracker.refund(context.user_id, cost)
            logger.warning("Tool %s failed: %s", tool_name, e)
            return await self._finish(tool_name, params, context, start, ToolStatus.FAILURE, error=str(e))

        # 5. sanitize
        return await self._finish(
            tool_name, params, context, start, ToolStatus.SUCCESS, data=sanitize_output(data), cost=cost
        )

    async def _finish(
        self,
        tool_name: str,
        params: dict[str, Any],
        context: ToolContext,
        start: float,
        status: ToolStatus,
        *,
        data: Any = None,
        error: str | None = None,
        warnings: list[str] | None = None,
        cost: float = 0.0,
    ) -> ToolResult:
        duration_ms = (time.monotonic() - start) * 1000
        audit = ToolAudit(
            tool_name=tool_name,
            user_id=context.user_id,
            session_id=context.session_id,
            params=sanitize_output(params),
            duration_ms=duration_ms,
            cost=cost,
            status=status,
        )
        try:
            await self.audit_store.record(audit)
        except Exception:
            logger.warning("Failed to persist tool audit for %s", tool_name)
        return ToolResult(
            tool_name=tool_name,
            status=status,
            data=data,
            error=error,
            warnings=warnings or [],
            duration_ms=duration_ms,
            cost=cost,
            audit=audit,
        )
