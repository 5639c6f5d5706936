"""Process-local event bus.

Producers: the pipeline (turn_completed), the self-model manager
(self_model_*), and the memory engine (memory_decay, memory_delete,
memory_consolidate). Consumers: the decay sweeper's user tracker and the
optional audit persister that writes vi_system.events.

emit() never blocks the turn. Events go onto a bounded queue and a single
worker fans each one out to its handlers; a handler that raises is logged
and skipped.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

from vi_core.utils import utcnow

logger = logging.getLogger(__name__)

EventHandler = Callable[["Event"], Awaitable[None]]

TURN_COMPLETED = "turn_completed"
MEMORY_EVENTS = ("memory_decay", "memory_delete", "memory_consolidate")
SELF_MODEL_PREFIX = "self_model_"

_IDLE_POLL_SECONDS = 1.0


@dataclass
class Event:
    type: str
    user_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None
    timestamp: datetime = field(default_factory=utcnow)


class EventBus:
    """Bounded queue plus one dispatch worker.

    Events still queued when stop() is called are dispatched before it
    returns, so shutdown does not lose the tail of a turn's audit trail.
    """

    def __init__(self, max_queue: int = 1000):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue)
        self._worker: asyncio.Task | None = None
        self._persister: EventHandler | None = None
        self.stats: Counter[str] = Counter()

    def on(self, event_type: str, handler: EventHandler) -> None:
        self._handlers[event_type].append(handler)
        logger.debug("Subscribed %s to %s", handler.__qualname__, event_type)

    def off(self, event_type: str, handler: EventHandler) -> bool:
        handlers = self._handlers.get(event_type, [])
        if handler not in handlers:
            return False
        handlers.remove(handler)
        return True

    def set_persister(self, persister: EventHandler) -> None:
        self._persister = persister

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def emit(self, event: Event) -> None:
        """Queue an event; drops it (with a warning) when the queue is full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.stats["dropped"] += 1
            logger.warning("Event queue full (%d), dropping %s", self._queue.maxsize, event.type)
            return
        self.stats["emitted"] += 1

    async def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._run(), name="vi-event-bus")
        logger.info("Event bus started")

    async def stop(self) -> None:
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        drained = 0
        while True:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            await self._dispatch(event)
            drained += 1
        logger.info("Event bus stopped (%d drained)", drained)

    async def _run(self) -> None:
        while True:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=_IDLE_POLL_SECONDS)
            except asyncio.TimeoutError:
                continue
            try:
                await self._dispatch(event)
            except Exception:
                logger.exception("Dispatch crashed for %s", event.type)

    async def _dispatch(self, event: Event) -> None:
        if self._persister is not None:
            try:
                await self._persister(event)
            except Exception as e:
                self.stats["persist_failed"] += 1
                logger.warning("Could not persist %s event: %s", event.type, e)

        handlers = list(self._handlers.get(event.type, ()))
        if handlers:
            await asyncio.gather(*(self._call(h, event) for h in handlers))
        self.stats["dispatched"] += 1

    async def _call(self, handler: EventHandler, event: Event) -> None:
        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            self.stats["handler_failed"] += 1
            logger.exception("%s failed on %s", handler.__qualname__, event.type)
