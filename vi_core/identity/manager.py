"""SelfModelManager: the single active self-model and its version history.

Exactly one version is active at a time. Readers take the active model
from an in-process pointer (no DB hit per turn); activation writes the
repository first and then swaps the pointer under a lock, so no turn can
observe a half-activated model.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Protocol

from sqlalchemy import select, update

from vi_core.events import SELF_MODEL_PREFIX, Event, EventBus
from vi_core.identity.schemas import (
    DEFAULT_SELF_MODEL,
    SelfModel,
    SelfModelEvent,
    SelfModelVersionInfo,
)
from vi_core.storage.database import Database
from vi_core.storage.models import SelfModelEvent as SelfModelEventRow
from vi_core.storage.models import SelfModelVersion
from vi_core.utils import utcnow

logger = logging.getLogger(__name__)


class SelfModelRepository(Protocol):
    async def get_active(self) -> SelfModel | None: ...

    async def upsert(self, model: SelfModel, previous_version: str | None = None) -> None: ...

    async def log_event(self, event: SelfModelEvent) -> None: ...

    async def list_all(self) -> list[SelfModelVersionInfo]: ...

    async def list_events(self, limit: int = 100) -> list[SelfModelEvent]: ...


class InMemorySelfModelRepository:
    MAX_EVENTS = 10000

    def __init__(self) -> None:
        self._versions: dict[str, SelfModelVersionInfo] = {}
        self._events: deque[SelfModelEvent] = deque(maxlen=self.MAX_EVENTS)

    async def get_active(self) -> SelfModel | None:
        for info in self._versions.values():
            if info.is_active:
                return info.model
        return None

    async def upsert(self, model: SelfModel, previous_version: str | None = None) -> None:
        for version, info in self._versions.items():
            if info.is_active and version != model.version:
                self._versions[version] = info.model_copy(update={"is_active": False})
        existing = self._versions.get(model.version)
        self._versions[model.version] = SelfModelVersionInfo(
            version=model.version,
            is_active=True,
            created_at=existing.created_at if existing else utcnow(),
            model=model,
        )

    async def log_event(self, event: SelfModelEvent) -> None:
        self._events.append(event)

    async def list_all(self) -> list[SelfModelVersionInfo]:
        return sorted(self._versions.values(), key=lambda v: v.created_at, reverse=True)

    async def list_events(self, limit: int = 100) -> list[SelfModelEvent]:
        return list(reversed(self._events))[:limit]


class SqlSelfModelRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def get_active(self) -> SelfModel | None:
        async with self.db.session() as session:
            result = await session.execute(
                select(SelfModelVersion).where(SelfModelVersion.is_active == True).limit(1)  # noqa: E712
            )
            row = result.scalar_one_or_none()
            return SelfModel.model_validate(row.model) if row else None

    async def upsert(self, model: SelfModel, previous_version: str | None = None) -> None:
        """Insert or replace a version and make it the only active one."""
        async with self.db.session() as session:
            # deactivate first: a partial unique index allows one active row
            await session.execute(
                update(SelfModelVersion)
                .where(SelfModelVersion.version != model.version)
                .values(is_active=False)
            )
            await session.merge(
                SelfModelVersion(
                    version=model.version,
                    model=model.model_dump(mode="json"),
                    is_active=True,
                    previous_version=previous_version,
                )
            )
            await session.commit()

    async def log_event(self, event: SelfModelEvent) -> None:
        async with self.db.session() as session:
            session.add(
                SelfModelEventRow(
                    version=event.version,
                    event_type=event.event_type,
                    details=event.details,
                    created_at=event.created_at,
                )
            )
            await session.commit()

    async def list_all(self) -> list[SelfModelVersionInfo]:
        async with self.db.session() as session:
            result = await session.execute(select(SelfModelVersion).order_by(SelfModelVersion.created_at.desc()))
            return [
                SelfModelVersionInfo(
                    version=r.version,
                    is_active=r.is_active,
                    created_at=r.created_at,
                    model=SelfModel.model_validate(r.model),
                )
                for r in result.scalars().all()
            ]

    async def list_events(self, limit: int = 100) -> list[SelfModelEvent]:
        async with self.db.session() as session:
            result = await session.execute(
                select(SelfModelEventRow).order_by(SelfModelEventRow.created_at.desc()).limit(limit)
            )
            return [
                SelfModelEvent(
                    version=r.version,
                    event_type=r.event_type,
                    details=r.details or {},
                    created_at=r.created_at,
                )
                for r in result.scalars().all()
            ]


class SelfModelManager:
    """Owns the active self-model pointer."""

    def __init__(self, repo: SelfModelRepository, bus: EventBus | None = None) -> None:
        self.repo = repo
        self.bus = bus
        self._active: SelfModel | None = None
        self._lock = asyncio.Lock()

    async def initialize(self, default: SelfModel = DEFAULT_SELF_MODEL) -> SelfModel:
        """Load the active version, seeding the repository with default if empty."""
        async with self._lock:
            active = await self.repo.get_active()
            if active is None:
                await self.repo.upsert(default)
                active = default
                logger.info("Seeded self-model version %s", default.version)
            self._active = active
            return active

    @property
    def active(self) -> SelfModel:
        if self._active is None:
            raise RuntimeError("SelfModelManager.initialize() has not been called")
        return self._active

    @property
    def active_version(self) -> str | None:
        return self._active.version if self._active else None

    async def activate(self, model: SelfModel) -> SelfModel:
        """Persist and atomically make model the active version."""
        async with self._lock:
            previous = self._active.version if self._active else None
            await self.repo.upsert(model, previous_version=previous)
            self._active = model
        logger.info("Activated self-model version %s (was %s)", model.version, previous)
        return model

    async def log_event(self, version: str, event_type: str, details: dict[str, Any] | None = None) -> None:
        """Append an audit event; failures are logged, never raised."""
        event = SelfModelEvent(version=version, event_type=event_type, details=details or {})
        try:
            await self.repo.log_event(event)
        except Exception:
            logger.warning("Failed to log self-model event %s for %s", event_type, version)
        if self.bus is not None:
            await self.bus.emit(
                Event(type=f"{SELF_MODEL_PREFIX}{event_type}", data={"version": version, **event.details})
            )

    async def list_versions(self) -> list[SelfModelVersionInfo]:
        return await self.repo.list_all()

    async def list_events(self, limit: int = 100) -> list[SelfModelEvent]:
        return await self.repo.list_events(limit)
