"""Memory store contract and the in-process implementation.

MemoryStore is what MemoryEngine talks to. InMemoryMemoryStore keeps
records in dicts and ranks by cosine similarity in Python; SqlMemoryStore
(sql_store.py) does the same against Postgres + pgvector.
"""

from __future__ import annotations

import asyncio
from collections import deque
from datetime import datetime
from typing import Protocol
from uuid import UUID

from vi_core.memory.schemas import (
    CommitmentStatus,
    MemoryAuditEntry,
    MemoryDimension,
    MemoryRecord,
)
from vi_core.utils import cosine_similarity, utcnow


class MemoryStore(Protocol):
    async def insert(self, record: MemoryRecord) -> MemoryRecord: ...

    async def get(self, dimension: MemoryDimension, memory_id: UUID) -> MemoryRecord | None: ...

    async def list_for_user(
        self, user_id: str, dimension: MemoryDimension, limit: int | None = None
    ) -> list[MemoryRecord]: ...

    async def search(
        self,
        user_id: str,
        dimension: MemoryDimension,
        embedding: list[float],
        limit: int,
        status: CommitmentStatus | None = None,
    ) -> list[tuple[MemoryRecord, float]]: ...

    async def find_by_text(
        self, user_id: str, dimension: MemoryDimension, text: str
    ) -> MemoryRecord | None: ...

    async def update_relevance(
        self, dimension: MemoryDimension, memory_id: UUID, relevance: float, decayed_at: datetime
    ) -> None: ...

    async def mark_accessed(self, dimension: MemoryDimension, memory_id: UUID, at: datetime) -> None: ...

    async def update_commitment(
        self, memory_id: UUID, status: CommitmentStatus, fulfilled_at: datetime | None
    ) -> MemoryRecord | None: ...

    async def delete(self, dimension: MemoryDimension, memory_id: UUID) -> bool: ...

    async def log_audit(self, entry: MemoryAuditEntry) -> None: ...

    async def list_audit(self, user_id: str, limit: int = 100) -> list[MemoryAuditEntry]: ...


class InMemoryMemoryStore:
    """Dict-backed MemoryStore.

    Records are copied on the way in and out so callers never hold a
    reference into the store. A single asyncio.Lock serializes writes.
    """

    MAX_AUDIT = 10000

    def __init__(self) -> None:
        self._records: dict[MemoryDimension, dict[UUID, MemoryRecord]] = {d: {} for d in MemoryDimension}
        self._audit: deque[MemoryAuditEntry] = deque(maxlen=self.MAX_AUDIT)
        self._lock = asyncio.Lock()

    async def insert(self, record: MemoryRecord) -> MemoryRecord:
        async with self._lock:
            self._records[record.dimension][record.id] = record.model_copy(deep=True)
        return record

    async def get(self, dimension: MemoryDimension, memory_id: UUID) -> MemoryRecord | None:
        record = self._records[dimension].get(memory_id)
        return record.model_copy(deep=True) if record else None

    async def list_for_user(
        self, user_id: str, dimension: MemoryDimension, limit: int | None = None
    ) -> list[MemoryRecord]:
        rows = [r for r in self._records[dimension].values() if r.user_id == user_id]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        if limit is not None:
            rows = rows[:limit]
        return [r.model_copy(deep=True) for r in rows]

    async def search(
        self,
        user_id: str,
        dimension: MemoryDimension,
        embedding: list[float],
        limit: int,
        status: CommitmentStatus | None = None,
    ) -> list[tuple[MemoryRecord, float]]:
        scored: list[tuple[MemoryRecord, float]] = []
        for record in self._records[dimension].values():
            if record.user_id != user_id or record.embedding is None:
                continue
            if status is not None and record.status != status:
                continue
            scored.append((record, cosine_similarity(embedding, record.embedding)))
        scored.sort(key=lambda pair: (-pair[1], str(pair[0].id)))
        return [(r.model_copy(deep=True), sim) for r, sim in scored[:limit]]

    async def find_by_text(
        self, user_id: str, dimension: MemoryDimension, text: str
    ) -> MemoryRecord | None:
        needle = text.strip().lower()
        for record in self._records[dimension].values():
            if record.user_id == user_id and record.text.strip().lower() == needle:
                return record.model_copy(deep=True)
        return None

    async def update_relevance(
        self, dimension: MemoryDimension, memory_id: UUID, relevance: float, decayed_at: datetime
    ) -> None:
        async with self._lock:
            record = self._records[dimension].get(memory_id)
            if record is not None:
                record.relevance = relevance
                record.decayed_at = decayed_at
                record.updated_at = decayed_at

    async def mark_accessed(self, dimension: MemoryDimension, memory_id: UUID, at: datetime) -> None:
        async with self._lock:
            record = self._records[dimension].get(memory_id)
            if record is not None:
                record.accessed_at = at
                record.access_count += 1

    async def update_commitment(
        self, memory_id: UUID, status: CommitmentStatus, fulfilled_at: datetime | None
    ) -> MemoryRecord | None:
        async with self._lock:
            record = self._records[MemoryDimension.COMMITMENT].get(memory_id)
            if record is None:
                return None
            record.status = status
            record.fulfilled_at = fulfilled_at
            record.updated_at = utcnow()
            return record.model_copy(deep=True)

    async def delete(self, dimension: MemoryDimension, memory_id: UUID) -> bool:
        async with self._lock:
            return self._records[dimension].pop(memory_id, None) is not None

    async def log_audit(self, entry: MemoryAuditEntry) -> None:
        self._audit.append(entry)

    async def list_audit(self, user_id: str, limit: int = 100) -> list[MemoryAuditEntry]:
        return [e for e in reversed(self._audit) if e.user_id == user_id][:limit]
