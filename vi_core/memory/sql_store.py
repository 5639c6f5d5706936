"""Postgres + pgvector implementation of MemoryStore.

All four dimensions share vi_memory.memory_records, discriminated by the
dimension column. Similarity search uses pgvector cosine distance.
"""

from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import delete, func, select, update

from vi_core.memory.schemas import (
    CommitmentStatus,
    MemoryAuditEntry,
    MemoryDimension,
    MemoryRecord,
)
from vi_core.storage.database import Database
from vi_core.storage.models import MemoryAuditLog, MemoryRecordRow

logger = logging.getLogger(__name__)


def _to_record(row: MemoryRecordRow) -> MemoryRecord:
    embedding = row.embedding
    return MemoryRecord(
        id=row.id,
        user_id=row.user_id,
        dimension=MemoryDimension(row.dimension),
        text=row.text,
        embedding=list(embedding) if embedding is not None else None,
        relevance=row.relevance,
        session_id=row.session_id,
        metadata=row.metadata_ or {},
        created_at=row.created_at,
        accessed_at=row.accessed_at,
        updated_at=row.updated_at,
        decayed_at=row.decayed_at,
        access_count=row.access_count,
        category=row.category,
        confidence=row.confidence,
        affective_valence=row.affective_valence,
        commitment_type=row.commitment_type,
        status=CommitmentStatus(row.status) if row.status else None,
        deadline=row.deadline,
        fulfilled_at=row.fulfilled_at,
    )


class SqlMemoryStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def insert(self, record: MemoryRecord) -> MemoryRecord:
        row = MemoryRecordRow(
            id=record.id,
            user_id=record.user_id,
            dimension=record.dimension.value,
            session_id=record.session_id,
            text=record.text,
            embedding=record.embedding,
            relevance=record.relevance,
            metadata_=record.metadata,
            access_count=record.access_count,
            category=record.category,
            confidence=record.confidence,
            affective_valence=record.affective_valence,
            commitment_type=record.commitment_type,
            status=record.status.value if record.status else None,
            deadline=record.deadline,
            fulfilled_at=record.fulfilled_at,
            created_at=record.created_at,
            accessed_at=record.accessed_at,
            updated_at=record.updated_at,
            decayed_at=record.decayed_at,
        )
        async with self.db.session() as session:
            session.add(row)
            await session.commit()
        return record

    async def get(self, dimension: MemoryDimension, memory_id: UUID) -> MemoryRecord | None:
        async with self.db.session() as session:
            result = await session.execute(
                select(MemoryRecordRow).where(
                    MemoryRecordRow.id == memory_id,
                    MemoryRecordRow.dimension == dimension.value,
                )
            )
            row = result.scalar_one_or_none()
            return _to_record(row) if row else None

    async def list_for_user(
        self, user_id: str, dimension: MemoryDimension, limit: int | None = None
    ) -> list[MemoryRecord]:
        stmt = (
            select(MemoryRecordRow)
            .where(MemoryRecordRow.user_id == user_id, MemoryRecordRow.dimension == dimension.value)
            .order_by(MemoryRecordRow.created_at.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return [_to_record(r) for r in result.scalars().all()]

    async def search(
        self,
        user_id: str,
        dimension: MemoryDimension,
        embedding: list[float],
        limit: int,
        status: CommitmentStatus | None = None,
    ) -> list[tuple[MemoryRecord, float]]:
        distance = MemoryRecordRow.embedding.cosine_distance(embedding)
        stmt = (
            select(MemoryRecordRow, distance.label("distance"))
            .where(
                MemoryRecordRow.user_id == user_id,
                MemoryRecordRow.dimension == dimension.value,
                MemoryRecordRow.embedding.is_not(None),
            )
            .order_by(distance, MemoryRecordRow.id)
            .limit(limit)
        )
        if status is not None:
            stmt = stmt.where(MemoryRecordRow.status == status.value)
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return [(_to_record(row), 1.0 - float(dist)) for row, dist in result.all()]

    async def find_by_text(
        self, user_id: str, dimension: MemoryDimension, text: str
    ) -> MemoryRecord | None:
        async with self.db.session() as session:
            result = await session.execute(
                select(MemoryRecordRow)
                .where(
                    MemoryRecordRow.user_id == user_id,
                    MemoryRecordRow.dimension == dimension.value,
                    func.lower(func.trim(MemoryRecordRow.text)) == text.strip().lower(),
                )
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _to_record(row) if row else None

    async def update_relevance(
        self, dimension: MemoryDimension, memory_id: UUID, relevance: float, decayed_at: datetime
    ) -> None:
        async with self.db.session() as session:
            await session.execute(
                update(MemoryRecordRow)
                .where(MemoryRecordRow.id == memory_id, MemoryRecordRow.dimension == dimension.value)
                .values(relevance=relevance, decayed_at=decayed_at, updated_at=decayed_at)
            )
            await session.commit()

    async def mark_accessed(self, dimension: MemoryDimension, memory_id: UUID, at: datetime) -> None:
        async with self.db.session() as session:
            await session.execute(
                update(MemoryRecordRow)
                .where(MemoryRecordRow.id == memory_id, MemoryRecordRow.dimension == dimension.value)
                .values(accessed_at=at, access_count=MemoryRecordRow.access_count + 1)
            )
            await session.commit()

    async def update_commitment(
        self, memory_id: UUID, status: CommitmentStatus, fulfilled_at: datetime | None
    ) -> MemoryRecord | None:
        async with self.db.session() as session:
            result = await session.execute(
                select(MemoryRecordRow).where(
                    MemoryRecordRow.id == memory_id,
                    MemoryRecordRow.dimension == MemoryDimension.COMMITMENT.value,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None
            row.status = status.value
            row.fulfilled_at = fulfilled_at
            row.updated_at = func.now()
            await session.commit()
            await session.refresh(row)
            return _to_record(row)

    async def delete(self, dimension: MemoryDimension, memory_id: UUID) -> bool:
        async with self.db.session() as session:
            result = await session.execute(
                delete(MemoryRecordRow).where(
                    MemoryRecordRow.id == memory_id,
                    MemoryRecordRow.dimension == dimension.value,
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def log_audit(self, entry: MemoryAuditEntry) -> None:
        async with self.db.session() as session:
            session.add(
                MemoryAuditLog(
                    user_id=entry.user_id,
                    dimension=entry.dimension.value,
                    memory_id=entry.memory_id,
                    operation=entry.operation,
                    old_relevance=entry.old_relevance,
                    new_relevance=entry.new_relevance,
                    metadata_=entry.metadata,
                    created_at=entry.created_at,
                )
            )
            await session.commit()

    async def list_audit(self, user_id: str, limit: int = 100) -> list[MemoryAuditEntry]:
        async with self.db.session() as session:
            result = await session.execute(
                select(MemoryAuditLog)
                .where(MemoryAuditLog.user_id == user_id)
                .order_by(MemoryAuditLog.created_at.desc())
                .limit(limit)
            )
            return [
                MemoryAuditEntry(
                    user_id=r.user_id,
                    dimension=MemoryDimension(r.dimension),
                    memory_id=r.memory_id,
                    operation=r.operation,
                    old_relevance=r.old_relevance,
                    new_relevance=r.new_relevance,
                    metadata=r.metadata_ or {},
                    created_at=r.created_at,
                )
                for r in result.scalars().all()
            ]
