"""Run-record persistence. Records are append-only once saved."""

from __future__ import annotations

from typing import Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert

from vi_core.cognition.schemas import Execution, Intent, Plan, Reflection, RunRecord
from vi_core.grounding.schemas import Citation, CitationSourceType
from vi_core.storage.database import Database
from vi_core.storage.models import RunCitation, RunRecordRow


class RunRecordStore(Protocol):
    async def save(self, record: RunRecord) -> UUID: ...

    async def save_citations(self, record_id: UUID, citations: list[Citation]) -> None: ...

    async def get(self, record_id: UUID) -> RunRecord | None: ...


class InMemoryRunRecordStore:
    def __init__(self) -> None:
        self._records: dict[UUID, RunRecord] = {}
        self._citations: dict[UUID, dict[str, Citation]] = {}

    async def save(self, record: RunRecord) -> UUID:
        if record.id in self._records:
            raise ValueError(f"Run record {record.id} already saved")
        self._records[record.id] = record
        return record.id

    async def save_citations(self, record_id: UUID, citations: list[Citation]) -> None:
        if record_id not in self._records:
            raise KeyError(f"Unknown run record {record_id}")
        bucket = self._citations.setdefault(record_id, {})
        for citation in citations:
            bucket.setdefault(citation.id, citation)

    async def get(self, record_id: UUID) -> RunRecord | None:
        record = self._records.get(record_id)
        if record is None:
            return None
        extra = [c for c in self._citations.get(record_id, {}).values() if c not in record.citations]
        return record.model_copy(update={"citations": [*record.citations, *extra]}) if extra else record

    def __len__(self) -> int:
        return len(self._records)


class SqlRunRecordStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def save(self, record: RunRecord) -> UUID:
        async with self.db.session() as session:
            session.add(
                RunRecordRow(
                    id=record.id,
                    thought_id=record.thought_id,
                    user_id=record.user_id,
                    session_id=record.session_id,
                    input_text=record.input_text,
                    intent=record.intent.model_dump(mode="json"),
                    plan=record.plan.model_dump(mode="json"),
                    execution=record.execution.model_dump(mode="json"),
                    reflection=record.reflection.model_dump(mode="json"),
                    output=record.output,
                    total_duration_ms=record.total_duration_ms,
                    success=record.success,
                    short_circuit=record.short_circuit,
                    degraded=record.degraded or None,
                    created_at=record.timestamp,
                )
            )
            await session.commit()
        return record.id

    async def save_citations(self, record_id: UUID, citations: list[Citation]) -> None:
        if not citations:
            return
        async with self.db.session() as session:
            stmt = insert(RunCitation.__table__).values(
                [
                    {
                        "id": c.id,
                        "run_record_id": record_id,
                        "source_type": str(c.source_type),
                        "source_id": c.source_id,
                        "source_text": c.source_text,
                        "confidence": c.confidence,
                        "metadata": c.metadata,
                        "cited_at": c.timestamp,
                    }
                    for c in citations
                ]
            )
            await session.execute(stmt.on_conflict_do_nothing(index_elements=["id", "run_record_id"]))
            await session.commit()

    async def get(self, record_id: UUID) -> RunRecord | None:
        async with self.db.session() as session:
            row = await session.get(RunRecordRow, record_id)
            if row is None:
                return None
            result = await session.execute(select(RunCitation).where(RunCitation.run_record_id == record_id))
            citations = [
                Citation(
                    id=c.id,
                    source_type=CitationSourceType(c.source_type),
                    source_id=c.source_id or "",
                    source_text=c.source_text or "",
                    confidence=c.confidence,
                    timestamp=c.cited_at,
                    metadata=c.metadata_ or {},
                )
                for c in result.scalars().all()
            ]
        return RunRecord(
            id=row.id,
            thought_id=row.thought_id,
            user_id=row.user_id,
            session_id=row.session_id,
            timestamp=row.created_at,
            input_text=row.input_text,
            intent=Intent.model_validate(row.intent),
            plan=Plan.model_validate(row.plan),
            execution=Execution.model_validate(row.execution),
            reflection=Reflection.model_validate(row.reflection),
            output=row.output,
            citations=citations,
            total_duration_ms=row.total_duration_ms,
            success=row.success,
            short_circuit=row.short_circuit,
            degraded=list(row.degraded or []),
        )
