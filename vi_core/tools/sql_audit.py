"""Persist tool audit records to vi_system.tool_audit_log."""

from __future__ import annotations

from sqlalchemy import select

from vi_core.storage.database import Database
from vi_core.storage.models import ToolAuditLog
from vi_core.tools.schemas import ToolAudit, ToolStatus


class SqlToolAuditStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def record(self, audit: ToolAudit) -> None:
        async with self.db.session() as session:
            session.add(
                ToolAuditLog(
                    tool_name=audit.tool_name,
                    user_id=audit.user_id,
                    session_id=audit.session_id,
                    params=audit.params,
                    duration_ms=audit.duration_ms,
                    cost=audit.cost,
                    status=audit.status.value,
                    created_at=audit.timestamp,
                )
            )
            await session.commit()

    async def list_for_user(self, user_id: str, limit: int = 100) -> list[ToolAudit]:
        async with self.db.session() as session:
            result = await session.execute(
                select(ToolAuditLog)
                .where(ToolAuditLog.user_id == user_id)
                .order_by(ToolAuditLog.created_at.desc())
                .limit(limit)
            )
            return [
                ToolAudit(
                    tool_name=r.tool_name,
                    user_id=r.user_id,
                    session_id=r.session_id,
                    params=r.params or {},
                    duration_ms=r.duration_ms,
                    cost=r.cost,
                    status=ToolStatus(r.status),
                    timestamp=r.created_at,
                )
                for r in result.scalars().all()
            ]
