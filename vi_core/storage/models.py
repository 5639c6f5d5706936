"""SQLAlchemy ORM models for vi_core tables across 4 schemas."""

import uuid
from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Single declarative base for all schemas."""

    pass


# =============================================================================
# VI_SYSTEM SCHEMA (4 tables)
# =============================================================================


class Event(Base):
    __tablename__ = "events"
    __table_args__ = {"schema": "vi_system"}

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid())
    user_id: Mapped[str | None] = mapped_column(String(100))
    session_id: Mapped[str | None] = mapped_column(String(100))
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    data: Mapped[dict] = mapped_column(JSONB, nullable=False, server_default="{}")
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SelfModelVersion(Base):
    __tablename__ = "self_models"
    __table_args__ = {"schema": "vi_system"}

    version: Mapped[str] = mapped_column(String(200), primary_key=True)
    model: Mapped[dict] = mapped_column(JSONB, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="false")
    previous_version: Mapped[str | None] = mapped_column(String(200))
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SelfModelEvent(Base):
    __tablename__ = "self_model_events"
    __table_args__ = {"schema": "vi_system"}

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid())
    version: Mapped[str] = mapped_column(String(200), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    details: Mapped[dict] = mapped_column(JSONB, nullable=False, server_default="{}")
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ToolAuditLog(Base):
    __tablename__ = "tool_audit_log"
    __table_args__ = (
        CheckConstraint(
            "status IN ('success', 'failure', 'timeout', 'permission_denied', 'rate_limited')",
            name="ck_tool_audit_status",
        ),
        {"schema": "vi_system"},
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid())
    tool_name: Mapped[str] = mapped_column(String(100), nullable=False)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    session_id: Mapped[str | None] = mapped_column(String(100))
    params: Mapped[dict] = mapped_column(JSONB, nullable=False, server_default="{}")
    duration_ms: Mapped[float] = mapped_column(Float, nullable=False, server_default="0")
    cost: Mapped[float] = mapped_column(Float, nullable=False, server_default="0")
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())


# =============================================================================
# VI_MEMORY SCHEMA (2 tables)
# =============================================================================


class MemoryRecordRow(Base):
    __tablename__ = "memory_records"
    __table_args__ = (
        CheckConstraint(
            "dimension IN ('episodic', 'semantic', 'relational', 'commitment')",
            name="ck_memory_dimension",
        ),
        CheckConstraint("relevance >= 0 AND relevance <= 1", name="ck_memory_relevance"),
        CheckConstraint(
            "affective_valence IS NULL OR (affective_valence >= -1 AND affective_valence <= 1)",
            name="ck_memory_valence",
        ),
        CheckConstraint(
            "status IS NULL OR status IN ('pending', 'fulfilled', 'broken', 'expired')",
            name="ck_memory_commitment_status",
        ),
        {"schema": "vi_memory"},
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    dimension: Mapped[str] = mapped_column(String(20), nullable=False)
    session_id: Mapped[str | None] = mapped_column(String(100))
    text: Mapped[str] = mapped_column(Text, nullable=False)
    embedding = mapped_column(Vector(1536), nullable=True)
    relevance: Mapped[float] = mapped_column(Float, nullable=False, server_default="1.0")
    metadata_: Mapped[dict] = mapped_column("metadata", JSONB, nullable=False, server_default="{}")
    access_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    category: Mapped[str | None] = mapped_column(String(50))
    confidence: Mapped[float | None] = mapped_column(Float)
    affective_valence: Mapped[float | None] = mapped_column(Float)
    commitment_type: Mapped[str | None] = mapped_column(String(50))
    status: Mapped[str | None] = mapped_column(String(20))
    deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    fulfilled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    accessed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    decayed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class MemoryAuditLog(Base):
    __tablename__ = "memory_audit_log"
    __table_args__ = (
        CheckConstraint(
            "operation IN ('create', 'access', 'decay', 'consolidate', 'delete')",
            name="ck_memory_audit_operation",
        ),
        {"schema": "vi_memory"},
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid())
    user_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    dimension: Mapped[str] = mapped_column(String(20), nullable=False)
    memory_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    operation: Mapped[str] = mapped_column(String(20), nullable=False)
    old_relevance: Mapped[float | None] = mapped_column(Float)
    new_relevance: Mapped[float | None] = mapped_column(Float)
    metadata_: Mapped[dict] = mapped_column("metadata", JSONB, nullable=False, server_default="{}")
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())


# =============================================================================
# VI_RUNS SCHEMA (2 tables)
# =============================================================================


class RunRecordRow(Base):
    __tablename__ = "run_records"
    __table_args__ = {"schema": "vi_runs"}

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    thought_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    session_id: Mapped[str | None] = mapped_column(String(100), index=True)
    input_text: Mapped[str] = mapped_column(Text, nullable=False)
    intent: Mapped[dict] = mapped_column(JSONB, nullable=False)
    plan: Mapped[dict] = mapped_column(JSONB, nullable=False)
    execution: Mapped[dict] = mapped_column(JSONB, nullable=False)
    reflection: Mapped[dict] = mapped_column(JSONB, nullable=False)
    output: Mapped[str] = mapped_column(Text, nullable=False)
    total_duration_ms: Mapped[float] = mapped_column(Float, nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    short_circuit: Mapped[str | None] = mapped_column(String(50))
    degraded: Mapped[list[str] | None] = mapped_column(ARRAY(Text))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class RunCitation(Base):
    __tablename__ = "run_citations"
    __table_args__ = {"schema": "vi_runs"}

    id: Mapped[str] = mapped_column(String(200), primary_key=True)
    run_record_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("vi_runs.run_records.id", ondelete="CASCADE"), primary_key=True
    )
    source_type: Mapped[str] = mapped_column(String(30), nullable=False)
    source_id: Mapped[str | None] = mapped_column(String(200))
    source_text: Mapped[str | None] = mapped_column(Text)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    metadata_: Mapped[dict] = mapped_column("metadata", JSONB, nullable=False, server_default="{}")
    cited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


# =============================================================================
# VI_CANON SCHEMA (4 tables)
# =============================================================================


class CanonSourceRow(Base):
    __tablename__ = "sources"
    __table_args__ = (
        CheckConstraint("authority_level >= 0 AND authority_level <= 100", name="ck_canon_source_authority"),
        {"schema": "vi_canon"},
    )

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    source_type: Mapped[str] = mapped_column(String(50), nullable=False)
    content: Mapped[str | None] = mapped_column(Text)
    authority_level: Mapped[int] = mapped_column(Integer, nullable=False, server_default="50")


class CanonEntityRow(Base):
    __tablename__ = "entities"
    __table_args__ = (
        CheckConstraint(
            "entity_type IN ('character', 'location', 'faction', 'artifact', 'concept')",
            name="ck_canon_entity_type",
        ),
        {"schema": "vi_canon"},
    )

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    aliases = mapped_column(ARRAY(Text), nullable=False, server_default="{}")
    description: Mapped[str | None] = mapped_column(Text)
    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    attributes: Mapped[dict] = mapped_column(JSONB, nullable=False, server_default="{}")


class CanonFactRow(Base):
    __tablename__ = "facts"
    __table_args__ = (
        CheckConstraint(
            "verification_status IN ('canon', 'extended_canon', 'uncertain', 'disputed')",
            name="ck_canon_fact_status",
        ),
        CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_canon_fact_confidence"),
        {"schema": "vi_canon"},
    )

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    subject_id: Mapped[str] = mapped_column(String(100), ForeignKey("vi_canon.entities.id"), nullable=False)
    predicate: Mapped[str] = mapped_column(String(200), nullable=False)
    object_id: Mapped[str | None] = mapped_column(String(100))
    value: Mapped[str | None] = mapped_column(Text)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    source_id: Mapped[str | None] = mapped_column(String(100), ForeignKey("vi_canon.sources.id"))
    verification_status: Mapped[str] = mapped_column(String(20), nullable=False)
    contradictions = mapped_column(ARRAY(Text), nullable=False, server_default="{}")


class CanonRuleRow(Base):
    __tablename__ = "rules"
    __table_args__ = {"schema": "vi_canon"}

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    rule_text: Mapped[str] = mapped_column(Text, nullable=False)
    applies_to = mapped_column(ARRAY(Text), nullable=False, server_default="{}")
    priority: Mapped[int] = mapped_column(Integer, nullable=False, server_default="50")
    source_id: Mapped[str | None] = mapped_column(String(100), ForeignKey("vi_canon.sources.id"))
