"""Pydantic models and decay tuning for the memory engine.

Four dimensions share one MemoryRecord shape; kind-specific fields are
optional and only populated for the dimension that owns them:

- semantic:   category + confidence
- relational: affective_valence in [-1, 1]
- commitment: commitment_type + status + deadline / fulfilled_at
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any, Literal
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from vi_core.utils import utcnow


class MemoryDimension(StrEnum):
    EPISODIC = "episodic"
    SEMANTIC = "semantic"
    RELATIONAL = "relational"
    COMMITMENT = "commitment"


class CommitmentStatus(StrEnum):
    PENDING = "pending"
    FULFILLED = "fulfilled"
    BROKEN = "broken"
    EXPIRED = "expired"


AuditOperation = Literal["create", "access", "decay", "consolidate", "delete"]


@dataclass(frozen=True)
class DecayConfig:
    half_life_days: float
    min_relevance: float


DECAY_CONFIG: dict[MemoryDimension, DecayConfig] = {
    MemoryDimension.EPISODIC: DecayConfig(half_life_days=30, min_relevance=0.1),
    MemoryDimension.SEMANTIC: DecayConfig(half_life_days=90, min_relevance=0.2),
    MemoryDimension.RELATIONAL: DecayConfig(half_life_days=60, min_relevance=0.1),
    MemoryDimension.COMMITMENT: DecayConfig(half_life_days=14, min_relevance=0.05),
}


class MemoryInput(BaseModel):
    """Input for writing a memory record."""

    text: str = Field(min_length=1)
    session_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    # semantic
    category: str | None = None
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    # relational
    affective_valence: float | None = Field(default=None, ge=-1.0, le=1.0)
    # commitment
    commitment_type: str | None = None
    status: CommitmentStatus | None = None
    deadline: datetime | None = None


class MemoryRecord(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    user_id: str
    dimension: MemoryDimension
    text: str
    embedding: list[float] | None = Field(default=None, repr=False)
    relevance: float = Field(default=1.0, ge=0.0, le=1.0)
    session_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    accessed_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    decayed_at: datetime | None = None  # last time decay was applied
    access_count: int = 0
    category: str | None = None
    confidence: float | None = None
    affective_valence: float | None = None
    commitment_type: str | None = None
    status: CommitmentStatus | None = None
    deadline: datetime | None = None
    fulfilled_at: datetime | None = None

    @property
    def decay_anchor(self) -> datetime:
        """Start of the interval not yet reflected in relevance."""
        if self.decayed_at is None or self.decayed_at < self.accessed_at:
            return self.accessed_at
        return self.decayed_at


class RetrievedMemory(BaseModel):
    record: MemoryRecord
    similarity: float
    score: float  # similarity * relevance


class MemoryAuditEntry(BaseModel):
    user_id: str
    dimension: MemoryDimension
    memory_id: UUID
    operation: AuditOperation
    old_relevance: float | None = None
    new_relevance: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class MaintenanceReport(BaseModel):
    """Outcome of a per-user decay / prune pass.

    counts holds affected records per dimension; failed lists dimensions
    whose pass raised (the remaining dimensions still ran).
    """

    operation: Literal["decay", "prune"]
    user_id: str
    counts: dict[MemoryDimension, int] = Field(default_factory=dict)
    failed: list[MemoryDimension] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(self.counts.values())
