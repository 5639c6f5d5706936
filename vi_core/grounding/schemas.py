"""Pydantic models for canon lore and response grounding."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field


class EntityType(StrEnum):
    CHARACTER = "character"
    LOCATION = "location"
    FACTION = "faction"
    ARTIFACT = "artifact"
    CONCEPT = "concept"


class VerificationStatus(StrEnum):
    CANON = "canon"
    EXTENDED_CANON = "extended_canon"
    UNCERTAIN = "uncertain"
    DISPUTED = "disputed"


class CitationSourceType(StrEnum):
    CANON_ENTITY = "canon_entity"
    MEMORY = "memory"
    TOOL_OUTPUT = "tool_output"
    USER_INPUT = "user_input"
    UNCERTAIN = "uncertain"


# ---------------------------------------------------------------------------
# Canon
# ---------------------------------------------------------------------------


class CanonEntity(BaseModel):
    id: str
    name: str
    entity_type: EntityType
    description: str = ""
    aliases: list[str] = Field(default_factory=list)
    attributes: dict[str, Any] = Field(default_factory=dict)


class CanonFact(BaseModel):
    id: str
    subject_id: str
    predicate: str
    value: str | None = None
    object_id: str | None = None
    confidence: float = Field(ge=0.0, le=1.0)
    source_id: str | None = None
    verification_status: VerificationStatus = VerificationStatus.CANON
    contradictions: list[str] = Field(default_factory=list)


class VerseRule(BaseModel):
    id: str
    title: str
    description: str = ""
    text: str
    applies_to: list[str] = Field(default_factory=list)
    priority: int = 50  # higher overrides lower
    source_id: str | None = None


class CanonSource(BaseModel):
    id: str
    title: str
    source_type: str
    content: str = ""
    authority_level: int = Field(default=50, ge=0, le=100)


class CanonResolution(BaseModel):
    entities: list[CanonEntity] = Field(default_factory=list)
    facts: list[CanonFact] = Field(default_factory=list)
    rules: list[VerseRule] = Field(default_factory=list)
    citations: list[CanonSource] = Field(default_factory=list)
    confidence: float = 0.0
    uncertainties: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class LoreModeContext(BaseModel):
    enabled: bool
    locked: bool = False
    detected_entities: list[str] = Field(default_factory=list)
    resolution: CanonResolution | None = None
    reason: str = ""


class ContradictionReport(BaseModel):
    contradictions: list[str] = Field(default_factory=list)
    severity: Literal["critical", "warning", "info"] = "info"


# ---------------------------------------------------------------------------
# Grounding
# ---------------------------------------------------------------------------


class Citation(BaseModel):
    """Typed, confidence-scored pointer from a claim to its evidence."""

    model_config = {"frozen": True}

    id: str
    source_type: CitationSourceType
    source_id: str
    source_text: str = ""
    confidence: float = Field(ge=0.0, le=1.0)
    timestamp: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


ClaimType = Literal["factual", "procedural", "directive", "uncertainty"]
Recommendation = Literal["allow", "block", "warn", "ask_user"]
GroundingStatus = Literal["grounded", "ungrounded", "uncertain", "blocked"]


class Claim(BaseModel):
    id: str
    text: str
    start: int
    end: int
    claim_type: ClaimType = "factual"
    entities: list[str] = Field(default_factory=list)


class GroundingRequirements(BaseModel):
    require_citations: bool = False
    min_confidence: float = 0.7
    allow_unknown: bool = True
    max_ungrounded_claims: int = 3


class GroundingCheck(BaseModel):
    passed: bool
    citations: list[Citation] = Field(default_factory=list)
    confidence: float
    missing_grounding: list[str] = Field(default_factory=list)
    ungrounded_claims: list[Claim] = Field(default_factory=list)
    recommendation: Recommendation = "allow"
    reason: str = ""
    status: GroundingStatus = "grounded"
