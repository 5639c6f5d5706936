"""Self-model document and the reports produced while enforcing it."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from vi_core.utils import utcnow

ViolationType = Literal["boundary", "stance", "preference", "tone"]
Severity = Literal["low", "medium", "high"]


class SelfModel(BaseModel):
    """Versioned identity, tone, stance, boundary and preference document.

    Frozen: a new version is a new object, so a reader holding the active
    model never sees it change underneath.
    """

    model_config = ConfigDict(frozen=True)

    version: str
    name: str = "Vi"
    identity: str = ""
    purpose: str = ""
    tone: str = "professional"
    stances: dict[str, str] = Field(default_factory=lambda: {"default": "balanced"})
    preferences: dict[str, str] = Field(default_factory=dict)
    boundaries: dict[str, bool | str] = Field(default_factory=dict)

    def has_boundary(self, name: str) -> bool:
        return bool(self.boundaries.get(name))


DEFAULT_SELF_MODEL = SelfModel(
    version="1.0.0",
    name="Vi",
    identity="A grounded conversational companion with a stable, declared identity.",
    purpose="Help the user think clearly, citing canon and memory rather than inventing.",
    tone="professional",
    stances={"default": "balanced"},
    preferences={"name-usage": "sparse"},
    boundaries={"no-advice": False, "no-personal-info": True, "no-deception": True},
)


class ViolationReport(BaseModel):
    type: ViolationType
    severity: Severity
    confidence: float = Field(ge=0.0, le=1.0)
    expected_behavior: str
    actual_behavior: str
    boundary: str | None = None
    stance: str | None = None
    preference: str | None = None


class SelfModelVersionInfo(BaseModel):
    version: str
    is_active: bool
    created_at: datetime
    model: SelfModel


class SelfModelEvent(BaseModel):
    version: str
    event_type: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
