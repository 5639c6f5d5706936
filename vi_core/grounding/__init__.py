"""Grounding: canon resolution, lore-mode gate and response citation checks."""

from vi_core.grounding.canon import (
    CanonResolver,
    CanonSeed,
    CanonStore,
    InMemoryCanonStore,
    sample_canon,
)
from vi_core.grounding.gate import GroundingGate, MemoryResolver, extract_claims
from vi_core.grounding.lore import LoreModeEngine
from vi_core.grounding.schemas import (
    CanonEntity,
    CanonFact,
    CanonResolution,
    CanonSource,
    Citation,
    CitationSourceType,
    Claim,
    GroundingCheck,
    GroundingRequirements,
    LoreModeContext,
    VerificationStatus,
    VerseRule,
)

__all__ = [
    "CanonResolver",
    "GroundingGate",
    "LoreModeEngine",
    "MemoryResolver",
    "extract_claims",
    # Canon storage
    "CanonSeed",
    "CanonStore",
    "InMemoryCanonStore",
    "sample_canon",
    # Types
    "CanonEntity",
    "CanonFact",
    "CanonResolution",
    "CanonSource",
    "Citation",
    "CitationSourceType",
    "Claim",
    "GroundingCheck",
    "GroundingRequirements",
    "LoreModeContext",
    "VerificationStatus",
    "VerseRule",
]
