"""Memory engine: four dimensions of user memory with time decay.

Public API: MemoryEngine + DecaySweeper, the store contract and types.
SqlMemoryStore lives in vi_core.memory.sql_store so importing this
package does not pull in the database layer.
"""

from vi_core.memory.embeddings import Embedder, EmbeddingProvider
from vi_core.memory.engine import DecaySweeper, MemoryEngine, decayed_relevance, extract_consolidated_facts
from vi_core.memory.schemas import (
    DECAY_CONFIG,
    CommitmentStatus,
    DecayConfig,
    MaintenanceReport,
    MemoryAuditEntry,
    MemoryDimension,
    MemoryInput,
    MemoryRecord,
    RetrievedMemory,
)
from vi_core.memory.store import InMemoryMemoryStore, MemoryStore

__all__ = [
    "MemoryEngine",
    "DecaySweeper",
    "decayed_relevance",
    "extract_consolidated_facts",
    # Storage
    "MemoryStore",
    "InMemoryMemoryStore",
    # Embeddings
    "Embedder",
    "EmbeddingProvider",
    # Types
    "DECAY_CONFIG",
    "CommitmentStatus",
    "DecayConfig",
    "MaintenanceReport",
    "MemoryAuditEntry",
    "MemoryDimension",
    "MemoryInput",
    "MemoryRecord",
    "RetrievedMemory",
]
