"""Memory engine: four decaying memory dimensions with hybrid retrieval.

Each dimension (episodic, semantic, relational, commitment) has its own
half-life and relevance floor (see DECAY_CONFIG). Records are written at
relevance 1.0 and lose weight exponentially while nobody reads them:

    relevance' = relevance * 0.5 ** (days_since_anchor / half_life)

clamped at the floor. Retrieval ranks by similarity * relevance across the
requested dimensions and resets the access clock of whatever it returns.

Per-user passes (decay, retrieval merge, prune) isolate failures by
dimension: one dimension raising is logged and the others still run.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Iterable
from datetime import datetime
from uuid import UUID

from vi_core.events import MEMORY_EVENTS, Event, EventBus
from vi_core.memory.embeddings import Embedder
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
from vi_core.memory.store import MemoryStore
from vi_core.utils import text_overlap, utcnow

logger = logging.getLogger(__name__)

# Relevance changes smaller than this are not written back
DECAY_WRITE_EPSILON = 0.01

CONSOLIDATED_CATEGORY = "preference"
CONSOLIDATED_CONFIDENCE = 0.9
CONSOLIDATED_RELEVANCE = 0.8
CONSOLIDATION_SCAN_LIMIT = 200
CONSOLIDATION_OVERLAP_DUP = 0.9

# Episodic statements promoted to semantic facts: (pattern, template)
_CONSOLIDATION_RULES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"User:\s*Remember:\s*favou?rite test word is ([A-Za-z]+)", re.IGNORECASE), "Favorite test word is {0}"),
    (re.compile(r"User:\s*My birthday is\s*([^\n]+)", re.IGNORECASE), "Birthday is {0}"),
    (re.compile(r"User:\s*I live in\s*([^\n]+)", re.IGNORECASE), "Location is {0}"),
]


def decayed_relevance(relevance: float, elapsed_days: float, config: DecayConfig) -> float:
    """Apply exponential decay over elapsed_days, clamped at the floor."""
    if elapsed_days <= 0:
        return relevance
    decayed = relevance * 0.5 ** (elapsed_days / config.half_life_days)
    return max(config.min_relevance, decayed)


def extract_consolidated_facts(text: str) -> list[str]:
    """Return the semantic facts recognizable in one episodic text."""
    facts = []
    for pattern, template in _CONSOLIDATION_RULES:
        m = pattern.search(text)
        if m:
            facts.append(template.format(m.group(1).strip().rstrip(".!")))
    return facts


class MemoryEngine:
    """Writes, decays, retrieves, consolidates and prunes memory records."""

    def __init__(
        self,
        store: MemoryStore,
        embeddings: Embedder | None,
        *,
        decay_config: dict[MemoryDimension, DecayConfig] | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self.store = store
        self.embeddings = embeddings
        self.decay_config = decay_config or DECAY_CONFIG
        self._bus = bus

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def store_memory(
        self, dimension: MemoryDimension | str, user_id: str, data: MemoryInput
    ) -> MemoryRecord:
        """Embed and insert a record at relevance 1.0."""
        dimension = MemoryDimension(dimension)
        record = MemoryRecord(
            user_id=user_id,
            dimension=dimension,
            text=data.text,
            session_id=data.session_id,
            metadata=data.metadata,
        )

        if dimension == MemoryDimension.SEMANTIC:
            record.category = data.category
            record.confidence = data.confidence if data.confidence is not None else 0.5
        elif dimension == MemoryDimension.RELATIONAL:
            record.affective_valence = data.affective_valence or 0.0
        elif dimension == MemoryDimension.COMMITMENT:
            record.commitment_type = data.commitment_type
            record.status = data.status or CommitmentStatus.PENDING
            record.deadline = data.deadline

        record.embedding = await self._embed(data.text)
        await self.store.insert(record)
        await self._audit(record, "create", new_relevance=record.relevance)
        return record

    async def store_episodic(
        self, user_id: str, text: str, session_id: str | None = None, metadata: dict | None = None
    ) -> MemoryRecord:
        return await self.store_memory(
            MemoryDimension.EPISODIC,
            user_id,
            MemoryInput(text=text, session_id=session_id, metadata=metadata or {}),
        )

    async def store_semantic(
        self,
        user_id: str,
        text: str,
        category: str | None = None,
        confidence: float = 0.5,
        metadata: dict | None = None,
    ) -> MemoryRecord:
        return await self.store_memory(
            MemoryDimension.SEMANTIC,
            user_id,
            MemoryInput(text=text, category=category, confidence=confidence, metadata=metadata or {}),
        )

    async def store_relational(
        self,
        user_id: str,
        text: str,
        affective_valence: float = 0.0,
        session_id: str | None = None,
        metadata: dict | None = None,
    ) -> MemoryRecord:
        return await self.store_memory(
            MemoryDimension.RELATIONAL,
            user_id,
            MemoryInput(
                text=text,
                affective_valence=affective_valence,
                session_id=session_id,
                metadata=metadata or {},
            ),
        )

    async def store_commitment(
        self,
        user_id: str,
        text: str,
        commitment_type: str,
        deadline: datetime | None = None,
        session_id: str | None = None,
        metadata: dict | None = None,
    ) -> MemoryRecord:
        return await self.store_memory(
            MemoryDimension.COMMITMENT,
            user_id,
            MemoryInput(
                text=text,
                commitment_type=commitment_type,
                deadline=deadline,
                session_id=session_id,
                metadata=metadata or {},
            ),
        )

    async def update_commitment_status(
        self, memory_id: UUID, status: CommitmentStatus | str
    ) -> MemoryRecord | None:
        status = CommitmentStatus(status)
        fulfilled_at = utcnow() if status == CommitmentStatus.FULFILLED else None
        return await self.store.update_commitment(memory_id, status, fulfilled_at)

    async def get(self, dimension: MemoryDimension | str, memory_id: UUID) -> MemoryRecord | None:
        return await self.store.get(MemoryDimension(dimension), memory_id)

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    async def retrieve_relevant(
        self,
        query: str,
        user_id: str,
        limit: int = 10,
        dimensions: Iterable[MemoryDimension | str] | None = None,
        mark_accessed: bool = True,
    ) -> list[RetrievedMemory]:
        """Embed the query once, search each dimension, merge by similarity * relevance.

        The top-K results are marked accessed unless mark_accessed is False
        (read-only lookups such as grounding). Raises if the query cannot be
        embedded; a failing dimension search is logged and skipped.
        """
        if self.embeddings is None:
            raise RuntimeError("Memory retrieval requires an embedding provider")
        dims = [MemoryDimension(d) for d in dimensions] if dimensions else list(MemoryDimension)
        query_embedding = await self.embeddings.embed(query)

        async def _search(dim: MemoryDimension) -> list[tuple[MemoryRecord, float]]:
            status = CommitmentStatus.PENDING if dim == MemoryDimension.COMMITMENT else None
            return await self.store.search(user_id, dim, query_embedding, limit, status=status)

        results = await asyncio.gather(*(_search(d) for d in dims), return_exceptions=True)

        candidates: list[RetrievedMemory] = []
        for dim, result in zip(dims, results):
            if isinstance(result, BaseException):
                logger.warning("Memory search failed for %s (user=%s): %s", dim, user_id, result)
                continue
            for record, similarity in result:
                candidates.append(
                    RetrievedMemory(record=record, similarity=similarity, score=similarity * record.relevance)
                )

        candidates.sort(key=lambda r: (-r.score, str(r.record.id)))
        top = candidates[:limit]
        if not mark_accessed:
            return top

        now = utcnow()
        for item in top:
            try:
                await self.store.mark_accessed(item.record.dimension, item.record.id, now)
            except Exception:
                logger.warning("Failed to mark memory %s accessed", item.record.id)
                continue
            await self._audit(item.record, "access", metadata={"similarity": round(item.similarity, 4)})
        return top

    # ------------------------------------------------------------------
    # Decay / prune
    # ------------------------------------------------------------------

    async def apply_decay(self, user_id: str, now: datetime | None = None) -> MaintenanceReport:
        """Decay every record of one user. Never raises relevance."""
        now = now or utcnow()
        report = MaintenanceReport(operation="decay", user_id=user_id)
        for dim in MemoryDimension:
            try:
                report.counts[dim] = await self._decay_dimension(user_id, dim, now)
            except Exception:
                logger.warning("Decay failed for %s (user=%s)", dim, user_id, exc_info=True)
                report.failed.append(dim)
        if report.total:
            logger.info("Decayed %d memories for user %s", report.total, user_id)
        return report

    async def _decay_dimension(self, user_id: str, dim: MemoryDimension, now: datetime) -> int:
        config = self.decay_config[dim]
        updated = 0
        for record in await self.store.list_for_user(user_id, dim):
            elapsed_days = (now - record.decay_anchor).total_seconds() / 86400
            new_relevance = decayed_relevance(record.relevance, elapsed_days, config)
            delta = record.relevance - new_relevance
            reached_floor = new_relevance == config.min_relevance and record.relevance > config.min_relevance
            if delta <= DECAY_WRITE_EPSILON and not reached_floor:
                continue
            await self.store.update_relevance(dim, record.id, new_relevance, now)
            await self._audit(
                record,
                "decay",
                old_relevance=record.relevance,
                new_relevance=new_relevance,
                metadata={"elapsed_days": round(elapsed_days, 3)},
            )
            updated += 1
        return updated

    async def prune(self, user_id: str, threshold: float | None = None) -> MaintenanceReport:
        """Delete records that decayed to the dimension floor.

        With an explicit threshold, deletes records whose relevance is
        strictly below it instead.
        """
        report = MaintenanceReport(operation="prune", user_id=user_id)
        for dim in MemoryDimension:
            floor = self.decay_config[dim].min_relevance
            try:
                pruned = 0
                for record in await self.store.list_for_user(user_id, dim):
                    eligible = record.relevance < threshold if threshold is not None else record.relevance <= floor
                    if not eligible:
                        continue
                    if await self.store.delete(dim, record.id):
                        await self._audit(record, "delete", old_relevance=record.relevance)
                        pruned += 1
                report.counts[dim] = pruned
            except Exception:
                logger.warning("Prune failed for %s (user=%s)", dim, user_id, exc_info=True)
                report.failed.append(dim)
        logger.info("Pruned %d memories for user %s", report.total, user_id)
        return report

    # ------------------------------------------------------------------
    # Consolidation
    # ------------------------------------------------------------------

    async def consolidate(self, user_id: str) -> list[MemoryRecord]:
        """Promote recognizable facts from episodic to semantic memory.

        Idempotent: a fact already present in semantic memory (same text or
        near-total word overlap) is skipped.
        """
        episodes = await self.store.list_for_user(
            user_id, MemoryDimension.EPISODIC, limit=CONSOLIDATION_SCAN_LIMIT
        )
        existing = [r.text for r in await self.store.list_for_user(user_id, MemoryDimension.SEMANTIC)]
        created: list[MemoryRecord] = []

        for episode in episodes:
            for fact in extract_consolidated_facts(episode.text):
                if any(
                    fact.lower() == e.lower() or text_overlap(fact, e) >= CONSOLIDATION_OVERLAP_DUP
                    for e in existing
                ):
                    continue
                record = MemoryRecord(
                    user_id=user_id,
                    dimension=MemoryDimension.SEMANTIC,
                    text=fact,
                    relevance=CONSOLIDATED_RELEVANCE,
                    category=CONSOLIDATED_CATEGORY,
                    confidence=CONSOLIDATED_CONFIDENCE,
                    metadata={"source": "consolidation", "episodic_id": str(episode.id)},
                )
                record.embedding = await self._embed(fact)
                await self.store.insert(record)
                await self._audit(
                    record,
                    "consolidate",
                    new_relevance=record.relevance,
                    metadata={"episodic_id": str(episode.id)},
                )
                existing.append(fact)
                created.append(record)

        if created:
            logger.info("Consolidated %d facts for user %s", len(created), user_id)
        return created

    async def audit_log(self, user_id: str, limit: int = 100) -> list[MemoryAuditEntry]:
        return await self.store.list_audit(user_id, limit)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _embed(self, text: str) -> list[float] | None:
        if self.embeddings is None:
            return None
        try:
            return await self.embeddings.embed(text)
        except Exception:
            logger.warning("Embedding generation failed, storing memory without embedding")
            return None

    async def _audit(
        self,
        record: MemoryRecord,
        operation: str,
        *,
        old_relevance: float | None = None,
        new_relevance: float | None = None,
        metadata: dict | None = None,
    ) -> None:
        entry = MemoryAuditEntry(
            user_id=record.user_id,
            dimension=record.dimension,
            memory_id=record.id,
            operation=operation,
            old_relevance=old_relevance,
            new_relevance=new_relevance,
            metadata=metadata or {},
        )
        try:
            await self.store.log_audit(entry)
        except Exception:
            logger.warning("Failed to log memory audit (%s %s)", operation, record.id)
        event_type = f"memory_{operation}"
        if self._bus is not None and event_type in MEMORY_EVENTS:
            await self._bus.emit(
                Event(
                    type=event_type,
                    user_id=record.user_id,
                    data={"memory_id": str(record.id), "dimension": str(record.dimension)},
                )
            )


class DecaySweeper:
    """Background task that periodically decays and prunes a set of users.

    Runs out of band from turns; each pass awaits store I/O, so concurrent
    retrieval and writes interleave with it.
    """

    def __init__(
        self,
        engine: MemoryEngine,
        interval_seconds: float,
        prune: bool = True,
        prune_threshold: float | None = None,
    ) -> None:
        self._engine = engine
        self._interval = interval_seconds
        self._prune = prune
        self._prune_threshold = prune_threshold
        self._users: set[str] = set()
        self._task: asyncio.Task | None = None

    def track(self, user_id: str) -> None:
        self._users.add(user_id)

    async def sweep_once(self) -> list[MaintenanceReport]:
        reports = []
        for user_id in sorted(self._users):
            reports.append(await self._engine.apply_decay(user_id))
            if self._prune:
                reports.append(await self._engine.prune(user_id, self._prune_threshold))
        return reports

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop(), name="memory-decay-sweeper")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("Memory decay sweep failed")
