"""Shared fixtures. Every store is in-memory; no database or network."""

import hashlib
import random

import pytest
import pytest_asyncio

from vi_core.cognition.executor import BacktrackingExecutor, Executor
from vi_core.cognition.gateway import StubGateway
from vi_core.cognition.pipeline import CognitionPipeline
from vi_core.cognition.planner import Planner
from vi_core.cognition.policy import PolicyEngine
from vi_core.cognition.records import InMemoryRunRecordStore
from vi_core.config import Settings
from vi_core.grounding.canon import CanonResolver, InMemoryCanonStore, sample_canon
from vi_core.grounding.gate import GroundingGate
from vi_core.grounding.lore import LoreModeEngine
from vi_core.identity.enforcer import SelfModelEnforcer
from vi_core.identity.manager import InMemorySelfModelRepository, SelfModelManager
from vi_core.identity.regenerator import SelfModelRegenerator
from vi_core.memory.engine import MemoryEngine
from vi_core.memory.store import InMemoryMemoryStore
from vi_core.tools.builtins import register_builtin_tools
from vi_core.tools.registry import ToolRegistry
from vi_core.tools.runner import ToolRunner
from vi_core.tools.selector import ToolSelector

# ---------------------------------------------------------------------------
# Mock embedding provider (PRNG-seeded, L2-normalized vectors)
# ---------------------------------------------------------------------------


class MockEmbeddingProvider:
    """Returns deterministic, L2-normalized embeddings seeded from text hash.

    Uses a PRNG seeded from the SHA-256 hash of the input text, so
    unrelated texts are near-orthogonal while identical texts produce
    identical vectors.
    """

    def __init__(self) -> None:
        self.calls = 0

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        h = hashlib.sha256(text.encode()).hexdigest()
        rng = random.Random(h)
        vec = [rng.gauss(0, 1) for _ in range(1536)]
        norm = sum(x * x for x in vec) ** 0.5
        return [x / norm for x in vec]

    async def embed_near(self, text: str, noise: float = 0.05) -> list[float]:
        """Embedding with cosine similarity ~(1 - noise) to embed(text)."""
        base = await self.embed(text)
        rng = random.Random(f"{text}_near_{noise}")
        noisy = [v + rng.gauss(0, noise) for v in base]
        norm = sum(x * x for x in noisy) ** 0.5
        return [x / norm for x in noisy]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [await self.embed(t) for t in texts]

    async def close(self) -> None:
        pass


class FailingEmbeddingProvider:
    async def embed(self, text: str) -> list[float]:
        raise RuntimeError("embedding service unavailable")

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        raise RuntimeError("embedding service unavailable")


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def embeddings() -> MockEmbeddingProvider:
    return MockEmbeddingProvider()


@pytest.fixture
def memory(embeddings) -> MemoryEngine:
    return MemoryEngine(InMemoryMemoryStore(), embeddings)


@pytest.fixture
def registry() -> ToolRegistry:
    reg = ToolRegistry()
    register_builtin_tools(reg)
    return reg


@pytest.fixture
def registry_with_memory(memory) -> ToolRegistry:
    reg = ToolRegistry()
    register_builtin_tools(reg, memory)
    return reg


@pytest.fixture
def runner(registry) -> ToolRunner:
    return ToolRunner(registry)


@pytest.fixture
def policy() -> PolicyEngine:
    return PolicyEngine()


@pytest.fixture
def canon() -> CanonResolver:
    return CanonResolver(InMemoryCanonStore(sample_canon()))


@pytest.fixture
def lore(canon) -> LoreModeEngine:
    return LoreModeEngine(canon)


@pytest.fixture
def grounding(canon) -> GroundingGate:
    return GroundingGate(canon)


@pytest_asyncio.fixture
async def self_models() -> SelfModelManager:
    manager = SelfModelManager(InMemorySelfModelRepository())
    await manager.initialize()
    return manager


@pytest.fixture
def regenerator(self_models) -> SelfModelRegenerator:
    return SelfModelRegenerator(self_models)


@pytest.fixture
def enforcer(self_models, regenerator) -> SelfModelEnforcer:
    return SelfModelEnforcer(self_models, regenerator)


@pytest.fixture
def records() -> InMemoryRunRecordStore:
    return InMemoryRunRecordStore()


@pytest.fixture
def pipeline(registry, policy, records, memory, lore, grounding, self_models, enforcer) -> CognitionPipeline:
    """Fully wired pipeline on the deterministic stub gateway."""
    return CognitionPipeline(
        StubGateway(),
        Planner(ToolSelector(registry)),
        BacktrackingExecutor(Executor(policy, ToolRunner(registry))),
        records,
        memory=memory,
        lore=lore,
        grounding=grounding,
        self_models=self_models,
        enforcer=enforcer,
    )
