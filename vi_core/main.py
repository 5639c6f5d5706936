"""vi_core entry point.

Initializes all components and starts the server:
  Settings -> Database (optional) -> stores -> Memory / Canon / Self-model
  -> Tools -> Planner / Executor -> CognitionPipeline -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same event
loop as uvicorn. Without VI_USE_DATABASE every store is in-memory.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from starlette.applications import Starlette

from vi_core.cognition.executor import BacktrackingExecutor, Executor
from vi_core.cognition.gateway import AnthropicGateway, StubGateway
from vi_core.cognition.pipeline import CognitionPipeline
from vi_core.cognition.planner import Planner
from vi_core.cognition.policy import PolicyEngine
from vi_core.cognition.records import InMemoryRunRecordStore, SqlRunRecordStore
from vi_core.config import Settings
from vi_core.events import TURN_COMPLETED, Event, EventBus
from vi_core.grounding.canon import CanonResolver, InMemoryCanonStore, SqlCanonStore, sample_canon
from vi_core.grounding.gate import GroundingGate, MemoryResolver
from vi_core.grounding.lore import LoreModeEngine
from vi_core.grounding.schemas import GroundingRequirements
from vi_core.identity.enforcer import SelfModelEnforcer
from vi_core.identity.manager import InMemorySelfModelRepository, SelfModelManager, SqlSelfModelRepository
from vi_core.identity.regenerator import SelfModelRegenerator
from vi_core.memory.embeddings import EmbeddingProvider
from vi_core.memory.engine import DecaySweeper, MemoryEngine
from vi_core.memory.sql_store import SqlMemoryStore
from vi_core.memory.store import InMemoryMemoryStore
from vi_core.storage.database import Database
from vi_core.storage.migrator import run_migrations
from vi_core.storage.models import Event as EventRow
from vi_core.tools.builtins import register_builtin_tools
from vi_core.tools.registry import ToolRegistry
from vi_core.tools.runner import CostTracker, ToolRunner
from vi_core.tools.selector import ToolSelector
from vi_core.tools.sql_audit import SqlToolAuditStore

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict[str, Any]:
    """Initialize all components in dependency order."""
    database = None
    if settings.use_database:
        database = Database(settings)
        await database.connect()
        await run_migrations(database.engine)
        await database.verify_schemas()

    bus = EventBus()
    if database is not None:

        async def persist_to_db(event: Event) -> None:
            async with database.session() as session:
                session.add(
                    EventRow(
                        user_id=event.user_id,
                        session_id=event.session_id,
                        event_type=event.type,
                        data=event.data,
                        created_at=event.timestamp,
                    )
                )
                await session.commit()

        bus.set_persister(persist_to_db)

    embedding_provider = None
    if settings.openai_api_key:
        embedding_provider = EmbeddingProvider(
            api_key=settings.openai_api_key,
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
        )
    else:
        logger.warning("OPENAI_API_KEY not set -- memory retrieval will be unavailable")

    if settings.anthropic_api_key:
        gateway = AnthropicGateway(settings)
    else:
        logger.warning("ANTHROPIC_API_KEY not set -- using the deterministic stub gateway")
        gateway = StubGateway()

    # Memory
    memory_store = SqlMemoryStore(database) if database else InMemoryMemoryStore()
    memory = MemoryEngine(memory_store, embedding_provider, bus=bus)
    sweeper = DecaySweeper(
        memory, settings.decay_sweep_interval, prune_threshold=settings.memory_prune_threshold
    )

    async def track_user(event: Event) -> None:
        if event.user_id:
            sweeper.track(event.user_id)

    bus.on(TURN_COMPLETED, track_user)

    # Canon
    if database is not None:
        canon_store = SqlCanonStore(database)
        if not await canon_store.list_entities():
            await canon_store.load(sample_canon())
            logger.info("Seeded sample canon")
    else:
        canon_store = InMemoryCanonStore(sample_canon())
    resolver = CanonResolver(canon_store, uncertainty_threshold=settings.canon_uncertainty_threshold)
    lore = LoreModeEngine(resolver, user_default=settings.lore_mode_user_default)
    grounding = GroundingGate(
        resolver,
        memory=MemoryResolver(memory) if embedding_provider else None,
        requirements=GroundingRequirements(
            min_confidence=settings.grounding_min_confidence,
            max_ungrounded_claims=settings.grounding_max_ungrounded_claims,
        ),
    )

    # Self-model
    repo = SqlSelfModelRepository(database) if database else InMemorySelfModelRepository()
    self_models = SelfModelManager(repo, bus=bus)
    await self_models.initialize()
    regenerator = SelfModelRegenerator(
        self_models,
        gateway=gateway,
        high_threshold=settings.regeneration_high_threshold,
        medium_threshold=settings.regeneration_medium_threshold,
        window_seconds=settings.regeneration_window_seconds,
        llm_refinement=settings.self_model_llm_refinement,
    )
    enforcer = SelfModelEnforcer(self_models, regenerator)

    # Tools
    registry = ToolRegistry()
    register_builtin_tools(registry, memory if embedding_provider else None)
    runner = ToolRunner(
        registry,
        cost_tracker=CostTracker(default_balance=settings.tool_default_balance),
        audit_store=SqlToolAuditStore(database) if database else None,
    )
    policy = PolicyEngine(blocklist=settings.tool_blocklist, rules=settings.policy_rules)

    records = SqlRunRecordStore(database) if database else InMemoryRunRecordStore()
    pipeline = CognitionPipeline(
        gateway,
        # the stub cannot produce plans, so only a real gateway plans
        Planner(ToolSelector(registry), gateway=gateway if isinstance(gateway, AnthropicGateway) else None),
        BacktrackingExecutor(Executor(policy, runner)),
        records,
        memory=memory if embedding_provider else None,
        lore=lore,
        grounding=grounding,
        self_models=self_models,
        enforcer=enforcer,
        bus=bus,
        memory_limit=settings.memory_retrieval_limit,
    )

    await bus.start()
    await sweeper.start()

    return {
        "database": database,
        "bus": bus,
        "embedding_provider": embedding_provider,
        "gateway": gateway,
        "memory": memory,
        "sweeper": sweeper,
        "self_models": self_models,
        "registry": registry,
        "records": records,
        "pipeline": pipeline,
    }


async def shutdown_components(components: dict[str, Any]) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down vi_core...")

    sweeper = components.get("sweeper")
    if sweeper:
        await sweeper.stop()

    bus = components.get("bus")
    if bus:
        await bus.stop()

    gateway = components.get("gateway")
    if isinstance(gateway, AnthropicGateway):
        await gateway.close()

    embedding_provider = components.get("embedding_provider")
    if embedding_provider:
        await embedding_provider.close()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("vi_core shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app; components are created in the lifespan."""
    components: dict[str, Any] = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))
        app.state.components = components
        logger.info(
            "vi_core started (storage=%s, model=%s)",
            "postgres" if settings.use_database else "memory",
            settings.model,
        )
        yield
        await shutdown_components(components)

    from vi_core.api.rest import create_app

    return create_app(
        pipeline=_lazy_component(components, "pipeline"),
        registry=_lazy_component(components, "registry"),
        records=_lazy_component(components, "records"),
        self_models=_lazy_component(components, "self_models"),
        database=_lazy_component(components, "database") if settings.use_database else None,
        lifespan=lifespan,
    )


class _LazyProxy:
    """Defers attribute access to a component created during lifespan."""

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized -- lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def _lazy_component(components: dict, key: str) -> Any:
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point: parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting vi_core on %s:%d", settings.host, settings.port)
    if settings.use_database:
        logger.info("Database: %s:%s/%s", settings.db_host, settings.db_port, settings.db_name)

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
