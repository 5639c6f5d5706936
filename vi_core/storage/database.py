"""Postgres access for the SQL-backed stores.

One Database per process owns the engine and hands out sessions. Startup
runs in three steps: connect() checks the server answers, the migrator
creates the vi_* schemas, then verify_schemas() fails fast if any are
still missing.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from vi_core.config import Settings

logger = logging.getLogger(__name__)

# vi_system: migrations + event log, vi_memory: four dimensions + audit,
# vi_runs: run records, citations, tool audit, vi_canon: lore + self-models
REQUIRED_SCHEMAS = frozenset({"vi_system", "vi_memory", "vi_runs", "vi_canon"})

_SCHEMA_QUERY = text(
    "SELECT schema_name FROM information_schema.schemata WHERE schema_name IN :names"
).bindparams(bindparam("names", expanding=True))


class Database:
    def __init__(self, settings: Settings) -> None:
        self.engine: AsyncEngine = create_async_engine(
            settings.db_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=True,
            echo=settings.log_level == "debug",
        )
        self.session_factory = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)
        self._target = f"{settings.db_host}:{settings.db_port}/{settings.db_name}"

    async def connect(self) -> None:
        """Fail fast if the server is unreachable."""
        await self.ping()
        logger.info("Connected to Postgres at %s", self._target)

    async def ping(self) -> None:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def missing_schemas(self) -> set[str]:
        async with self.engine.connect() as conn:
            result = await conn.execute(_SCHEMA_QUERY, {"names": sorted(REQUIRED_SCHEMAS)})
            present = {row[0] for row in result}
        return set(REQUIRED_SCHEMAS - present)

    async def verify_schemas(self) -> None:
        """Raise if migrations left any vi_* schema uncreated."""
        missing = await self.missing_schemas()
        if missing:
            raise RuntimeError(f"Missing database schemas: {sorted(missing)}")

    async def disconnect(self) -> None:
        await self.engine.dispose()
        logger.info("Postgres pool for %s disposed", self._target)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Plain session; callers commit their own writes."""
        async with self.session_factory() as session:
            yield session
