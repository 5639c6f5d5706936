"""Auto-migration runner: applies pending SQL migrations on startup.

Discovers sql/migrations/*.sql files, tracks applied versions in
vi_system.schema_migrations, and executes pending ones in order.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

_MIGRATIONS_DIR = Path(__file__).resolve().parent.parent.parent / "sql" / "migrations"

_BOOTSTRAP_SQL = [
    "CREATE SCHEMA IF NOT EXISTS vi_system",
    """
    CREATE TABLE IF NOT EXISTS vi_system.schema_migrations (
        version    VARCHAR(20) PRIMARY KEY,
        name       VARCHAR(255) NOT NULL,
        checksum   VARCHAR(64) NOT NULL,
        applied_at TIMESTAMPTZ DEFAULT now()
    )
    """,
]


def split_statements(sql: str) -> list[str]:
    """Split a migration file into single statements.

    asyncpg prepares each statement, so a file cannot be sent in one go.
    Comment lines are dropped; statements end at a line ending in ';'.
    """
    statements: list[str] = []
    buf: list[str] = []
    for line in sql.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("--"):
            continue
        buf.append(line)
        if stripped.endswith(";"):
            statements.append("\n".join(buf).rstrip().rstrip(";"))
            buf = []
    if buf:
        statements.append("\n".join(buf))
    return statements


async def run_migrations(engine: AsyncEngine, migrations_dir: Path | None = None) -> list[str]:
    """Apply pending SQL migrations and return list of newly applied names."""
    directory = migrations_dir or _MIGRATIONS_DIR
    if not directory.is_dir():
        logger.debug("No migrations directory found at %s", directory)
        return []

    # Sorted by name (e.g. 001_vi_core.sql)
    files = sorted(directory.glob("*.sql"))
    if not files:
        return []

    applied: list[str] = []
    async with engine.begin() as conn:
        for stmt in _BOOTSTRAP_SQL:
            await conn.execute(text(stmt))

        result = await conn.execute(text("SELECT version, checksum FROM vi_system.schema_migrations"))
        existing = {row[0]: row[1] for row in result}

        for path in files:
            version = path.stem.split("_", 1)[0]
            sql = path.read_text(encoding="utf-8")
            checksum = hashlib.sha256(sql.encode()).hexdigest()

            if version in existing:
                if existing[version] != checksum:
                    logger.warning("Migration %s changed after it was applied", path.name)
                continue

            logger.info("Applying migration %s ...", path.name)
            for stmt in split_statements(sql):
                await conn.execute(text(stmt))
            await conn.execute(
                text(
                    "INSERT INTO vi_system.schema_migrations (version, name, checksum) "
                    "VALUES (:version, :name, :checksum)"
                ),
                {"version": version, "name": path.stem, "checksum": checksum},
            )
            applied.append(path.stem)
            logger.info("Migration %s applied", path.name)

    if applied:
        logger.info("Migrations applied: %s", applied)
    else:
        logger.debug("All migrations up to date")

    return applied
