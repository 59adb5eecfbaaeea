"""
Database migration runner for asyncpg.

Applies forward-only SQL migrations from the migrations/ directory. Each
migration runs in its own transaction, and the whole run holds a
PostgreSQL advisory lock so that controller replicas starting together
apply each migration exactly once.
"""

import hashlib
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_PATTERN = re.compile(r"^(\d{3})_.+\.sql$")

# Arbitrary application-wide key for pg_advisory_lock.
MIGRATION_LOCK_KEY = 0x5053_5243


@dataclass
class Migration:
    """A migration file on disk."""

    version: str
    filename: str
    path: Path

    def read(self) -> str:
        return self.path.read_text(encoding="utf-8")

    def checksum(self) -> str:
        return hashlib.sha256(self.read().encode("utf-8")).hexdigest()


async def ensure_migration_table(conn: asyncpg.Connection) -> None:
    """Create the schema_migrations tracking table if it doesn't exist."""
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version VARCHAR(16) PRIMARY KEY,
            filename VARCHAR(255) NOT NULL,
            checksum VARCHAR(64) NOT NULL,
            applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """
    )


def discover_migrations(directory: Path = None) -> List[Migration]:
    """
    Discover migration files.

    Returns:
        Migrations sorted by version.

    Raises:
        FileNotFoundError: If the migrations directory doesn't exist.
    """
    directory = directory or MIGRATIONS_DIR
    if not directory.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {directory}")

    migrations = []
    for entry in sorted(directory.iterdir()):
        match = MIGRATION_PATTERN.match(entry.name)
        if match and entry.is_file():
            migrations.append(Migration(match.group(1), entry.name, entry))
    return migrations


async def get_applied_checksums(conn: asyncpg.Connection) -> Dict[str, str]:
    """Map of applied migration version to the checksum it was applied with."""
    rows = await conn.fetch("SELECT version, checksum FROM schema_migrations")
    return {row["version"]: row["checksum"] for row in rows}


async def apply_migration(conn: asyncpg.Connection, migration: Migration) -> None:
    """Apply a single migration in its own transaction."""
    async with conn.transaction():
        await conn.execute(migration.read())
        await conn.execute(
            "INSERT INTO schema_migrations (version, filename, checksum) "
            "VALUES ($1, $2, $3)",
            migration.version,
            migration.filename,
            migration.checksum(),
        )
    logger.info(f"Applied migration {migration.filename}")


async def run_migrations(pool: asyncpg.Pool) -> int:
    """
    Apply all pending migrations in version order.

    A migration whose file changed after it was applied is reported but
    not re-run; migrations are forward-only.

    Returns:
        Number of migrations applied.

    Raises:
        FileNotFoundError: If the migrations directory is missing.
        asyncpg.PostgresError: If a migration fails (it is rolled back;
            previously applied migrations remain).
    """
    migrations = discover_migrations()

    async with pool.acquire() as conn:
        await conn.execute("SELECT pg_advisory_lock($1)", MIGRATION_LOCK_KEY)
        try:
            await ensure_migration_table(conn)
            applied = await get_applied_checksums(conn)

            pending = []
            for migration in migrations:
                checksum = applied.get(migration.version)
                if checksum is None:
                    pending.append(migration)
                elif checksum != migration.checksum():
                    logger.warning(
                        f"Migration {migration.filename} changed after it was applied"
                    )

            if not pending:
                logger.info("Database schema is up to date")
                return 0

            logger.info(f"Applying {len(pending)} pending migration(s)")
            for migration in pending:
                await apply_migration(conn, migration)
        finally:
            await conn.execute("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_KEY)

    logger.info(f"Successfully applied {len(pending)} migration(s)")
    return len(pending)
