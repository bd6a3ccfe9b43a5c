"""
Object store schema migrations.

Forward-only SQL files named NNN_description.sql are applied in version
order. Each one runs in its own transaction together with its row in
schema_migrations, so a failed migration leaves the schema at the last good
version.
"""

import logging
import re
from pathlib import Path
from typing import List, Optional, Set, Tuple

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_PATTERN = re.compile(r"^(\d{3})_.+\.sql$")

# (version, filename, path)
Migration = Tuple[str, str, Path]


class MigrationError(Exception):
    """A migration file failed to apply."""

    def __init__(self, filename: str, cause: Exception):
        super().__init__(f"Migration {filename} failed: {cause}")
        self.filename = filename


async def ensure_migration_table(conn: asyncpg.Connection) -> None:
    """Create the schema_migrations tracking table if it doesn't exist."""
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version VARCHAR(16) PRIMARY KEY,
            filename VARCHAR(255) NOT NULL,
            applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """)


def discover_migrations(migrations_dir: Optional[Path] = None) -> List[Migration]:
    """
    List the migration files of a directory in version order.

    Raises:
        FileNotFoundError: If the directory doesn't exist.
    """
    directory = migrations_dir or MIGRATIONS_DIR
    if not directory.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {directory}")

    migrations = []
    for entry in sorted(directory.iterdir()):
        match = MIGRATION_PATTERN.match(entry.name)
        if match and entry.is_file():
            migrations.append((match.group(1), entry.name, entry))
    return migrations


async def get_applied_versions(conn: asyncpg.Connection) -> Set[str]:
    rows = await conn.fetch("SELECT version FROM schema_migrations")
    return {row["version"] for row in rows}


async def pending_migrations(
    pool: asyncpg.Pool, migrations_dir: Optional[Path] = None
) -> List[Migration]:
    """Migrations not yet recorded in schema_migrations, in version order."""
    async with pool.acquire() as conn:
        await ensure_migration_table(conn)
        available = discover_migrations(migrations_dir)
        if not available:
            return []
        applied = await get_applied_versions(conn)
    return [m for m in available if m[0] not in applied]


async def apply_migration(
    pool: asyncpg.Pool, version: str, filename: str, path: Path
) -> None:
    """
    Apply a single migration and record it, in one transaction.

    Raises:
        MigrationError: If the SQL fails; the transaction is rolled back.
    """
    sql = path.read_text(encoding="utf-8")

    async with pool.acquire() as conn:
        try:
            async with conn.transaction():
                await conn.execute(sql)
                await conn.execute(
                    "INSERT INTO schema_migrations (version, filename) VALUES ($1, $2)",
                    version,
                    filename,
                )
        except asyncpg.PostgresError as e:
            logger.error(f"Migration {filename} failed, rolled back: {e}")
            raise MigrationError(filename, e) from e

    logger.info(f"Applied migration {filename}")


async def run_migrations(
    pool: asyncpg.Pool, migrations_dir: Optional[Path] = None
) -> int:
    """
    Bring the object store schema up to date.

    Returns:
        Number of migrations applied.

    Raises:
        FileNotFoundError: If the migrations directory is missing.
        MigrationError: If a migration fails. Earlier migrations stay applied.
    """
    pending = await pending_migrations(pool, migrations_dir)
    if not pending:
        logger.info("Object store schema is up to date")
        return 0

    logger.info(f"Applying {len(pending)} pending migration(s)")
    for version, filename, path in pending:
        await apply_migration(pool, version, filename, path)

    logger.info(f"Object store schema now at version {pending[-1][0]}")
    return len(pending)
