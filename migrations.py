"""
Versioned schema migrations.

Files live in ./migrations and are named NNN_description.sql. Each file is
applied once, inside its own transaction, and recorded in schema_migrations.
A failing migration rolls back alone; earlier ones stay applied and the
error propagates so startup stops.
"""
import logging
import re
from pathlib import Path
from typing import List, Set, Tuple
import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"
_FILE_PATTERN = re.compile(r"^(\d+)_(.+)\.sql$")


async def ensure_migrations_table(conn: asyncpg.Connection) -> None:
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TIMESTAMP DEFAULT (NOW() AT TIME ZONE 'utc')
        )
    """)


async def get_applied_migrations(conn: asyncpg.Connection) -> Set[str]:
    rows = await conn.fetch("SELECT version FROM schema_migrations")
    return {row["version"] for row in rows}


def get_migration_files(directory: Path = MIGRATIONS_DIR) -> List[Tuple[str, Path]]:
    """(version, path) pairs sorted numerically by version."""
    if not directory.exists():
        logger.warning(f"MIGRATIONS_DIR_MISSING [path={directory}]")
        return []

    migrations = []
    for file_path in directory.glob("*.sql"):
        match = _FILE_PATTERN.match(file_path.name)
        if match:
            migrations.append((match.group(1), file_path))
        else:
            logger.warning(f"MIGRATION_NAME_IGNORED [file={file_path.name}]")

    migrations.sort(key=lambda item: int(item[0]))
    return migrations


async def apply_migration(conn: asyncpg.Connection, version: str, migration_path: Path) -> None:
    """Execute one migration file. Caller owns the transaction."""
    sql_content = migration_path.read_text(encoding="utf-8")
    if sql_content.strip():
        logger.info(f"MIGRATION_APPLY [version={version}, file={migration_path.name}]")
        # asyncpg runs multi-statement scripts when no arguments are passed
        await conn.execute(sql_content)
    else:
        logger.warning(f"MIGRATION_EMPTY [version={version}]")

    await conn.execute(
        "INSERT INTO schema_migrations (version) VALUES ($1) ON CONFLICT (version) DO NOTHING",
        version,
    )


async def run_migrations(conn: asyncpg.Connection) -> List[str]:
    """
    Apply every pending migration.

    Returns:
        Versions applied by this call (empty when the schema is current)
    """
    await ensure_migrations_table(conn)
    applied = await get_applied_migrations(conn)

    newly_applied: List[str] = []
    for version, migration_path in get_migration_files():
        if version in applied:
            continue
        try:
            async with conn.transaction():
                await apply_migration(conn, version, migration_path)
        except Exception:
            logger.exception(f"MIGRATION_FAILED [version={version}, file={migration_path.name}]")
            raise
        newly_applied.append(version)

    logger.info(f"MIGRATIONS_DONE [applied={newly_applied}, total_known={len(applied) + len(newly_applied)}]")
    return newly_applied


async def run_migrations_safe(pool: asyncpg.Pool) -> List[str]:
    async with pool.acquire() as conn:
        return await run_migrations(conn)
