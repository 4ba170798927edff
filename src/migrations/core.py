"""Schema migration helpers for the chat database."""

import asyncio
import os
from pathlib import Path
from urllib.parse import urlparse

import asyncpg
import sqlparse

from src.utils.logging import get_logger

logger = get_logger(__name__)

MIGRATION_TABLE = "schema_migrations"


class MigrationError(Exception):
    """Raised for migration setup or execution problems."""


def get_migrations_dir() -> Path:
    default_path = Path(__file__).parent.parent.parent / "migrations"
    return Path(os.getenv("MIGRATIONS_DIR", str(default_path)))


def get_migration_files(directory: Path) -> list[Path]:
    """SQL files in ``directory`` ordered by their timestamp prefix."""
    if not directory.exists():
        return []
    return sorted(directory.glob("*.sql"))


def extract_version_from_filename(filename: str) -> str:
    return filename.split("_")[0]


def parse_sql_statements(sql_content: str) -> list[str]:
    return [stmt.strip() for stmt in sqlparse.split(sql_content) if stmt.strip()]


def database_name(db_url: str) -> str:
    return urlparse(db_url).path.lstrip("/")


async def ensure_migrations_table(conn: asyncpg.Connection) -> None:
    await conn.execute(f"""
        CREATE TABLE IF NOT EXISTS public.{MIGRATION_TABLE} (
            version VARCHAR(255) PRIMARY KEY,
            applied_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
        );
    """)


async def get_applied_migrations(conn: asyncpg.Connection) -> set[str]:
    exists = await conn.fetchval(
        """
        SELECT EXISTS (
            SELECT FROM information_schema.tables
            WHERE table_name = $1
        )
        """,
        MIGRATION_TABLE,
    )
    if not exists:
        return set()

    rows = await conn.fetch(f"SELECT version FROM public.{MIGRATION_TABLE}")
    return {row["version"] for row in rows}


async def apply_migration_file(
    conn: asyncpg.Connection, migration_file: Path, timeout: int = 300
) -> None:
    """Apply one file and record its version in the same transaction."""
    version = extract_version_from_filename(migration_file.name)
    statements = parse_sql_statements(migration_file.read_text())

    async with conn.transaction():
        await conn.execute(f"SET LOCAL statement_timeout = '{timeout}s'")
        for statement in statements:
            await conn.execute(statement)
        await conn.execute(f"INSERT INTO public.{MIGRATION_TABLE} (version) VALUES ($1)", version)

    logger.info("Applied migration", file=migration_file.name)


async def connect_with_retries(db_url: str, retries: int = 3) -> asyncpg.Connection:
    for attempt in range(retries):
        try:
            return await asyncpg.connect(db_url)
        except (OSError, asyncpg.exceptions.PostgresError) as e:
            if attempt == retries - 1:
                raise MigrationError(
                    f"Failed to connect to {database_name(db_url)} after {retries} attempts: {e}"
                ) from e
            await asyncio.sleep(2**attempt)
    raise MigrationError("retries must be at least 1")


async def migrate_database(
    db_url: str,
    migrations_dir: Path,
    timeout: int = 300,
    retries: int = 3,
    dry_run: bool = False,
) -> tuple[int, int]:
    """Apply every pending migration in order.

    Returns:
        (applied_count, total_count)

    Raises:
        MigrationError: connection failure or a migration that failed to apply
    """
    migration_files = get_migration_files(migrations_dir)
    if not migration_files:
        logger.info("No migrations found", directory=str(migrations_dir))
        return 0, 0

    conn = await connect_with_retries(db_url, retries)
    try:
        if not dry_run:
            await ensure_migrations_table(conn)
        applied = await get_applied_migrations(conn)

        applied_count = 0
        for migration_file in migration_files:
            version = extract_version_from_filename(migration_file.name)
            if version in applied:
                logger.debug("Skipping applied migration", file=migration_file.name)
                continue
            if dry_run:
                logger.info("DRY RUN: would apply migration", file=migration_file.name)
                applied_count += 1
                continue
            try:
                await apply_migration_file(conn, migration_file, timeout)
            except asyncpg.exceptions.PostgresError as e:
                raise MigrationError(f"Failed to apply {migration_file.name}: {e}") from e
            applied_count += 1

        return applied_count, len(migration_files)
    finally:
        await conn.close()


async def mark_migration_as_applied(conn: asyncpg.Connection, version: str) -> bool:
    """Record ``version`` as applied without running it. False if it already was."""
    await ensure_migrations_table(conn)
    result = await conn.execute(
        f"INSERT INTO public.{MIGRATION_TABLE} (version) VALUES ($1) ON CONFLICT DO NOTHING",
        version,
    )
    return result != "INSERT 0 0"


async def unmark_migration_as_applied(conn: asyncpg.Connection, version: str) -> bool:
    await ensure_migrations_table(conn)
    result = await conn.execute(f"DELETE FROM public.{MIGRATION_TABLE} WHERE version = $1", version)
    return result != "DELETE 0"


def validate_migration_exists(version: str, migrations_dir: Path) -> str | None:
    """Filename of the migration with ``version``, or None."""
    for migration_file in get_migration_files(migrations_dir):
        if extract_version_from_filename(migration_file.name) == version:
            return migration_file.name
    return None
