"""Tests for migration discovery, parsing and application."""

from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg
import pytest

from src.migrations.core import (
    MIGRATION_TABLE,
    MigrationError,
    database_name,
    extract_version_from_filename,
    get_migration_files,
    get_migrations_dir,
    mark_migration_as_applied,
    migrate_database,
    parse_sql_statements,
    unmark_migration_as_applied,
    validate_migration_exists,
)


@pytest.fixture
def migrations_dir(tmp_path):
    (tmp_path / "20250102000000_add_index.sql").write_text("CREATE INDEX a ON t (x);")
    (tmp_path / "20250101000000_create.sql").write_text(
        "CREATE TABLE t (x TEXT);\n-- comment; with a semicolon\nINSERT INTO t VALUES ('a;b');"
    )
    (tmp_path / "notes.txt").write_text("ignored")
    return tmp_path


def mock_connection(applied: set[str] | None = None):
    conn = MagicMock()
    conn.execute = AsyncMock(return_value="INSERT 0 1")
    conn.fetchval = AsyncMock(return_value=applied is not None)
    conn.fetch = AsyncMock(return_value=[{"version": v} for v in (applied or set())])
    conn.close = AsyncMock()
    return conn


class TestDiscovery:
    def test_files_sorted_by_version(self, migrations_dir):
        names = [f.name for f in get_migration_files(migrations_dir)]
        assert names == ["20250101000000_create.sql", "20250102000000_add_index.sql"]

    def test_missing_directory(self, tmp_path):
        assert get_migration_files(tmp_path / "nope") == []

    def test_version_from_filename(self):
        assert extract_version_from_filename("20250101000000_create_chat_tables.sql") == "20250101000000"

    def test_validate_migration_exists(self, migrations_dir):
        assert validate_migration_exists("20250102000000", migrations_dir) == "20250102000000_add_index.sql"
        assert validate_migration_exists("19990101000000", migrations_dir) is None

    def test_migrations_dir_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("MIGRATIONS_DIR", str(tmp_path))
        assert get_migrations_dir() == tmp_path

    def test_repository_ships_chat_schema(self, monkeypatch):
        monkeypatch.delenv("MIGRATIONS_DIR", raising=False)
        names = [f.name for f in get_migration_files(get_migrations_dir())]
        assert "20250101000000_create_chat_tables.sql" in names

    def test_database_name(self):
        assert database_name("postgresql://u:p@localhost:5432/chats") == "chats"


class TestParsing:
    def test_semicolons_inside_literals_and_comments(self):
        statements = parse_sql_statements(
            "CREATE TABLE t (x TEXT);\nINSERT INTO t VALUES ('a;b');\n"
        )
        assert len(statements) == 2
        assert statements[1] == "INSERT INTO t VALUES ('a;b');"

    def test_blank_input(self):
        assert parse_sql_statements("  \n ") == []


class TestMigrateDatabase:
    @pytest.mark.asyncio
    async def test_applies_pending_in_order(self, migrations_dir):
        conn = mock_connection(applied={"20250101000000"})
        with patch("src.migrations.core.asyncpg.connect", AsyncMock(return_value=conn)):
            applied, total = await migrate_database("postgresql://localhost/chats", migrations_dir)

        assert (applied, total) == (1, 2)
        executed = [call.args[0] for call in conn.execute.await_args_list]
        assert "CREATE INDEX a ON t (x);" in executed
        assert not any("CREATE TABLE t" in sql for sql in executed)
        conn.execute.assert_any_await(
            f"INSERT INTO public.{MIGRATION_TABLE} (version) VALUES ($1)", "20250102000000"
        )
        conn.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_dry_run_executes_nothing(self, migrations_dir):
        conn = mock_connection()
        with patch("src.migrations.core.asyncpg.connect", AsyncMock(return_value=conn)):
            applied, total = await migrate_database(
                "postgresql://localhost/chats", migrations_dir, dry_run=True
            )

        assert (applied, total) == (2, 2)
        conn.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_statement_raises_migration_error(self, migrations_dir):
        conn = mock_connection(applied=set())

        async def execute(sql, *args):
            if sql.startswith("CREATE INDEX"):
                raise asyncpg.exceptions.UndefinedTableError('relation "t" does not exist')
            return "OK"

        conn.execute = AsyncMock(side_effect=execute)
        with patch("src.migrations.core.asyncpg.connect", AsyncMock(return_value=conn)):
            with pytest.raises(MigrationError, match="20250102000000_add_index.sql"):
                await migrate_database("postgresql://localhost/chats", migrations_dir)
        conn.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_connection_failure(self, migrations_dir):
        with patch(
            "src.migrations.core.asyncpg.connect", AsyncMock(side_effect=OSError("refused"))
        ), patch("src.migrations.core.asyncio.sleep", AsyncMock()):
            with pytest.raises(MigrationError, match="after 2 attempts"):
                await migrate_database("postgresql://localhost/chats", migrations_dir, retries=2)

    @pytest.mark.asyncio
    async def test_no_migrations(self, tmp_path):
        assert await migrate_database("postgresql://localhost/chats", tmp_path) == (0, 0)


class TestMarking:
    @pytest.mark.asyncio
    async def test_mark_reports_whether_row_was_inserted(self):
        conn = mock_connection()
        assert await mark_migration_as_applied(conn, "20250101000000") is True

        conn.execute.return_value = "INSERT 0 0"
        assert await mark_migration_as_applied(conn, "20250101000000") is False

    @pytest.mark.asyncio
    async def test_unmark(self):
        conn = mock_connection()
        conn.execute.return_value = "DELETE 1"
        assert await unmark_migration_as_applied(conn, "20250101000000") is True

        conn.execute.return_value = "DELETE 0"
        assert await unmark_migration_as_applied(conn, "20250101000000") is False
