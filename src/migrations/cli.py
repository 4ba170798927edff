#!/usr/bin/env python3
"""
Chat listener database migration CLI.

    python -m src.migrations.cli migrate
    python -m src.migrations.cli status
"""

import asyncio
import re
from datetime import datetime

import typer
from dotenv import load_dotenv
from rich import box
from rich.console import Console
from rich.table import Table

from src.migrations.core import (
    MigrationError,
    connect_with_retries,
    database_name,
    extract_version_from_filename,
    get_applied_migrations,
    get_migration_files,
    get_migrations_dir,
    mark_migration_as_applied,
    migrate_database,
    unmark_migration_as_applied,
    validate_migration_exists,
)
from src.utils.config import get_database_url

load_dotenv()

app = typer.Typer(
    name="migrations",
    help="Database migration management for the chat listener",
    add_completion=False,
)
console = Console()

MIGRATION_TEMPLATE = """-- Migration: {description}
-- Created: {created}

"""


def log_success(message: str) -> None:
    console.print(f"[green]OK[/green] {message}")


def log_error(message: str) -> None:
    console.print(f"[red]ERROR[/red] {message}")


def slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", text.lower())
    return re.sub(r"_+", "_", slug).strip("_")


def _database_url() -> str:
    try:
        return get_database_url()
    except ValueError as e:
        log_error(str(e))
        raise typer.Exit(1)


@app.command()
def create(description: str = typer.Argument(..., help="Brief description of the migration")) -> None:
    """Create a new timestamped migration file."""
    migrations_dir = get_migrations_dir()
    migrations_dir.mkdir(parents=True, exist_ok=True)

    now = datetime.now()
    filepath = migrations_dir / f"{now.strftime('%Y%m%d%H%M%S')}_{slugify(description)}.sql"
    if filepath.exists():
        log_error(f"File already exists: {filepath}")
        raise typer.Exit(1)

    filepath.write_text(MIGRATION_TEMPLATE.format(description=description, created=now.isoformat()))
    log_success(f"Created {filepath}")


@app.command("list")
def list_command() -> None:
    """List available migration files."""
    files = get_migration_files(get_migrations_dir())
    if not files:
        console.print("No migrations found")
    for file in files:
        console.print(f"  {file.name}")


@app.command()
def migrate(
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be done without executing"),
    retries: int = typer.Option(3, "--retries", help="Number of connection attempts"),
    timeout: int = typer.Option(300, "--timeout", help="Statement timeout in seconds"),
) -> None:
    """Apply pending migrations."""
    db_url = _database_url()
    try:
        applied, total = asyncio.run(
            migrate_database(db_url, get_migrations_dir(), timeout, retries, dry_run)
        )
    except MigrationError as e:
        log_error(str(e))
        raise typer.Exit(1)
    prefix = "Would apply" if dry_run else "Applied"
    log_success(f"{prefix} {applied} of {total} migrations to {database_name(db_url)}")


async def _show_status(db_url: str) -> None:
    conn = await connect_with_retries(db_url)
    try:
        applied = await get_applied_migrations(conn)
    finally:
        await conn.close()

    table = Table(title=f"Migrations for {database_name(db_url)}", box=box.SIMPLE)
    table.add_column("Version")
    table.add_column("File")
    table.add_column("Status")
    for file in get_migration_files(get_migrations_dir()):
        version = extract_version_from_filename(file.name)
        status = "[green]applied[/green]" if version in applied else "[yellow]pending[/yellow]"
        table.add_row(version, file.name, status)
    console.print(table)


@app.command()
def status() -> None:
    """Show which migrations are applied."""
    try:
        asyncio.run(_show_status(_database_url()))
    except MigrationError as e:
        log_error(str(e))
        raise typer.Exit(1)


async def _mark(db_url: str, version: str, applied: bool) -> bool:
    conn = await connect_with_retries(db_url)
    try:
        if applied:
            return await mark_migration_as_applied(conn, version)
        return await unmark_migration_as_applied(conn, version)
    finally:
        await conn.close()


@app.command()
def mark(
    version: str = typer.Argument(..., help="Migration version (timestamp prefix)"),
    unapply: bool = typer.Option(False, "--unapply", help="Remove the version from applied"),
    force: bool = typer.Option(False, "--force", help="Skip the migration file existence check"),
) -> None:
    """Mark or unmark a migration as applied without running it."""
    if not force and validate_migration_exists(version, get_migrations_dir()) is None:
        log_error(f"No migration file found for version {version}")
        raise typer.Exit(1)

    try:
        changed = asyncio.run(_mark(_database_url(), version, applied=not unapply))
    except MigrationError as e:
        log_error(str(e))
        raise typer.Exit(1)

    action = "Unmarked" if unapply else "Marked"
    if changed:
        log_success(f"{action} {version}")
    else:
        console.print(f"[yellow]{version} was already in that state[/yellow]")


if __name__ == "__main__":
    app()
