"""Migration management commands."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import typer
from rich.console import Console
from rich.markup import escape

from migrator.core.config import MigrationConfig, get_settings
from migrator.core.db.session import create_db_engine
from migrator.core.errors import MigrationError, PlanValidationError
from migrator.core.migrations.loader import new_migration_file
from migrator.core.migrations.models import LogLevel, LogQuery, MigrationResult
from migrator.core.migrations.reporter import MigrationReporter
from migrator.core.migrations.system import MigrationSystem, create_migration_system

app = typer.Typer(help="Migration management commands")
console = Console()

T = TypeVar("T")


def _get_system() -> tuple[MigrationSystem, MigrationReporter]:
    """Get an initialized-on-demand migration system and a reporter.

    Returns:
        Tuple of (system, reporter)
    """
    settings = get_settings()
    config = MigrationConfig.from_settings(settings)
    system = create_migration_system(create_db_engine(settings=settings), config)
    return system, MigrationReporter(console)


def _run(operation: Callable[[], Awaitable[T]]) -> T:
    """Run an async operation, turning engine errors into exit code 1."""
    try:
        return asyncio.run(operation())
    except PlanValidationError as e:
        console.print(f"[red]✗ {escape(e.message)}[/red]")
        for error in e.errors:
            console.print(f"  • [{error.code}] {error}", markup=False)
        raise typer.Exit(1)
    except MigrationError as e:
        console.print(f"[red]✗ {e.code}: {escape(e.message)}[/red]")
        raise typer.Exit(1)


def _finish(results: list[MigrationResult], reporter: MigrationReporter) -> None:
    console.print(reporter.format_results(results), markup=False)
    if any(not r.success for r in results):
        raise typer.Exit(1)


@app.command()
def apply(
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would run without executing"),
    force: bool = typer.Option(False, "--force", help="Downgrade checksum drift to warnings"),
    target: str | None = typer.Option(None, "--target", "-t", help="Stop after this version"),
    keep_going: bool = typer.Option(False, "--keep-going", help="Continue after a failed migration"),
) -> None:
    """Apply pending migrations."""
    system, reporter = _get_system()
    results = _run(
        lambda: system.run_migrations(
            dry_run=dry_run,
            force=force,
            target_version=target,
            stop_on_first_error=not keep_going,
        )
    )
    if not results:
        console.print("[green]✓ No pending migrations[/green]")
        return
    _finish(results, reporter)


@app.command()
def rollback(
    to: str | None = typer.Option(None, "--to", help="Roll back every version above this one"),
    steps: int | None = typer.Option(None, "--steps", "-s", help="Number of migrations to rollback"),
    force: bool = typer.Option(False, "--force", help="Skip migrations without a down script"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would run without executing"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
) -> None:
    """Rollback migrations.

    Without --to or --steps only the latest applied migration is reverted.
    Use with caution as this may cause data loss.
    """
    if to is not None and steps is not None:
        console.print("[red]Error: use either --to or --steps, not both[/red]")
        raise typer.Exit(1)

    system, reporter = _get_system()
    plan = _run(lambda: system.get_rollback_plan(to=to, steps=steps, force=force, dry_run=True))

    if not plan.is_valid:
        console.print(reporter.format_plan(plan), markup=False)
        raise typer.Exit(1)
    if not plan.migrations:
        console.print("[yellow]No migrations to rollback[/yellow]")
        raise typer.Exit(0)

    console.print("\n[bold yellow]⚠ WARNING: This will rollback the following migrations:[/bold yellow]")
    for i, migration in enumerate(plan.migrations, 1):
        suffix = "" if migration.has_down else " [yellow](no down script)[/yellow]"
        console.print(f"  {i}. {migration.version} - {migration.name}{suffix}")

    if not yes and not dry_run:
        console.print("\n[red]This action may cause data loss![/red]")
        confirm = typer.confirm("Are you sure you want to rollback these migrations?", default=False)
        if not confirm:
            console.print("[yellow]Rollback cancelled[/yellow]")
            raise typer.Exit(0)

    console.print(f"\n[bold cyan]Rolling back {len(plan.migrations)} migration(s)...[/bold cyan]")
    results = _run(lambda: system.rollback_migrations(to=to, steps=steps, force=force, dry_run=dry_run))
    _finish(results, reporter)


@app.command()
def status() -> None:
    """Show migration status."""
    system, reporter = _get_system()

    async def _status():
        await system.initialize()
        return await system.storage.get_records()

    records = _run(_status)
    reporter.print_status_report(system.service.get_migrations(), records)


@app.command()
def validate(
    force: bool = typer.Option(False, "--force", help="Downgrade checksum drift to warnings"),
    offline: bool = typer.Option(False, "--offline", help="Skip checks against applied records"),
) -> None:
    """Validate migration files and applied checksums."""
    system, reporter = _get_system()
    plan = _run(lambda: system.validate_migrations(force=force, check_applied=not offline))
    console.print(reporter.format_plan(plan), markup=False)
    if not plan.is_valid:
        raise typer.Exit(1)
    console.print("[green]✓ Validation passed[/green]")


@app.command()
def plan(
    target: str | None = typer.Option(None, "--target", "-t", help="Stop after this version"),
    force: bool = typer.Option(False, "--force", help="Downgrade checksum drift to warnings"),
) -> None:
    """Show the pending migration plan without executing it."""
    system, reporter = _get_system()
    migration_plan = _run(lambda: system.get_migration_plan(dry_run=True, force=force, target_version=target))
    console.print(reporter.format_plan(migration_plan), markup=False)
    if not migration_plan.is_valid:
        raise typer.Exit(1)


@app.command()
def health() -> None:
    """Run a migration health check."""
    system, reporter = _get_system()

    async def _health():
        await system.initialize()
        return await system.health_check()

    result = _run(_health)
    console.print(reporter.format_health(result), markup=False)
    if not result.is_healthy:
        raise typer.Exit(1)


@app.command()
def stats() -> None:
    """Show migration statistics for the monitoring window."""
    system, reporter = _get_system()

    async def _stats():
        await system.initialize()
        return await system.get_stats()

    console.print(reporter.format_stats(_run(_stats)), markup=False)


@app.command()
def logs(
    migration: str | None = typer.Option(None, "--migration", "-m", help="Filter by version"),
    level: str | None = typer.Option(None, "--level", help="Filter by level (debug, info, warn, error)"),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum entries"),
) -> None:
    """Show persisted migration log entries, newest first."""
    try:
        query = LogQuery(migration_id=migration, level=LogLevel(level.lower()) if level else None, limit=limit)
    except ValueError as e:
        console.print(f"[red]✗ Invalid filter: {escape(str(e))}[/red]")
        raise typer.Exit(1)

    system, reporter = _get_system()

    async def _logs():
        await system.initialize()
        return system.get_logs(query)

    entries = _run(_logs)
    console.print(reporter.format_logs(entries), markup=False)


@app.command()
def history(limit: int = typer.Option(50, "--limit", "-n", help="Maximum entries")) -> None:
    """Show migration history."""
    system, reporter = _get_system()
    records = _run(lambda: system.get_history(limit))
    console.print(reporter.format_history(records), markup=False)


@app.command()
def make(
    name: str = typer.Argument(..., help="Migration name"),
    description: str | None = typer.Option(None, "--description", "-d", help="Description header"),
) -> None:
    """Create new migration file with the next free version."""
    settings = get_settings()
    try:
        file_path = new_migration_file(settings.MIGRATIONS_PATH, name, description)
    except (ValueError, OSError) as e:
        console.print(f"[red]✗ Error creating migration: {e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓ Migration created: {file_path}[/green]")
