"""Migration reporter for generating formatted reports."""

from datetime import datetime

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from tabulate import tabulate

from migrator.core.migrations.models import (
    LogLevel,
    Migration,
    MigrationHealthCheck,
    MigrationLogEntry,
    MigrationPlan,
    MigrationRecord,
    MigrationResult,
    MigrationStats,
    MigrationStatus,
)
from migrator.core.migrations.utils import version_key

console = Console()

_STATUS_ICONS = {
    MigrationStatus.COMPLETED: "✓",
    MigrationStatus.FAILED: "✗",
    MigrationStatus.RUNNING: "…",
    MigrationStatus.ROLLED_BACK: "↺",
    MigrationStatus.PENDING: "⏳",
}

_STATUS_STYLES = {
    MigrationStatus.COMPLETED: "green",
    MigrationStatus.FAILED: "red",
    MigrationStatus.RUNNING: "cyan",
    MigrationStatus.ROLLED_BACK: "magenta",
    MigrationStatus.PENDING: "yellow",
}


def format_timestamp(value: int | None) -> str:
    """Render epoch milliseconds as local ``YYYY-mm-dd HH:MM:SS``."""
    if not value:
        return "-"
    return datetime.fromtimestamp(value / 1000).strftime("%Y-%m-%d %H:%M:%S")


def _truncate(text: str | None, width: int) -> str:
    text = text or ""
    return text if len(text) <= width else text[: width - 3] + "..."


class MigrationReporter:
    """Reporter for generating formatted migration reports."""

    def __init__(self, output: Console | None = None):
        """Initialize migration reporter."""
        self.console = output or console

    def _status_rows(
        self, migrations: list[Migration], records: list[MigrationRecord]
    ) -> list[tuple[str, str, MigrationStatus, MigrationRecord | None, str | None]]:
        by_version = {r.version: r for r in records}
        known = {m.version: m for m in migrations}
        rows = []
        for version in sorted(set(by_version) | set(known), key=version_key):
            record = by_version.get(version)
            migration = known.get(version)
            status = record.status if record else MigrationStatus.PENDING
            name = migration.name if migration else record.name
            note = None
            if migration is None:
                note = "definition missing"
            elif record is not None and record.status == MigrationStatus.COMPLETED and record.checksum != migration.checksum:
                note = "checksum drift"
            rows.append((version, name, status, record, note))
        return rows

    def print_status_report(self, migrations: list[Migration], records: list[MigrationRecord]) -> str:
        """Print applied/pending status with Rich and return a text version.

        Args:
            migrations: Known definitions
            records: Version table rows

        Returns:
            Plain text status report
        """
        rows = self._status_rows(migrations, records)

        self.console.print(Panel.fit("[bold cyan]Migration Status Report[/bold cyan]", border_style="cyan"))
        table = Table(show_header=True, header_style="bold")
        table.add_column("Version", style="cyan")
        table.add_column("Name", style="white")
        table.add_column("Status")
        table.add_column("Applied At", style="dim")
        table.add_column("Time (ms)", justify="right")
        table.add_column("Notes", style="yellow")
        for version, name, status, record, note in rows:
            style = _STATUS_STYLES[status]
            table.add_row(
                version,
                _truncate(name, 40),
                f"[{style}]{_STATUS_ICONS[status]} {status.value}[/{style}]",
                format_timestamp(record.applied_at) if record else "-",
                str(record.execution_time_ms) if record and record.execution_time_ms is not None else "-",
                note or "",
            )
        self.console.print(table)

        pending = sum(1 for row in rows if row[2] in (MigrationStatus.PENDING, MigrationStatus.FAILED, MigrationStatus.ROLLED_BACK))
        if pending:
            self.console.print(f"\n[yellow]⏳ {pending} migration(s) pending[/yellow]")
        else:
            self.console.print("\n[green]✓ No pending migrations[/green]")

        lines = ["=" * 60, "Migration Status Report", "=" * 60]
        for version, name, status, _, note in rows:
            suffix = f" ({note})" if note else ""
            lines.append(f"  {_STATUS_ICONS[status]} {version} - {name} [{status.value}]{suffix}")
        return "\n".join(lines)

    def format_history(self, records: list[MigrationRecord]) -> str:
        """Format version table rows as a grid."""
        if not records:
            return "No migration history"
        table_data = [
            [
                _STATUS_ICONS[r.status],
                r.version,
                _truncate(r.name, 30),
                r.status.value,
                format_timestamp(r.applied_at),
                r.execution_time_ms if r.execution_time_ms is not None else "-",
                _truncate(r.error, 40),
            ]
            for r in records
        ]
        return tabulate(
            table_data,
            headers=["", "Version", "Name", "Status", "Applied At", "Time (ms)", "Error"],
            tablefmt="grid",
        )

    def format_plan(self, plan: MigrationPlan) -> str:
        """Format a plan, its warnings and its errors."""
        lines = ["=" * 60]
        verb = "Apply" if plan.direction == "up" else "Rollback"
        status = "✓ Valid" if plan.is_valid else "✗ Invalid"
        lines.append(f"{verb} Plan: {status}")
        lines.append("=" * 60)
        lines.append(plan.summary())
        return "\n".join(lines)

    def format_results(self, results: list[MigrationResult]) -> str:
        """Format the per-migration results of a run or rollback.

        Args:
            results: Results in execution order

        Returns:
            Formatted result string
        """
        lines = ["=" * 60]
        failed = [r for r in results if not r.success]
        if not results:
            lines.append("✓ Nothing to do")
        elif failed:
            lines.append(f"✗ Migration Operation Failed ({len(failed)} of {len(results)})")
        else:
            lines.append("✓ Migration Operation Successful")
        lines.append("=" * 60)

        for r in results:
            if r.skipped:
                icon, note = "⚠", "skipped"
            elif r.success:
                icon, note = "✓", "estimated" if r.estimated else f"{r.attempts} attempt(s)"
            else:
                icon, note = "✗", r.error_code or "error"
            direction = "up" if r.direction == "up" else "down"
            lines.append(f"  {icon} {r.version} {r.name or ''} [{direction}] {r.execution_time_ms}ms ({note})")
            if r.error:
                lines.append(f"      {r.error}")
        return "\n".join(lines)

    def format_health(self, health: MigrationHealthCheck) -> str:
        lines = ["=" * 60, "Migration Health Check", "=" * 60]
        lines.append(f"\nStatus: {'✓ Healthy' if health.is_healthy else '✗ Unhealthy'}")
        lines.append(f"Last Migration: {format_timestamp(health.last_migration_time)}")
        lines.append(f"Pending: {health.pending_migrations}")
        lines.append(f"Failed (window): {health.failed_migrations}")
        lines.append(f"Total: {health.total_migrations}")
        if health.issues:
            lines.append(f"\nIssues Found ({len(health.issues)}):")
            for issue, recommendation in zip(health.issues, health.recommendations):
                lines.append(f"  • {issue}")
                lines.append(f"    → {recommendation}")
        else:
            lines.append("\n✓ No issues found")
        return "\n".join(lines)

    def format_stats(self, stats: MigrationStats) -> str:
        rows = [
            ["Window", f"{stats.window_days} days"],
            ["Total events", stats.total],
            ["Applied", stats.applied],
            ["Failed", stats.failed],
            ["Rolled back", stats.rolled_back],
            ["Pending", stats.pending],
            ["Average time", f"{stats.average_execution_time_ms:.0f}ms"],
            ["Last migration", format_timestamp(stats.last_migration_time)],
            ["Oldest pending", format_timestamp(stats.oldest_pending_time)],
        ]
        return tabulate(rows, headers=["Metric", "Value"], tablefmt="grid")

    def format_logs(self, entries: list[MigrationLogEntry]) -> str:
        if not entries:
            return "No log entries"
        icons = {LogLevel.DEBUG: " ", LogLevel.INFO: "•", LogLevel.WARN: "⚠", LogLevel.ERROR: "✗"}
        table_data = [
            [
                icons[e.level],
                format_timestamp(e.timestamp),
                e.migration_id,
                e.action.value,
                e.level.value,
                _truncate(e.message, 60),
            ]
            for e in entries
        ]
        return tabulate(
            table_data,
            headers=["", "Time", "Migration", "Action", "Level", "Message"],
            tablefmt="grid",
        )
