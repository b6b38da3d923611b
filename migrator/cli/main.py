"""Main CLI entry point for the migration engine."""

import typer
from dotenv import load_dotenv
from rich.console import Console

from migrator import __version__
from migrator.cli.commands import migrate
from migrator.core.logging import configure_logging

app = typer.Typer(
    name="migrator",
    help="Versioned SQL schema migrations",
    add_completion=False,
)
console = Console()

app.add_typer(migrate.app, name="migrate")


@app.callback()
def callback(
    log_level: str | None = typer.Option(None, "--log-level", help="Override LOG_LEVEL"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit log lines as JSON"),
) -> None:
    """Configure logging before any command runs."""
    configure_logging(level=log_level, log_format="json" if json_logs else None)


@app.command()
def version() -> None:
    """Show the installed version."""
    console.print(f"migrator {__version__}")


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", "-p", help="Bind port"),
) -> None:
    """Serve the migration monitoring API."""
    import uvicorn

    from migrator.api.main import create_app

    uvicorn.run(create_app(), host=host, port=port)


def main() -> None:
    """Main entry point."""
    load_dotenv()
    app()


if __name__ == "__main__":
    main()
