"""
CLI interface for usage keeper.

Provides command-line access to the usage database.
"""

import json
import sys
from pathlib import Path
from typing import Optional, Tuple

import typer
from rich.console import Console
from rich.table import Table

from usage_keeper.config.loader import (
    UsageStatisticsConfig,
    load_usage_config,
    setup_logging,
)
from usage_keeper.core.statistics import RequestStatistics
from usage_keeper.sdk.sqlite_plugin import SQLitePlugin
from usage_keeper.storage.models import StatisticsSnapshot
from usage_keeper.storage.repository import SQLiteStore

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(
        None,
        "--db",
        "-d",
        help="Path to the usage database (overrides the config file)"
    ),
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="YAML config file with a usage_statistics section"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging"
    )
):
    """Usage Keeper CLI."""
    if verbose:
        setup_logging("DEBUG")
    ctx.obj = {"db": db, "config": config}
    if ctx.invoked_subcommand is None:
        console.print("Usage Keeper - Use --help to see available commands")


def _resolve_settings(ctx: typer.Context) -> Tuple[str, float]:
    """Resolve database path and busy timeout from options and config."""
    options = ctx.obj or {}
    settings = UsageStatisticsConfig()
    if options.get("config"):
        settings = load_usage_config(options["config"])
    db_path = options.get("db") or settings.resolved_database_path()
    return db_path, settings.busy_timeout


def _open_store(ctx: typer.Context) -> SQLiteStore:
    db_path, busy_timeout = _resolve_settings(ctx)
    store = SQLiteStore.open(db_path, busy_timeout=busy_timeout)
    try:
        store.ensure_schema()
    except Exception:
        store.close()
        raise
    return store


@app.command()
def init(ctx: typer.Context):
    """Initialize the usage database."""
    try:
        with _open_store(ctx) as store:
            console.print(f"[green]✓[/] Database initialized at {store.path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def stats(ctx: typer.Context):
    """Show persisted usage per API key and model."""
    try:
        statistics = RequestStatistics()
        with _open_store(ctx) as store:
            result = SQLitePlugin(store, statistics).load_and_merge()
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if statistics.total_requests == 0:
        console.print("\n[bold yellow]No usage records found[/]\n")
        sys.exit(EXIT_CODE_PASS)

    _display_statistics(statistics)
    console.print(f"\nLoaded {result.added} record(s)")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def export(
    ctx: typer.Context,
    output: str = typer.Argument(..., help="File to write the JSON snapshot to")
):
    """Export every persisted record as a JSON snapshot."""
    try:
        with _open_store(ctx) as store:
            snapshot = store.load_all()
        with open(output, 'w', encoding='utf-8') as f:
            json.dump(snapshot.to_dict(), f, indent=2)
    except Exception as e:
        console.print(f"[red]Error exporting usage:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Exported {len(snapshot)} record(s) to {output}")
    sys.exit(EXIT_CODE_PASS)


@app.command(name="import")
def import_snapshot(
    ctx: typer.Context,
    input_path: str = typer.Argument(..., metavar="INPUT", help="JSON snapshot to import")
):
    """Import a JSON snapshot, skipping records already stored."""
    try:
        data = json.loads(Path(input_path).read_text(encoding='utf-8'))
        snapshot = StatisticsSnapshot.from_dict(data)
        with _open_store(ctx) as store:
            added, skipped = store.persist_snapshot(snapshot)
    except Exception as e:
        console.print(f"[red]Error importing usage:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Imported {added} record(s), skipped {skipped} duplicate(s)")
    sys.exit(EXIT_CODE_PASS)


def _format_count(value: int) -> str:
    return f"{value:,}"


def _display_statistics(statistics: RequestStatistics):
    """Display usage totals in a table."""
    table = Table(title="Usage Statistics")
    table.add_column("API Key", justify="left", style="cyan")
    table.add_column("Model", justify="left", style="blue")
    table.add_column("Requests", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    table.add_column("Total Tokens", justify="right", style="magenta")

    for api_key, models in sorted(statistics.api_totals().items()):
        for model, totals in sorted(models.items()):
            table.add_row(
                api_key,
                model,
                _format_count(totals.requests),
                _format_count(totals.failures),
                _format_count(totals.input_tokens),
                _format_count(totals.output_tokens),
                _format_count(totals.total_tokens),
            )

    table.add_row(
        "Total",
        "",
        _format_count(statistics.total_requests),
        _format_count(statistics.failure_count),
        "",
        "",
        _format_count(statistics.total_tokens),
    )
    console.print(table)


if __name__ == "__main__":
    app()
