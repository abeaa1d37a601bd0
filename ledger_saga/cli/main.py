"""
CLI interface for ledger-saga.

Operator access to health, consistency checks, repair and maintenance.
"""

import sys
from datetime import timedelta
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from ledger_saga.bootstrap import build_monitor, build_orchestrator
from ledger_saga.config.loader import Settings, describe, load_settings
from ledger_saga.core.orchestrator import ConsistencyOrchestrator
from ledger_saga.logging_utils import configure_logging
from ledger_saga.storage.models import HealthState, OperationPhase

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

_STATE_STYLE = {
    HealthState.HEALTHY: "green",
    HealthState.DEGRADED: "yellow",
    HealthState.UNHEALTHY: "red",
}


def get_settings(config_path: Optional[str]) -> Settings:
    """Load settings, exiting with a readable message on bad config."""
    try:
        settings = load_settings(config_path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    configure_logging(settings.logging)
    return settings


def get_orchestrator(ctx: typer.Context) -> ConsistencyOrchestrator:
    return build_orchestrator(get_settings(ctx.obj))


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to a YAML settings file"
    ),
):
    """ledger-saga CLI."""
    ctx.obj = config
    if ctx.invoked_subcommand is None:
        console.print("ledger-saga - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Create the ledger, cache and operation databases."""
    try:
        get_orchestrator(ctx)
        console.print("[green]✓[/] Stores initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing stores:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("config")
def show_config(ctx: typer.Context):
    """Show the effective configuration."""
    settings = get_settings(ctx.obj)
    table = Table(title="Configuration")
    table.add_column("Setting")
    table.add_column("Value")
    for key, value in describe(settings).items():
        table.add_row(key, str(value))
    console.print(table)


@app.command()
def health(ctx: typer.Context):
    """Check every store and print the aggregated health."""
    settings = get_settings(ctx.obj)
    monitor = build_monitor(settings)
    snapshot = monitor.system_health()

    table = Table(title="Store Health")
    table.add_column("Store")
    table.add_column("Status")
    table.add_column("Response (ms)", justify="right")
    table.add_column("Detail")
    for name, status in snapshot.stores.items():
        style = _STATE_STYLE[status.status]
        table.add_row(
            name,
            f"[{style}]{status.status.value}[/]",
            f"{status.response_time_ms:.1f}",
            str(status.detail or ""),
        )
    console.print(table)

    style = _STATE_STYLE[snapshot.overall]
    console.print(f"\n[bold]Overall:[/bold] [{style}]{snapshot.overall.value}[/]")
    sys.exit(EXIT_CODE_FAIL if snapshot.overall is HealthState.UNHEALTHY else EXIT_CODE_PASS)


@app.command()
def check(ctx: typer.Context, record_id: str = typer.Argument(..., help="Record id to check")):
    """Compare one record across ledger, cache and media (read-only)."""
    report = get_orchestrator(ctx).check_consistency(record_id)

    console.print(f"\n[bold]Consistency report for {record_id}[/bold]")
    console.print("-" * 40)
    console.print(f"Ledger: {_yes_no(report.present_in_ledger)}")
    console.print(f"Cache:  {_yes_no(report.present_in_cache)}")
    console.print(f"Media:  {_yes_no(report.present_in_media)}")

    if report.is_consistent:
        console.print("\n[green]✓[/] Consistent")
        sys.exit(EXIT_CODE_PASS)
    for item in report.discrepancies:
        console.print(f"[red]-[/] {item}")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def repair(ctx: typer.Context, record_id: str = typer.Argument(..., help="Record id to repair")):
    """Repair one record from the ledger."""
    result = get_orchestrator(ctx).repair_consistency(record_id)

    for action in result.actions:
        console.print(f"[green]✓[/] {action}")
    for error in result.errors:
        console.print(f"[red]✗[/] {error}")
    for item in result.manual:
        console.print(f"[yellow]![/] Manual: {item}")
    sys.exit(EXIT_CODE_PASS if result.success else EXIT_CODE_FAIL)


@app.command()
def cleanup(ctx: typer.Context):
    """Remove cache records that never received a ledger reference."""
    summary = get_orchestrator(ctx).cleanup_orphans()
    console.print(f"Processed {summary.processed} orphan(s), removed {summary.removed}")
    for error in summary.errors:
        console.print(f"[red]✗[/] {error}")
    sys.exit(EXIT_CODE_FAIL if summary.errors else EXIT_CODE_PASS)


@app.command()
def sync(ctx: typer.Context):
    """Check and repair every known record."""
    settings = get_settings(ctx.obj)
    summary = build_monitor(settings).run_sweep()
    console.print(f"Synced {summary.synced}/{summary.total} record(s), {summary.failed} failed")
    for error in summary.errors:
        console.print(f"[red]✗[/] {error}")
    sys.exit(EXIT_CODE_FAIL if summary.failed else EXIT_CODE_PASS)


@app.command("resume-rollbacks")
def resume_rollbacks(ctx: typer.Context):
    """Finish rollbacks left incomplete by a crash or failing compensation."""
    summary = get_orchestrator(ctx).resume_rollbacks()
    console.print(f"Resumed {summary.processed} rollback(s), completed {summary.removed}")
    for error in summary.errors:
        console.print(f"[red]✗[/] {error}")
    sys.exit(EXIT_CODE_FAIL if summary.errors else EXIT_CODE_PASS)


@app.command("purge-operations")
def purge_operations(
    ctx: typer.Context,
    older_than_days: float = typer.Option(
        30,
        "--older-than-days",
        "-d",
        min=0,
        help="Only purge operations untouched for this many days"
    ),
):
    """Delete finished operation records. Unfinished rollbacks are kept."""
    removed = get_orchestrator(ctx).operations.purge_terminal(timedelta(days=older_than_days))
    console.print(f"Purged {removed} finished operation(s)")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def operations(
    ctx: typer.Context,
    phase: Optional[str] = typer.Option(
        None,
        "--phase",
        "-p",
        help="Only show operations in this phase"
    ),
    limit: int = typer.Option(
        20,
        "--limit",
        "-n",
        help="Maximum number of operations to show"
    ),
):
    """List recent creation attempts."""
    selected = None
    if phase is not None:
        try:
            selected = OperationPhase(phase)
        except ValueError:
            valid = ", ".join(p.value for p in OperationPhase)
            console.print(f"[red]Unknown phase:[/] {phase} (expected one of {valid})")
            sys.exit(EXIT_CODE_FAIL)

    states = get_orchestrator(ctx).operations.list_operations(selected, limit=limit)
    if not states:
        console.print("[dim]No operations recorded.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Operations")
    table.add_column("Operation")
    table.add_column("Record")
    table.add_column("Phase")
    table.add_column("Updated")
    table.add_column("Error")
    for state in states:
        table.add_row(
            state.operation_id,
            state.record_id,
            state.phase.value,
            state.updated_at.isoformat(timespec="seconds") if state.updated_at else "",
            state.error or "",
        )
    console.print(table)


def _yes_no(value: bool) -> str:
    return "[green]present[/]" if value else "[red]missing[/]"


if __name__ == "__main__":
    app()
