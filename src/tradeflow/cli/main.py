"""
CLI for the tradeflow analysis pipeline.

Commands:
    tradeflow analyze TICKER - Run a full multi-agent analysis
    tradeflow status RUN_ID - Show a run's phase and step statuses
    tradeflow messages RUN_ID - Show a run's message log
    tradeflow cancel RUN_ID - Cancel a run
    tradeflow retry RUN_ID - Reactivate a failed run
    tradeflow sweep - Flag or fail runs that stopped making progress
    tradeflow config - Show current configuration
    tradeflow version - Print version
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from tradeflow import __version__
from tradeflow.config import Settings, clear_settings_cache, get_settings
from tradeflow.coordinator.pipeline import AnalysisPipeline, PipelineResult
from tradeflow.exceptions import TradeflowError
from tradeflow.llm import DryRunClient
from tradeflow.logging import setup_logging
from tradeflow.types import RunStatus, StepStatus, WorkflowRun

app = typer.Typer(
    name="tradeflow",
    help="Tradeflow - multi-agent stock analysis orchestration",
    no_args_is_help=True,
)

console = Console()
error_console = Console(stderr=True)

STATUS_STYLES = {
    RunStatus.PENDING: "dim",
    RunStatus.RUNNING: "cyan",
    RunStatus.COMPLETED: "green",
    RunStatus.ERROR: "red",
    RunStatus.CANCELLED: "yellow",
    StepStatus.PENDING: "dim",
    StepStatus.RUNNING: "cyan",
    StepStatus.COMPLETED: "green",
    StepStatus.ERROR: "red",
}


def _get_settings_safe(db: Path | None = None) -> Settings | None:
    """Get settings, returning None if configuration is invalid."""
    try:
        clear_settings_cache()
        settings = get_settings()
    except Exception:
        return None
    if db is not None:
        settings = settings.model_copy(update={"DATABASE_PATH": db})
    return settings


def _load_settings(db: Path | None = None) -> Settings:
    settings = _get_settings_safe(db)
    if settings is None:
        error_console.print(
            "[red]Error:[/red] Configuration is invalid. "
            "Run 'tradeflow config' to see what's wrong."
        )
        raise typer.Exit(1)
    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
    return settings


def _offline_pipeline(settings: Settings) -> AnalysisPipeline:
    """Pipeline for commands that never invoke agents."""
    return AnalysisPipeline(settings, llm=DryRunClient())


def _run(coro: Any) -> Any:
    try:
        return asyncio.run(coro)
    except TradeflowError as e:
        error_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


def _styled(status: RunStatus | StepStatus) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status.value}[/{style}]"


def _print_run(run: WorkflowRun) -> None:
    lines = [
        f"[bold]Run ID:[/bold] {run.run_id}",
        f"[bold]Ticker:[/bold] {run.ticker}",
        f"[bold]Status:[/bold] {_styled(run.status)}",
        f"[bold]Phase:[/bold] {run.current_phase or '-'}",
    ]
    if run.decision:
        confidence = f" ({run.confidence:g})" if run.confidence is not None else ""
        lines.append(f"[bold]Decision:[/bold] {run.decision}{confidence}")
    if run.error:
        lines.append(f"[bold]Error:[/bold] {run.error} [dim]({run.error_type.value if run.error_type else 'other'})[/dim]")
    if run.cancel_reason:
        lines.append(f"[bold]Cancelled:[/bold] {run.cancel_reason}")
    if run.watchdog_alerts:
        lines.append(f"[bold]Watchdog alerts:[/bold] {len(run.watchdog_alerts)}")
    console.print(Panel("\n".join(lines), title="[bold cyan]Analysis Run[/bold cyan]", border_style="cyan"))

    table = Table(title="Workflow Steps", show_header=True)
    table.add_column("Phase", style="cyan")
    table.add_column("Agent")
    table.add_column("Status")
    table.add_column("Attempt", justify="right")
    table.add_column("Error", style="red")
    for state in run.workflow_steps:
        for step in state.agents:
            table.add_row(
                state.phase,
                step.name,
                _styled(step.status),
                str(step.attempt),
                (step.error or "")[:60],
            )
    console.print(table)

    if run.debate_rounds:
        console.print(
            f"[dim]Debate rounds: {len(run.debate_rounds)} "
            f"({sum(1 for r in run.debate_rounds if r.is_complete)} complete)[/dim]"
        )


def _print_result(result: PipelineResult) -> None:
    console.print()
    _print_run(result.run)
    if result.timed_out:
        console.print("\n[yellow]Stopped waiting; the run is still active.[/yellow]")


@app.command()
def analyze(
    ticker: Annotated[str, typer.Argument(help="Stock ticker symbol (e.g., AAPL)")],
    user: Annotated[str, typer.Option("--user", "-u", help="Run owner")] = "cli",
    rounds: Annotated[
        Optional[int],
        typer.Option("--rounds", "-r", help="Bull/bear debate rounds"),
    ] = None,
    timeout_ms: Annotated[
        Optional[int],
        typer.Option("--timeout-ms", help="Per-attempt agent timeout"),
    ] = None,
    max_retries: Annotated[
        Optional[int],
        typer.Option("--max-retries", help="Self-retries per agent"),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", "-n", help="Use canned responses instead of calling the API"),
    ] = False,
    db: Annotated[
        Optional[Path],
        typer.Option("--db", help="SQLite database path"),
    ] = None,
    wait_timeout: Annotated[
        Optional[float],
        typer.Option("--wait", help="Seconds to wait for the run before returning"),
    ] = None,
) -> None:
    """Run the multi-agent analysis on a stock ticker."""
    settings = _load_settings(db)
    if dry_run:
        settings = settings.model_copy(update={"DRY_RUN": True})

    bag: dict[str, Any] = {}
    if rounds is not None:
        bag["debate_rounds"] = rounds
    if timeout_ms is not None:
        bag["timeout_ms"] = timeout_ms
    if max_retries is not None:
        bag["max_retries"] = max_retries

    ticker = ticker.upper().strip()
    console.print()
    console.print(
        Panel(
            f"[bold]Ticker:[/bold] {ticker}\n"
            f"[bold]User:[/bold] {user}\n"
            f"[bold]Debate rounds:[/bold] {rounds or settings.DEFAULT_DEBATE_ROUNDS}\n"
            f"[bold]Database:[/bold] {settings.DATABASE_PATH}\n"
            f"[bold]Dry Run:[/bold] {settings.DRY_RUN}",
            title="[bold cyan]Tradeflow Analysis[/bold cyan]",
            border_style="cyan",
        )
    )

    async def _analyze() -> PipelineResult:
        async with AnalysisPipeline(settings) as pipeline:
            return await pipeline.run(ticker, user, bag, timeout_s=wait_timeout)

    result = _run(_analyze())
    _print_result(result)
    if result.status == RunStatus.ERROR:
        raise typer.Exit(1)


@app.command()
def status(
    run_id: Annotated[str, typer.Argument(help="Run ID")],
    db: Annotated[Optional[Path], typer.Option("--db", help="SQLite database path")] = None,
) -> None:
    """Show a run's phase, step statuses and decision."""
    settings = _load_settings(db)

    async def _status() -> WorkflowRun:
        async with _offline_pipeline(settings) as pipeline:
            return await pipeline.status(run_id)

    console.print()
    _print_run(_run(_status()))


@app.command()
def messages(
    run_id: Annotated[str, typer.Argument(help="Run ID")],
    db: Annotated[Optional[Path], typer.Option("--db", help="SQLite database path")] = None,
) -> None:
    """Show a run's message log."""
    settings = _load_settings(db)

    async def _messages() -> list[Any]:
        async with _offline_pipeline(settings) as pipeline:
            return await pipeline.messages(run_id)

    table = Table(title=f"Messages for {run_id}", show_header=True)
    table.add_column("Time", style="dim")
    table.add_column("Agent", style="cyan")
    table.add_column("Type")
    table.add_column("Text")
    for message in _run(_messages()):
        table.add_row(
            message.timestamp.strftime("%H:%M:%S"),
            message.agent,
            message.type.value,
            message.text[:120],
        )
    console.print(table)


@app.command()
def cancel(
    run_id: Annotated[str, typer.Argument(help="Run ID")],
    reason: Annotated[str, typer.Option("--reason", help="Cancellation reason")] = "cancelled by user",
    db: Annotated[Optional[Path], typer.Option("--db", help="SQLite database path")] = None,
) -> None:
    """Cancel a run. Agents in flight stop at their next check."""
    settings = _load_settings(db)

    async def _cancel() -> bool:
        async with _offline_pipeline(settings) as pipeline:
            return await pipeline.cancel(run_id, reason)

    if _run(_cancel()):
        console.print(f"[yellow]Run {run_id} cancelled.[/yellow]")
    else:
        error_console.print(f"[red]Run {run_id} already completed and cannot be cancelled.[/red]")
        raise typer.Exit(1)


@app.command()
def retry(
    run_id: Annotated[str, typer.Argument(help="Run ID")],
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", "-n", help="Use canned responses instead of calling the API"),
    ] = False,
    db: Annotated[Optional[Path], typer.Option("--db", help="SQLite database path")] = None,
    wait_timeout: Annotated[
        Optional[float],
        typer.Option("--wait", help="Seconds to wait for the run before returning"),
    ] = None,
) -> None:
    """Reactivate a failed run from its current phase."""
    settings = _load_settings(db)
    if dry_run:
        settings = settings.model_copy(update={"DRY_RUN": True})

    async def _retry() -> PipelineResult | None:
        async with AnalysisPipeline(settings) as pipeline:
            if not await pipeline.retry(run_id):
                return None
            return await pipeline.wait(run_id, wait_timeout)

    result = _run(_retry())
    if result is None:
        error_console.print(f"[red]Run {run_id} is not in an error state.[/red]")
        raise typer.Exit(1)
    _print_result(result)


@app.command()
def sweep(
    max_age: Annotated[
        float,
        typer.Option("--max-age", help="Seconds without progress before a run counts as stale"),
    ] = 3600.0,
    mark_error: Annotated[
        bool,
        typer.Option("--mark-error", help="Fail stale runs instead of only flagging them"),
    ] = False,
    db: Annotated[Optional[Path], typer.Option("--db", help="SQLite database path")] = None,
) -> None:
    """Flag or fail runs that stopped making progress."""
    settings = _load_settings(db)

    async def _sweep() -> list[str]:
        async with _offline_pipeline(settings) as pipeline:
            return await pipeline.coordinator.sweep_stale_runs(max_age, mark_error=mark_error)

    swept = _run(_sweep())
    if not swept:
        console.print("[green]No stale runs.[/green]")
        return
    action = "failed" if mark_error else "flagged"
    for run_id in swept:
        console.print(f"[yellow]{action}[/yellow] {run_id}")


@app.command()
def config() -> None:
    """Show current configuration.

    Displays all configuration values with API keys redacted.
    """
    console.print()
    console.print("[bold]Tradeflow Configuration[/bold]")
    console.print()

    settings = _get_settings_safe()

    if settings is None:
        error_console.print("[red]Configuration is invalid or incomplete.[/red]")
        error_console.print()
        error_console.print("Check that AGENT_TIMEOUT_MS is below HOST_EXECUTION_CEILING_MS")
        error_console.print("and that numeric settings are within their bounds.")
        error_console.print()
        error_console.print("Create a .env file or set environment variables.")
        raise typer.Exit(1)

    table = Table(title="Settings", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for key, value in settings.redacted_display().items():
        display_value = str(value) if value is not None else "[dim]not set[/dim]"
        table.add_row(key, display_value)

    console.print(table)
    console.print()
    if settings.DRY_RUN:
        console.print("[yellow]Dry run is enabled; no API calls will be made.[/yellow]")
    elif not settings.anthropic_api_key:
        console.print("[yellow]ANTHROPIC_API_KEY is not set; use --dry-run or set the key.[/yellow]")
    console.print()


@app.command()
def version() -> None:
    """Print the version number."""
    console.print(f"tradeflow version {__version__}")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
