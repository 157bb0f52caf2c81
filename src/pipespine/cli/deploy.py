"""
CLI: ``pipespine run | plan | down``.

Exit codes:
    0  every required service healthy and every required connector registered
    1  the run completed with failures
    2  fatal: configuration error, dependency cycle, or cancellation
"""

from __future__ import annotations

import signal
import threading
from collections.abc import Callable
from enum import Enum
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from pipespine.core.errors import ConfigurationError, PipespineError, is_fatal
from pipespine.core.logging import configure_logging, get_logger
from pipespine.deploy.config import PipelineConfig, RunSettings, load_config
from pipespine.deploy.orchestrator import Orchestrator
from pipespine.deploy.planner import plan_stages
from pipespine.deploy.reporter import write_report
from pipespine.deploy.results import HealthState, RegistrationOutcome, RunReport
from pipespine.deploy.services import ComposeServiceManager

console = Console()
err_console = Console(stderr=True)
logger = get_logger(__name__)

EXIT_FATAL = 2


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"

ConfigOption = typer.Option(
    Path("pipeline.yaml"), "--config", "-c", help="Pipeline configuration file (YAML)."
)


def _load(config_path: Path) -> PipelineConfig:
    try:
        return load_config(config_path)
    except ConfigurationError as exc:
        err_console.print(f"[red]✗ {exc.message}[/]")
        raise typer.Exit(code=EXIT_FATAL) from exc


def _install_signal_handlers(cancel_event: threading.Event) -> Callable[[], None]:
    """Route SIGINT/SIGTERM to ``cancel_event``; returns a function restoring the old handlers."""
    if threading.current_thread() is not threading.main_thread():
        return lambda: None

    def _handle(signum: int, frame: object) -> None:
        err_console.print(f"[yellow]received {signal.Signals(signum).name}, cancelling...[/]")
        cancel_event.set()

    previous = {sig: signal.signal(sig, _handle) for sig in (signal.SIGINT, signal.SIGTERM)}

    def _restore() -> None:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    return _restore


# ── run ──────────────────────────────────────────────────────────────────


def run(
    config_path: Path = ConfigOption,
    timeout: float | None = typer.Option(
        None, "--timeout", "-t", help="Default per-service startup timeout in seconds."
    ),
    concurrency: int | None = typer.Option(
        None, "--concurrency", "-j", help="Maximum services starting at once."
    ),
    poll_interval: float | None = typer.Option(
        None, "--poll-interval", help="Seconds between health polls."
    ),
    dry_run: bool | None = typer.Option(
        None, "--dry-run/--no-dry-run", help="Validate and plan without starting anything."
    ),
    json_out: bool = typer.Option(False, "--json", help="Print the run report as JSON."),
    report_path: Path | None = typer.Option(
        None, "--report", "-o", help="Also write the JSON report to this path."
    ),
    log_level: LogLevel = typer.Option(
        LogLevel.INFO, "--log-level", case_sensitive=False, help="Log verbosity."
    ),
    log_json: bool = typer.Option(False, "--log-json", help="Emit logs as JSON."),
) -> None:
    """Bring the pipeline up: start services in order, then register connectors."""
    configure_logging(level=log_level.value, json_format=log_json)
    config = _load(config_path)

    try:
        settings = RunSettings.from_env(
            timeout=timeout,
            concurrency=concurrency,
            poll_interval=poll_interval,
            dry_run=dry_run,
        )
    except ConfigurationError as exc:
        err_console.print(f"[red]✗ {exc.message}[/]")
        raise typer.Exit(code=EXIT_FATAL) from exc

    cancel_event = threading.Event()
    orchestrator = Orchestrator(
        config,
        settings,
        manager=ComposeServiceManager(config),
        cancel_event=cancel_event,
    )

    if not json_out:
        mode = " (dry run)" if settings.dry_run else ""
        console.print(f"[bold]pipespine run[/]{mode}: run_id {settings.run_id}")

    restore = _install_signal_handlers(cancel_event)
    try:
        report = orchestrator.run()
    except PipespineError as exc:
        if not is_fatal(exc):
            raise
        logger.error("cli.fatal", **exc.to_dict())
        err_console.print(f"[red]✗ {exc.message}[/]")
        raise typer.Exit(code=EXIT_FATAL) from exc
    finally:
        restore()

    if report_path is not None:
        try:
            write_report(report, report_path)
        except OSError as exc:
            err_console.print(f"[red]✗ cannot write report: {exc}[/]")

    if json_out:
        typer.echo(report.model_dump_json(indent=2))
    else:
        _print_report(report)

    raise typer.Exit(code=report.exit_code)


# ── plan ─────────────────────────────────────────────────────────────────


def plan(config_path: Path = ConfigOption) -> None:
    """Print the bring-up stages without touching any service."""
    config = _load(config_path)
    try:
        stages = plan_stages(config.services)
    except PipespineError as exc:
        err_console.print(f"[red]✗ {exc.message}[/]")
        raise typer.Exit(code=EXIT_FATAL) from exc

    table = Table(title="Bring-up Plan")
    table.add_column("Stage", justify="right")
    table.add_column("Services", style="bold")
    for index, stage in enumerate(stages, start=1):
        table.add_row(str(index), ", ".join(stage))
    console.print(table)

    if config.connectors:
        console.print(
            "connectors (in order): " + ", ".join(c.name for c in config.connectors)
        )


# ── down ─────────────────────────────────────────────────────────────────


def down(config_path: Path = ConfigOption) -> None:
    """Stop and remove the pipeline's services."""
    config = _load(config_path)
    manager = ComposeServiceManager(config)
    console.print("[bold red]▼ pipespine down[/]")
    try:
        manager.preflight()
        manager.stop_all()
    except ConfigurationError as exc:
        err_console.print(f"[red]✗ {exc.message}[/]")
        raise typer.Exit(code=EXIT_FATAL) from exc
    except PipespineError as exc:
        err_console.print(f"[red]✗ {exc.message}[/]")
        raise typer.Exit(code=1) from exc
    console.print("[green]✓ Services stopped[/]")


# ── Output ───────────────────────────────────────────────────────────────

_STATE_STYLE = {
    HealthState.HEALTHY: "green",
    HealthState.PENDING: "dim",
    HealthState.STARTING: "yellow",
    HealthState.FAILED: "red",
    HealthState.TIMED_OUT: "red",
    HealthState.CANCELLED: "yellow",
}

_OUTCOME_STYLE = {
    RegistrationOutcome.REGISTERED: "green",
    RegistrationOutcome.ALREADY_REGISTERED: "green",
    RegistrationOutcome.CONFIG_CONFLICT: "red",
    RegistrationOutcome.FAILED: "red",
    RegistrationOutcome.SKIPPED: "dim",
    RegistrationOutcome.CANCELLED: "yellow",
}


def _print_report(report: RunReport) -> None:
    """Pretty-print a RunReport."""
    if report.dry_run:
        table = Table(title="Bring-up Plan")
        table.add_column("Stage", justify="right")
        table.add_column("Services", style="bold")
        for index, stage in enumerate(report.plan, start=1):
            table.add_row(str(index), ", ".join(stage))
        console.print(table)
        console.print(f"\n[bold green]OK[/] {report.summary}")
        return

    table = Table(title="Service Status")
    table.add_column("Service", style="bold")
    table.add_column("Status")
    table.add_column("Polls", justify="right")
    table.add_column("URL")
    table.add_column("Cause")
    for svc in report.services:
        style = _STATE_STYLE.get(svc.state, "white")
        name = svc.name if svc.required else f"{svc.name} [dim](optional)[/]"
        table.add_row(
            name,
            f"[{style}]{svc.state.value}[/{style}]",
            str(svc.polls),
            svc.url or "—",
            svc.cause or "—",
        )
    console.print(table)

    if report.connectors:
        table = Table(title="Connectors")
        table.add_column("Connector", style="bold")
        table.add_column("Outcome")
        table.add_column("Attempts", justify="right")
        table.add_column("Cause")
        for conn in report.connectors:
            style = _OUTCOME_STYLE.get(conn.outcome, "white")
            table.add_row(
                conn.name,
                f"[{style}]{conn.outcome.value}[/{style}]",
                str(conn.attempts),
                conn.cause or "—",
            )
        console.print(table)

    for line in report.failures:
        console.print(f"[red]✗[/] {line}")

    if report.cancelled:
        label, style = "CANCELLED", "yellow"
    elif report.success:
        label, style = "SUCCESS", "green"
    else:
        label, style = "FAILED", "red"
    console.print(f"\n[bold {style}]{label}[/] {report.summary} ({report.duration_seconds:.1f}s)")
