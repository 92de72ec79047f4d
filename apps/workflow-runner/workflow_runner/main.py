"""CLI entrypoint for workflow test diagnostics."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer

from . import storage_probe
from .config import load_config
from .console_reporter import ConsoleReporter
from .exceptions import WorkflowTestError
from .logging_utils import configure_logging
from .output_config import get_output_format, log_format_for
from .trace import TraceIndex

app = typer.Typer(help="Diagnostics for workflow test runs: storage emulator probe and run-history inspection.")


@app.callback()
def main(
    ctx: typer.Context,
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level for structured events."),
    format: Optional[str] = typer.Option(
        None,
        "--format",
        "-f",
        help="Console output: auto, rich, plain or json (defaults to CONSOLE_OUTPUT_FORMAT).",
    ),
) -> None:
    output_format = get_output_format(format)
    configure_logging(log_level, log_format_for(output_format))
    ctx.obj = ConsoleReporter(output_format=output_format)


@app.command("probe-storage")
def probe_storage(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        exists=True,
        readable=True,
        help="YAML or JSON test configuration; defaults apply when omitted.",
    ),
) -> None:
    """Check that the storage emulator ports have local listeners."""

    reporter: ConsoleReporter = ctx.obj
    try:
        settings = load_config(config)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--config") from exc

    storage = settings.storage
    ports = ", ".join(str(port) for port in storage.ports)
    if storage_probe.is_reachable(storage):
        reporter.print_info(f"Storage emulator is reachable on {storage.host} ports {ports}")
        return
    reporter.print_error(f"Storage emulator is not reachable on {storage.host} ports {ports}")
    raise typer.Exit(code=1)


@app.command("inspect-trace")
def inspect_trace(
    ctx: typer.Context,
    history: Path = typer.Argument(..., exists=True, readable=True, help="Run-history JSON document."),
    action: Optional[str] = typer.Option(None, "--action", "-a", help="Show the repetitions of one action."),
) -> None:
    """Index a saved run history and print its actions."""

    reporter: ConsoleReporter = ctx.obj
    try:
        payload = json.loads(history.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"Run history {history} is not valid JSON: {exc}") from exc

    try:
        trace = TraceIndex(payload)
        if action:
            reporter.print_repetitions(trace, action)
        else:
            reporter.print_trace(trace)
    except WorkflowTestError as exc:
        reporter.print_error(str(exc))
        raise typer.Exit(code=1) from exc


def run() -> None:
    """Console_scripts hook."""

    app()


if __name__ == "__main__":  # pragma: no cover
    run()
