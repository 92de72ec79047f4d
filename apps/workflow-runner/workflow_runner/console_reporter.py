"""Console reporter for mocked requests and action traces."""

from __future__ import annotations

import json
import os
import sys
from typing import Any, Sequence

from rich.console import Console
from rich.table import Table
from rich.text import Text

from mock_dispatcher import RecordedCall

from .models import ActionStatus
from .output_config import OutputFormat
from .trace import TraceIndex, TraceNode

STATUS_STYLES = {
    ActionStatus.SUCCEEDED: "green",
    ActionStatus.FAILED: "bold red",
    ActionStatus.SKIPPED: "dim",
    ActionStatus.TIMED_OUT: "red",
    ActionStatus.ABORTED: "red",
    ActionStatus.CANCELLED: "yellow",
    ActionStatus.RUNNING: "yellow",
    ActionStatus.WAITING: "yellow",
}

_CI_VARIABLES = ("CI", "JENKINS_HOME", "GITLAB_CI", "TRAVIS", "GITHUB_ACTIONS", "TF_BUILD")


class ConsoleReporter:
    """
    Prints run diagnostics in the format best suited to the environment.

    Rich tables are used for interactive terminals; CI systems and
    redirected output get plain text, and ``OutputFormat.JSON`` emits one
    JSON document per line.
    """

    def __init__(self, output_format: OutputFormat = OutputFormat.AUTO, console: Console | None = None) -> None:
        self.output_format = output_format
        self.use_rich = self._detect_rich(output_format)
        self.console = console or (Console() if self.use_rich else None)

    @staticmethod
    def _detect_rich(output_format: OutputFormat) -> bool:
        if output_format == OutputFormat.RICH:
            return True
        if output_format in (OutputFormat.PLAIN, OutputFormat.JSON):
            return False
        is_terminal = sys.stdout.isatty()
        is_ci = any(name in os.environ for name in _CI_VARIABLES)
        return is_terminal and not is_ci

    def print_mock_requests(self, calls: Sequence[RecordedCall]) -> None:
        if self.output_format == OutputFormat.JSON:
            for call in calls:
                self._emit_json(
                    {
                        "sequence": call.sequence,
                        "timestamp": call.timestamp.isoformat(),
                        "method": call.request.method,
                        "url": call.request.url,
                        "rule": call.rule_name,
                        "match_count": call.match_count,
                        "fallback": call.used_fallback,
                    }
                )
            return

        if not calls:
            self.print_info("Mocked requests: none")
            return

        if self.use_rich:
            table = Table(title="Mocked requests", show_header=True, header_style="bold cyan")
            table.add_column("#", justify="right", style="dim")
            table.add_column("Time", style="dim")
            table.add_column("Request", overflow="fold")
            table.add_column("Rule")
            table.add_column("Count", justify="right")
            for call in calls:
                table.add_row(
                    str(call.sequence),
                    call.timestamp.strftime("%H:%M:%S.%f")[:-3],
                    f"{call.request.method} {call.request.url}",
                    _rule_label(call),
                    "" if call.match_count is None else str(call.match_count),
                )
            self.console.print(table)
            return

        print("Mocked requests:")
        for call in calls:
            print(
                f"    {call.timestamp.strftime('%H:%M:%S.%f')[:-3]}: "
                f"{call.request.method} {call.request.url} -> {_rule_label(call)}"
            )

    def print_trace(self, trace: TraceIndex) -> None:
        self._print_nodes(f"Run {trace.run_id} ({trace.run_status.value})", list(trace))

    def print_repetitions(self, trace: TraceIndex, action_name: str) -> None:
        nodes = list(trace.repetitions(action_name))
        self._print_nodes(f"{action_name}: {len(nodes)} repetition(s)", nodes)

    def _print_nodes(self, title: str, nodes: list[TraceNode]) -> None:
        if self.output_format == OutputFormat.JSON:
            for node in nodes:
                self._emit_json(
                    {
                        "name": node.name,
                        "repetition": node.repetition,
                        "status": node.status.value,
                        "scope": [[loop, index] for loop, index in node.scope_path],
                        "has_input": node.has_input,
                        "has_output": node.has_output,
                    }
                )
            return

        if self.use_rich:
            table = Table(title=title, show_header=True, header_style="bold cyan")
            table.add_column("Action")
            table.add_column("Repetition", justify="right")
            table.add_column("Status")
            table.add_column("Scope", style="dim")
            table.add_column("Input", justify="center")
            table.add_column("Output", justify="center")
            for node in nodes:
                table.add_row(
                    node.name,
                    str(node.repetition),
                    Text(node.status.value, style=STATUS_STYLES.get(node.status, "white")),
                    _scope_label(node),
                    "✓" if node.has_input else "-",
                    "✓" if node.has_output else "-",
                )
            self.console.print(table)
            return

        print(title)
        print("-" * 80)
        for node in nodes:
            scope = _scope_label(node)
            suffix = f" [{scope}]" if scope else ""
            print(f"{node.name} #{node.repetition}: {node.status.value}{suffix}")

    def print_error(self, message: str) -> None:
        if self.use_rich:
            self.console.print(f"[bold red]Error:[/] {message}")
        else:
            print(f"Error: {message}")

    def print_info(self, message: str) -> None:
        if self.use_rich:
            self.console.print(f"[cyan]{message}[/]")
        else:
            print(message)

    @staticmethod
    def _emit_json(payload: dict[str, Any]) -> None:
        print(json.dumps(payload))


def _rule_label(call: RecordedCall) -> str:
    if call.rule is None:
        return "fallback"
    return call.rule.label


def _scope_label(node: TraceNode) -> str:
    return " > ".join(f"{loop}[{index}]" for loop, index in node.scope_path)
