"""Error taxonomy for workflow test runs and trace queries."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .trace import TraceIndex


class WorkflowTestError(Exception):
    """Base class for every error raised by the workflow runner."""


class TraceConfigurationError(WorkflowTestError):
    """The run history cannot be indexed unambiguously."""


class AmbiguousActionError(TraceConfigurationError):
    def __init__(self, action_name: str, first_scope: tuple[str, ...], second_scope: tuple[str, ...]) -> None:
        super().__init__(
            f"Action '{action_name}' appears in two unrelated scopes "
            f"({_scope_label(first_scope)} and {_scope_label(second_scope)}); action names must be unique"
        )
        self.action_name = action_name
        self.scopes = (first_scope, second_scope)


class RunHistoryError(WorkflowTestError):
    """The run-history document does not follow the expected shape."""


class TraceLookupError(WorkflowTestError, LookupError):
    """A trace query referenced something that was not recorded."""


class ActionNotFoundError(TraceLookupError):
    def __init__(self, action_name: str) -> None:
        super().__init__(f"Action '{action_name}' was not executed in the workflow run")
        self.action_name = action_name


class RepetitionOutOfRangeError(TraceLookupError):
    def __init__(self, action_name: str, repetition: int, count: int) -> None:
        super().__init__(
            f"Action '{action_name}' has {count} repetition(s); repetition {repetition} does not exist"
        )
        self.action_name = action_name
        self.repetition = repetition
        self.count = count


class PayloadNotRecordedError(TraceLookupError):
    """The runtime did not record the requested payload for an action execution."""

    kind = "payload"

    def __init__(self, action_name: str, repetition: int, status: str | None = None) -> None:
        message = f"Action '{action_name}' (repetition {repetition}) has no {self.kind} recorded"
        if status == "Skipped":
            message += " because it was skipped"
        elif status:
            message += f" (status {status})"
        super().__init__(message)
        self.action_name = action_name
        self.repetition = repetition
        self.status = status


class NoInputRecordedError(PayloadNotRecordedError):
    kind = "input"


class NoOutputRecordedError(PayloadNotRecordedError):
    kind = "output"


class WorkflowTimeoutError(WorkflowTestError, TimeoutError):
    """The workflow run did not reach a terminal state in time."""

    def __init__(self, run_id: str | None, timeout: float, partial_trace: "TraceIndex | None" = None) -> None:
        super().__init__(f"Workflow run {run_id or '<unknown>'} did not complete within {timeout:g} seconds")
        self.run_id = run_id
        self.timeout = timeout
        self.partial_trace = partial_trace


class TriggerError(WorkflowTestError):
    """The workflow trigger could not be invoked."""


class StorageEmulatorUnavailableError(WorkflowTestError):
    def __init__(self, host: str, ports: list[int]) -> None:
        super().__init__(
            "The storage emulator must be running before the workflow can be tested; "
            f"expected listeners on {host} ports {', '.join(str(port) for port in ports)}"
        )
        self.host = host
        self.ports = ports


def _scope_label(scope: tuple[str, ...]) -> str:
    return " > ".join(scope) if scope else "top level"
