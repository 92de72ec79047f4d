"""Workflow test runner: trigger, completion polling and trace queries."""

from .config import TestConfiguration, load_config
from .exceptions import (
    ActionNotFoundError,
    AmbiguousActionError,
    NoInputRecordedError,
    NoOutputRecordedError,
    PayloadNotRecordedError,
    RepetitionOutOfRangeError,
    RunHistoryError,
    StorageEmulatorUnavailableError,
    TraceConfigurationError,
    TraceLookupError,
    TriggerError,
    WorkflowTestError,
    WorkflowTimeoutError,
)
from .host import EmulatorProcess, HttpWorkflowHost, WorkflowHost
from .models import ActionStatus, RunHistory, TriggerRequest, TriggerResponse, WorkflowRunStatus
from .runner import TestRunner
from .storage_probe import is_reachable
from .trace import TraceIndex, TraceNode

__all__ = [
    "ActionNotFoundError",
    "ActionStatus",
    "AmbiguousActionError",
    "EmulatorProcess",
    "HttpWorkflowHost",
    "NoInputRecordedError",
    "NoOutputRecordedError",
    "PayloadNotRecordedError",
    "RepetitionOutOfRangeError",
    "RunHistory",
    "RunHistoryError",
    "StorageEmulatorUnavailableError",
    "TestConfiguration",
    "TestRunner",
    "TraceConfigurationError",
    "TraceIndex",
    "TraceLookupError",
    "TraceNode",
    "TriggerError",
    "TriggerRequest",
    "TriggerResponse",
    "WorkflowHost",
    "WorkflowRunStatus",
    "WorkflowTestError",
    "WorkflowTimeoutError",
    "is_reachable",
    "load_config",
]
