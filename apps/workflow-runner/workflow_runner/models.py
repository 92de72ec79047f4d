"""Run-history schema and trigger exchange models."""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .exceptions import RunHistoryError


class ActionStatus(str, Enum):
    NOT_RUN = "NotRun"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"
    ABORTED = "Aborted"
    TIMED_OUT = "TimedOut"
    RUNNING = "Running"
    WAITING = "Waiting"
    CANCELLED = "Cancelled"


class WorkflowRunStatus(str, Enum):
    NOT_TRIGGERED = "NotTriggered"
    RUNNING = "Running"
    WAITING = "Waiting"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    ABORTED = "Aborted"
    TIMED_OUT = "TimedOut"

    @property
    def is_terminal(self) -> bool:
        return self not in {WorkflowRunStatus.NOT_TRIGGERED, WorkflowRunStatus.RUNNING, WorkflowRunStatus.WAITING}


class HistoryRepetition(BaseModel):
    """One iteration of a repeatable container."""

    model_config = ConfigDict(extra="ignore")

    index: Optional[int] = None
    status: Optional[ActionStatus] = None
    inputs: Any = None
    outputs: Any = None
    tracked_properties: Optional[dict[str, Any]] = None
    actions: list["HistoryAction"] = Field(default_factory=list)


class HistoryAction(BaseModel):
    """Action execution as reported by the workflow runtime."""

    model_config = ConfigDict(extra="ignore")

    name: str
    status: ActionStatus
    inputs: Any = None
    outputs: Any = None
    tracked_properties: Optional[dict[str, Any]] = None
    actions: list["HistoryAction"] = Field(default_factory=list)
    repetitions: Optional[list[HistoryRepetition]] = None
    repetition_count: Optional[int] = None

    @model_validator(mode="after")
    def _check_repetition_count(self) -> "HistoryAction":
        if self.repetition_count is None:
            return self
        actual = len(self.repetitions or [])
        if self.repetition_count != actual:
            raise ValueError(
                f"Action '{self.name}' declares {self.repetition_count} repetition(s) but reports {actual}"
            )
        return self


HistoryRepetition.model_rebuild()


class RunHistory(BaseModel):
    """Structured record of one workflow run."""

    model_config = ConfigDict(extra="ignore")

    run_id: str
    status: WorkflowRunStatus
    client_tracking_id: Optional[str] = None
    actions: list[HistoryAction] = Field(default_factory=list)

    @classmethod
    def parse(cls, payload: Any) -> "RunHistory":
        if isinstance(payload, RunHistory):
            return payload
        if not isinstance(payload, dict):
            raise RunHistoryError("Run history must be a JSON object")
        try:
            return cls.model_validate(payload)
        except ValueError as exc:
            raise RunHistoryError(f"Invalid run history: {exc}") from exc


class TriggerRequest(BaseModel):
    """Request sent to the workflow trigger endpoint."""

    method: str = "POST"
    relative_path: str = ""
    query: dict[str, str] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)
    body: Optional[bytes] = None


class TriggerResponse(BaseModel):
    """Synchronous response of the trigger plus the run identifiers it returned."""

    status_code: int
    headers: dict[str, str] = Field(default_factory=dict)
    body: bytes = b""
    run_id: Optional[str] = None
    client_tracking_id: Optional[str] = None

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")
