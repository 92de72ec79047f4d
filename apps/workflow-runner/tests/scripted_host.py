"""In-process workflow host used by the workflow-runner tests.

A script is a list of steps; each step sends one outbound call through the
attached dispatcher and records the action execution the runtime would
report for it. Steps may be wrapped in a loop to produce repetitions.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any

from mock_dispatcher import ACTION_NAME_HEADER, MockDispatcher, MockRequest, SimulatedTransportError

from workflow_runner.models import TriggerRequest, TriggerResponse, WorkflowRunStatus


@dataclass
class HttpStep:
    name: str
    method: str = "POST"
    url: str = "http://external.example.com/api"
    body: Any = None


@dataclass
class Loop:
    name: str
    iterations: int
    steps: list[HttpStep] = field(default_factory=list)


class ScriptedWorkflowHost:
    """Runs a scripted workflow synchronously when the trigger is invoked."""

    def __init__(self, steps: list[HttpStep | Loop], *, pending_polls: int = 0, never_completes: bool = False) -> None:
        self.steps = steps
        self.pending_polls = pending_polls
        self.never_completes = never_completes
        self.dispatcher: MockDispatcher | None = None
        self.trigger_requests: list[TriggerRequest] = []
        self.status_polls = 0
        self._history: dict[str, Any] | None = None

    def attach(self, dispatcher: MockDispatcher) -> None:
        self.dispatcher = dispatcher

    def invoke_trigger(self, trigger: TriggerRequest) -> TriggerResponse:
        assert self.dispatcher is not None
        self.trigger_requests.append(trigger)
        run_id = uuid.uuid4().hex
        actions = [self._run(step) for step in self.steps]
        failed = any(action["status"] == "Failed" for action in actions)
        self._history = {
            "run_id": run_id,
            "status": "Failed" if failed else "Succeeded",
            "client_tracking_id": run_id,
            "actions": [{"name": "manual", "status": "Succeeded", "outputs": {"body": _decode(trigger.body)}}, *actions],
        }
        return TriggerResponse(
            status_code=202,
            headers={"x-ms-workflow-run-id": run_id, "x-ms-client-tracking-id": run_id},
            run_id=run_id,
            client_tracking_id=run_id,
        )

    def get_run_status(self, run_id: str) -> WorkflowRunStatus:
        self.status_polls += 1
        if self.never_completes or self.status_polls <= self.pending_polls:
            return WorkflowRunStatus.RUNNING
        assert self._history is not None and self._history["run_id"] == run_id
        return WorkflowRunStatus(self._history["status"])

    def get_run_history(self, run_id: str) -> dict[str, Any]:
        assert self._history is not None
        history = json.loads(json.dumps(self._history))
        if self.never_completes:
            history["status"] = "Running"
        return history

    def _run(self, step: HttpStep | Loop) -> dict[str, Any]:
        if isinstance(step, Loop):
            repetitions = []
            for index in range(step.iterations):
                actions = [self._run(inner) for inner in step.steps]
                failed = any(action["status"] == "Failed" for action in actions)
                repetitions.append({"index": index, "status": "Failed" if failed else "Succeeded", "actions": actions})
            status = "Failed" if any(rep["status"] == "Failed" for rep in repetitions) else "Succeeded"
            return {"name": step.name, "status": status, "repetitions": repetitions, "repetition_count": step.iterations}

        assert self.dispatcher is not None
        body = json.dumps(step.body).encode("utf-8") if step.body is not None else b""
        request = MockRequest(
            method=step.method,
            url=step.url,
            headers={ACTION_NAME_HEADER: step.name, "Content-Type": "application/json"},
            body=body,
        )
        inputs = {"method": step.method, "uri": step.url, "body": step.body}
        try:
            response = self.dispatcher.intercept(request)
        except SimulatedTransportError as exc:
            return {"name": step.name, "status": "Failed", "inputs": inputs, "error": str(exc)}
        status = "Succeeded" if response.status_code < 400 else "Failed"
        outputs = {"statusCode": response.status_code, "body": _decode(response.body)}
        return {"name": step.name, "status": status, "inputs": inputs, "outputs": outputs}


def _decode(body: bytes | None) -> Any:
    if not body:
        return None
    text = body.decode("utf-8")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text
