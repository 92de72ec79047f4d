"""Orchestration of one workflow test: mocks, trigger, completion and trace."""

from __future__ import annotations

import json
import time
from contextlib import contextmanager
from typing import Any, Iterator, Mapping

import structlog

from mock_dispatcher import MatchRule, MockDispatcher, MockHttpHost, PendingRule, RecordedCall, RequestMatcher
from mock_dispatcher.dispatcher import FallbackResolver

from . import storage_probe
from .config import TestConfiguration
from .console_reporter import ConsoleReporter
from .exceptions import StorageEmulatorUnavailableError, TriggerError, WorkflowTestError, WorkflowTimeoutError
from .host import RUN_ID_HEADER, WorkflowHost
from .logging_utils import configure_from_settings
from .models import ActionStatus, TriggerRequest, TriggerResponse, WorkflowRunStatus
from .output_config import get_output_format
from .trace import TraceIndex, TraceNode

LOGGER = structlog.get_logger("workflow_runner")


class TestRunner:
    """Runs a single workflow test against a workflow host.

    Create one runner per test: configure mocks, call ``trigger_workflow``,
    then assert on the trace and on ``mock_requests``. Using the runner as a
    context manager discards all mock state and stops the mock host on exit.
    """

    __test__ = False

    def __init__(
        self,
        host: WorkflowHost,
        *,
        config: TestConfiguration | None = None,
        dispatcher: MockDispatcher | None = None,
        reporter: ConsoleReporter | None = None,
        configure_logging: bool = False,
    ) -> None:
        self.config = config or TestConfiguration()
        if configure_logging:
            configure_from_settings(self.config.logging)

        storage = self.config.storage
        if storage.enable_port_check and not storage_probe.is_reachable(storage):
            raise StorageEmulatorUnavailableError(storage.host, storage.ports)

        self._host = host
        self._dispatcher = dispatcher or MockDispatcher(
            default_status_code=self.config.runner.default_http_response_status_code,
            write_matching_logs=self.config.logging.write_mock_request_matching_logs,
        )
        self._reporter = reporter or ConsoleReporter(output_format=get_output_format())
        self._logger = LOGGER.bind(component="test_runner")

        self._trigger_response: TriggerResponse | None = None
        self._run_id: str | None = None
        self._run_status = WorkflowRunStatus.NOT_TRIGGERED
        self._trace: TraceIndex | None = None

        self._mock_host: MockHttpHost | None = None
        if self.config.mock_host.enabled:
            self._mock_host = MockHttpHost(
                self._dispatcher, host=self.config.mock_host.host, port=self.config.mock_host.port
            )
            self._mock_host.start()
        host.attach(self._dispatcher)

    # Mock configuration --------------------------------------------------

    @property
    def dispatcher(self) -> MockDispatcher:
        return self._dispatcher

    @property
    def mock_host(self) -> MockHttpHost | None:
        return self._mock_host

    def add_mock_response(self, matcher: RequestMatcher, name: str | None = None) -> PendingRule:
        return self._dispatcher.add_mock_response(matcher, name)

    def register_rule(self, rule: MatchRule) -> MatchRule:
        return self._dispatcher.register_rule(rule)

    def use_fallback(self, resolver: FallbackResolver | None) -> None:
        self._dispatcher.use_fallback(resolver)

    # Run -----------------------------------------------------------------

    def trigger_workflow(
        self,
        method: str = "POST",
        body: Any = None,
        headers: Mapping[str, str] | None = None,
        relative_path: str = "",
        query: Mapping[str, str] | None = None,
    ) -> TriggerResponse:
        """Invoke the trigger and block until the run is terminal."""

        if self._run_status is not WorkflowRunStatus.NOT_TRIGGERED:
            raise WorkflowTestError("The workflow has already been triggered by this test runner")

        request_headers = dict(headers or {})
        payload = _encode_body(body, request_headers)
        self._dispatcher.start_run()
        self._run_status = WorkflowRunStatus.RUNNING

        response = self._host.invoke_trigger(
            TriggerRequest(
                method=method.upper(),
                relative_path=relative_path,
                query=dict(query or {}),
                headers=request_headers,
                body=payload,
            )
        )
        self._trigger_response = response
        if not response.run_id:
            raise TriggerError(
                f"The trigger response (HTTP {response.status_code}) did not include a '{RUN_ID_HEADER}' header"
            )
        self._run_id = response.run_id
        logger = self._logger.bind(run_id=response.run_id)
        logger.info(
            "workflow_triggered",
            status_code=response.status_code,
            client_tracking_id=response.client_tracking_id,
        )

        self._run_status = self._wait_for_completion(response.run_id, logger)
        self._reporter.print_mock_requests(self._dispatcher.complete_run())
        self._trace = TraceIndex(self._host.get_run_history(response.run_id))
        logger.info("run_completed", status=self._run_status.value, actions=len(self._trace.action_names))
        return response

    def _wait_for_completion(self, run_id: str, logger: structlog.stdlib.BoundLogger) -> WorkflowRunStatus:
        timeout = self.config.runner.max_workflow_execution_duration
        poll_interval = self.config.runner.poll_interval
        deadline = time.monotonic() + timeout
        while True:
            status = self._host.get_run_status(run_id)
            self._run_status = status
            if status.is_terminal:
                return status
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            logger.debug("run_polling", status=status.value)
            time.sleep(min(poll_interval, remaining))

        logger.error("run_timed_out", timeout=timeout, status=self._run_status.value)
        self._reporter.print_mock_requests(self._dispatcher.complete_run())
        raise WorkflowTimeoutError(run_id, timeout, self._partial_trace(run_id, logger))

    def _partial_trace(self, run_id: str, logger: structlog.stdlib.BoundLogger) -> TraceIndex | None:
        try:
            return TraceIndex(self._host.get_run_history(run_id))
        except WorkflowTestError as exc:
            logger.warning("partial_trace_unavailable", error=str(exc))
            return None

    # Results -------------------------------------------------------------

    @property
    def run_id(self) -> str | None:
        return self._run_id

    @property
    def client_tracking_id(self) -> str | None:
        if self._trigger_response is None:
            return None
        return self._trigger_response.client_tracking_id

    @property
    def run_status(self) -> WorkflowRunStatus:
        return self._run_status

    @property
    def trigger_response(self) -> TriggerResponse | None:
        return self._trigger_response

    @property
    def mock_requests(self) -> tuple[RecordedCall, ...]:
        return self._dispatcher.calls

    @property
    def trace(self) -> TraceIndex:
        if self._trace is None:
            raise WorkflowTestError("The workflow has not completed; call trigger_workflow() first")
        return self._trace

    def action(self, name: str, repetition: int = 1) -> TraceNode:
        return self.trace.node(name, repetition)

    def action_status(self, name: str, repetition: int = 1) -> ActionStatus:
        return self.trace.status(name, repetition)

    def action_input(self, name: str, repetition: int = 1) -> Any:
        return self.trace.input(name, repetition)

    def action_output(self, name: str, repetition: int = 1) -> Any:
        return self.trace.output(name, repetition)

    def action_repetition_count(self, name: str) -> int:
        return self.trace.repetition_count(name)

    def action_tracked_properties(self, name: str, repetition: int = 1) -> dict[str, Any]:
        return self.trace.tracked_properties(name, repetition)

    @contextmanager
    def explain_failures(self) -> Iterator[None]:
        """Append the failed or still running actions to assertion failures."""

        try:
            yield
        except AssertionError as exc:
            details = self._failure_details()
            if not details:
                raise
            raise AssertionError(f"{exc}\n\n{details}") from exc

    def _failure_details(self) -> str:
        if self._trace is None:
            return ""
        nodes = self._trace.failed_nodes()
        if not nodes:
            return ""
        lines = [f"Workflow run {self._trace.run_id} finished with status {self._trace.run_status.value}:"]
        for node in nodes:
            lines.append(f"  - action '{node.name}' (repetition {node.repetition}) is {node.status.value}")
        return "\n".join(lines)

    # Lifecycle -----------------------------------------------------------

    def close(self) -> None:
        self._dispatcher.reset()
        if self._mock_host is not None:
            self._mock_host.stop()
            self._mock_host = None

    def __enter__(self) -> "TestRunner":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def _encode_body(body: Any, headers: dict[str, str]) -> bytes | None:
    if body is None:
        return None
    if isinstance(body, (bytes, bytearray)):
        return bytes(body)
    if isinstance(body, str):
        return body.encode("utf-8")
    if not any(key.lower() == "content-type" for key in headers):
        headers["Content-Type"] = "application/json"
    return json.dumps(body).encode("utf-8")
