from __future__ import annotations

from urllib import request

import pytest

from mock_dispatcher import PathMatchType, RequestMatcher, ResponseBuilder
from scripted_host import HttpStep, Loop, ScriptedWorkflowHost

from workflow_runner.config import TestConfiguration
from workflow_runner.console_reporter import ConsoleReporter
from workflow_runner.exceptions import (
    NoOutputRecordedError,
    StorageEmulatorUnavailableError,
    WorkflowTestError,
    WorkflowTimeoutError,
)
from workflow_runner.models import ActionStatus, WorkflowRunStatus
from workflow_runner.output_config import OutputFormat
from workflow_runner import runner as runner_module
from workflow_runner.runner import TestRunner


def _config(**runner_overrides) -> TestConfiguration:
    config = TestConfiguration.model_validate({"storage": {"enable_port_check": False}})
    return config.model_copy(update={"runner": config.runner.model_copy(update=runner_overrides)})


def _runner(host: ScriptedWorkflowHost, **runner_overrides) -> TestRunner:
    return TestRunner(
        host,
        config=_config(**runner_overrides),
        reporter=ConsoleReporter(output_format=OutputFormat.PLAIN),
    )


def _service_matcher() -> RequestMatcher:
    return RequestMatcher.create().using_post().with_path(PathMatchType.EXACT, "/api")


def test_loop_with_fourth_call_failing() -> None:
    host = ScriptedWorkflowHost([Loop("Until_Loop", 5, [HttpStep("Call_Service")])])

    with _runner(host) as runner:
        runner.add_mock_response(_service_matcher().with_match_count(4), "fourth-call").respond_with(
            ResponseBuilder.create().with_internal_server_error()
        )
        runner.add_mock_response(_service_matcher()).respond_with_default()

        response = runner.trigger_workflow("POST", {"customerId": 54624})

        assert response.status_code == 202
        assert runner.run_id is not None
        assert runner.run_status is WorkflowRunStatus.FAILED
        assert runner.action_repetition_count("Until_Loop") == 5
        statuses = [runner.action_output("Call_Service", n)["statusCode"] for n in range(1, 6)]
        assert statuses == [200, 200, 200, 500, 200]
        assert runner.action_status("Call_Service", 4) is ActionStatus.FAILED
        assert runner.action("manual").outputs == {"body": {"customerId": 54624}}
        assert [call.match_count for call in runner.mock_requests] == [1, 2, 3, 4, 5]

    assert host.trigger_requests[0].headers["Content-Type"] == "application/json"


def test_transport_failure_leaves_action_failed_without_output() -> None:
    host = ScriptedWorkflowHost([HttpStep("Call_Service", body={"id": 1})])

    with _runner(host) as runner:
        runner.add_mock_response(RequestMatcher.create().from_action("Call_Service")).respond_with(
            ResponseBuilder.create().throws_exception(ConnectionResetError("connection reset by peer"))
        )
        runner.trigger_workflow()

        assert runner.action_status("Call_Service") is ActionStatus.FAILED
        assert runner.action_input("Call_Service")["body"] == {"id": 1}
        with pytest.raises(NoOutputRecordedError):
            runner.action_output("Call_Service")


def test_polls_until_the_run_is_terminal(monkeypatch: pytest.MonkeyPatch) -> None:
    sleeps: list[float] = []
    monkeypatch.setattr(runner_module.time, "sleep", sleeps.append)
    host = ScriptedWorkflowHost([HttpStep("Call_Service")], pending_polls=2)

    with _runner(host, poll_interval=0.5) as runner:
        runner.trigger_workflow()

        assert runner.run_status is WorkflowRunStatus.SUCCEEDED
    assert host.status_polls == 3
    assert sleeps == [0.5, 0.5]


def test_timeout_is_fatal_and_carries_partial_trace() -> None:
    host = ScriptedWorkflowHost([HttpStep("Call_Service")], never_completes=True)

    with _runner(host, max_workflow_execution_duration=0.2, poll_interval=0.05) as runner:
        with pytest.raises(WorkflowTimeoutError) as excinfo:
            runner.trigger_workflow()

    error = excinfo.value
    assert error.run_id is not None
    assert error.partial_trace is not None
    assert error.partial_trace.status("Call_Service") is ActionStatus.SUCCEEDED
    assert error.partial_trace.run_status is WorkflowRunStatus.RUNNING


def test_explain_failures_lists_failed_actions() -> None:
    host = ScriptedWorkflowHost([HttpStep("Call_Service")])

    with _runner(host) as runner:
        runner.add_mock_response(_service_matcher()).respond_with(ResponseBuilder.create().with_not_found())
        runner.trigger_workflow()

        with pytest.raises(AssertionError, match="action 'Call_Service' \\(repetition 1\\) is Failed"):
            with runner.explain_failures():
                assert runner.run_status is WorkflowRunStatus.SUCCEEDED


def test_state_does_not_leak_between_runs() -> None:
    host = ScriptedWorkflowHost([HttpStep("Call_Service")])
    runner = _runner(host)
    with runner:
        runner.add_mock_response(_service_matcher().with_match_count(1)).respond_with(
            ResponseBuilder.create().with_unauthorized()
        )
        runner.trigger_workflow()
        assert runner.action_status("Call_Service") is ActionStatus.FAILED

    assert runner.dispatcher.calls == ()
    assert runner.dispatcher.rules == ()

    second_host = ScriptedWorkflowHost([HttpStep("Call_Service")])
    with _runner(second_host) as second:
        second.trigger_workflow()
        assert second.action_status("Call_Service") is ActionStatus.SUCCEEDED
        assert second.mock_requests[0].match_count is None


def test_runner_only_triggers_once() -> None:
    host = ScriptedWorkflowHost([])

    with _runner(host) as runner:
        runner.trigger_workflow()
        with pytest.raises(WorkflowTestError):
            runner.trigger_workflow()


def test_trace_requires_completed_run() -> None:
    with _runner(ScriptedWorkflowHost([])) as runner:
        with pytest.raises(WorkflowTestError):
            runner.action_status("manual")


def test_storage_check_blocks_construction(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(runner_module.storage_probe, "is_reachable", lambda settings: False)

    with pytest.raises(StorageEmulatorUnavailableError, match="10000, 10001, 10002"):
        TestRunner(ScriptedWorkflowHost([]), config=TestConfiguration())


def test_mock_host_serves_dispatcher_and_stops_on_exit() -> None:
    config = TestConfiguration.model_validate(
        {"storage": {"enable_port_check": False}, "mock_host": {"enabled": True, "port": 0}}
    )
    runner = TestRunner(
        ScriptedWorkflowHost([]), config=config, reporter=ConsoleReporter(output_format=OutputFormat.PLAIN)
    )
    with runner:
        runner.add_mock_response(RequestMatcher.create().using_get()).respond_with(
            ResponseBuilder.create().with_content_as_plain_text("pong")
        )
        assert runner.mock_host is not None
        with request.urlopen(f"{runner.mock_host.base_url}/ping", timeout=5) as response:
            assert response.read() == b"pong"

    assert runner.mock_host is None
