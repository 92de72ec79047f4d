"""Boundary with the workflow runtime hosting the workflow under test."""

from __future__ import annotations

import json
import socket
import subprocess
import time
from pathlib import Path
from typing import Any, Protocol
from urllib import error, parse, request

import structlog

from mock_dispatcher import MockDispatcher

from .config import EmulatorSettings
from .exceptions import RunHistoryError, TriggerError, WorkflowTestError
from .models import TriggerRequest, TriggerResponse, WorkflowRunStatus

LOGGER = structlog.get_logger("workflow_runner.host")

RUN_ID_HEADER = "x-ms-workflow-run-id"
CLIENT_TRACKING_ID_HEADER = "x-ms-client-tracking-id"


class WorkflowHost(Protocol):
    """What the test runner needs from a workflow runtime."""

    def attach(self, dispatcher: MockDispatcher) -> None: ...

    def invoke_trigger(self, trigger: TriggerRequest) -> TriggerResponse: ...

    def get_run_status(self, run_id: str) -> WorkflowRunStatus: ...

    def get_run_history(self, run_id: str) -> dict[str, Any]: ...


def _header(headers: dict[str, str], name: str) -> str | None:
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


class HttpWorkflowHost:
    """Talks to a locally running workflow emulator over HTTP.

    Endpoints, relative to ``base_url``::

        POST /workflows/{workflow}/triggers/{trigger}/invoke[/relative/path]
        GET  /workflows/{workflow}/runs/{run_id}
        GET  /workflows/{workflow}/runs/{run_id}/history

    The emulator routes the workflow's outbound calls to the mock host, so
    ``attach`` only keeps a reference to the dispatcher.
    """

    def __init__(self, settings: EmulatorSettings | None = None) -> None:
        self._settings = settings or EmulatorSettings()
        self._base_url = self._settings.base_url.rstrip("/")
        self._dispatcher: MockDispatcher | None = None
        self._logger = LOGGER.bind(base_url=self._base_url, workflow=self._settings.workflow_name)

    @property
    def dispatcher(self) -> MockDispatcher | None:
        return self._dispatcher

    def attach(self, dispatcher: MockDispatcher) -> None:
        self._dispatcher = dispatcher
        self._logger.debug("host_attached")

    def invoke_trigger(self, trigger: TriggerRequest) -> TriggerResponse:
        url = self._trigger_url(trigger)
        headers = {"Accept": "application/json"}
        headers.update(trigger.headers)
        req = request.Request(url, data=trigger.body, headers=headers, method=trigger.method.upper())
        self._logger.info("trigger_invoking", method=trigger.method.upper(), url=url)
        try:
            with request.urlopen(req, timeout=self._settings.request_timeout) as response:
                status = response.getcode()
                response_headers = dict(response.headers.items())
                body = response.read()
        except error.HTTPError as exc:
            status = exc.code
            response_headers = dict(exc.headers.items()) if exc.headers else {}
            body = exc.read()
        except (TimeoutError, error.URLError) as exc:
            if isinstance(exc, TimeoutError) or isinstance(exc.reason, TimeoutError):
                raise TriggerError(
                    f"The workflow trigger did not respond within {self._settings.request_timeout:g} seconds"
                ) from exc
            raise TriggerError(f"HTTP request failed for {trigger.method.upper()} {url}: {exc.reason}") from exc

        return TriggerResponse(
            status_code=status,
            headers=response_headers,
            body=body,
            run_id=_header(response_headers, RUN_ID_HEADER),
            client_tracking_id=_header(response_headers, CLIENT_TRACKING_ID_HEADER),
        )

    def get_run_status(self, run_id: str) -> WorkflowRunStatus:
        payload = self._get_json(f"{self._runs_url()}/{parse.quote(run_id)}")
        try:
            return WorkflowRunStatus(payload["status"])
        except (KeyError, TypeError, ValueError) as exc:
            raise RunHistoryError(f"Unexpected run status payload for run {run_id}: {payload!r}") from exc

    def get_run_history(self, run_id: str) -> dict[str, Any]:
        payload = self._get_json(f"{self._runs_url()}/{parse.quote(run_id)}/history")
        if not isinstance(payload, dict):
            raise RunHistoryError(f"Run history for run {run_id} must be a JSON object")
        return payload

    def _runs_url(self) -> str:
        return f"{self._base_url}/workflows/{parse.quote(self._settings.workflow_name)}/runs"

    def _trigger_url(self, trigger: TriggerRequest) -> str:
        url = (
            f"{self._base_url}/workflows/{parse.quote(self._settings.workflow_name)}"
            f"/triggers/{parse.quote(self._settings.trigger_name)}/invoke"
        )
        relative = trigger.relative_path.strip("/")
        if relative:
            url = f"{url}/{relative}"
        if trigger.query:
            url = f"{url}?{parse.urlencode(trigger.query)}"
        return url

    def _get_json(self, url: str) -> Any:
        req = request.Request(url, headers={"Accept": "application/json"}, method="GET")
        try:
            with request.urlopen(req, timeout=self._settings.request_timeout) as response:
                raw = response.read()
        except error.HTTPError as exc:
            raise RunHistoryError(f"GET {url} returned HTTP {exc.code}") from exc
        except (error.URLError, TimeoutError) as exc:
            raise WorkflowTestError(f"HTTP request failed for GET {url}: {exc}") from exc
        try:
            return json.loads(raw.decode("utf-8"))
        except json.JSONDecodeError as exc:
            raise RunHistoryError(f"GET {url} did not return JSON: {exc}") from exc


class EmulatorProcess:
    """Starts the workflow emulator as a child process and waits for its port."""

    def __init__(self, settings: EmulatorSettings, *, cwd: Path | None = None) -> None:
        if not settings.command:
            raise ValueError("An emulator command is required to start the workflow emulator")
        self._settings = settings
        self._cwd = cwd
        self._process: subprocess.Popen[bytes] | None = None
        parsed = parse.urlsplit(settings.base_url)
        self._host = parsed.hostname or "127.0.0.1"
        self._port = parsed.port or 80
        self._logger = LOGGER.bind(component="emulator", host=self._host, port=self._port)

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def start(self) -> None:
        if self.running:
            return
        self._logger.info("emulator_starting", command=" ".join(self._settings.command or []))
        self._process = subprocess.Popen(
            self._settings.command or [],
            cwd=self._cwd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        deadline = time.monotonic() + self._settings.startup_timeout
        while time.monotonic() < deadline:
            if self._process.poll() is not None:
                code = self._process.returncode
                self._process = None
                raise WorkflowTestError(f"The workflow emulator exited during startup with code {code}")
            if self._port_open():
                self._logger.info("emulator_started", pid=self._process.pid)
                return
            time.sleep(0.2)
        self.stop()
        raise WorkflowTestError(
            f"The workflow emulator did not listen on {self._host}:{self._port} "
            f"within {self._settings.startup_timeout:g} seconds"
        )

    def stop(self) -> None:
        if self._process is None:
            return
        self._logger.info("emulator_stopping", pid=self._process.pid)
        self._process.terminate()
        try:
            self._process.wait(timeout=10)
        except subprocess.TimeoutExpired:
            self._process.kill()
            self._process.wait(timeout=5)
        finally:
            self._process = None
        self._logger.info("emulator_stopped")

    def _port_open(self) -> bool:
        try:
            with socket.create_connection((self._host, self._port), timeout=0.5):
                return True
        except OSError:
            return False

    def __enter__(self) -> "EmulatorProcess":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
