"""HTTP host that routes every request it receives through a MockDispatcher."""

from __future__ import annotations

import json
import socketserver
import threading
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any

import structlog

from .dispatcher import MockDispatcher
from .models import MockRequest, TransportFailure

LOGGER = structlog.get_logger("mock_dispatcher.host")


class ThreadedHTTPServer(socketserver.ThreadingMixIn, HTTPServer):
    daemon_threads = True


class MockHttpHost:
    """Runs a threaded HTTP server whose responses come from the dispatcher.

    Use port 0 to bind an ephemeral port; ``base_url`` reflects the port that
    was actually bound once the host is started. A simulated transport
    failure closes the connection without sending any response.
    """

    def __init__(self, dispatcher: MockDispatcher, host: str = "127.0.0.1", port: int = 0) -> None:
        self._dispatcher = dispatcher
        self._host = host
        self._port = port
        self._httpd: ThreadedHTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._logger = LOGGER.bind(component="mock_host")

    @property
    def address(self) -> tuple[str, int]:
        if self._httpd is None:
            return self._host, self._port
        host, port = self._httpd.server_address[:2]
        return str(host), int(port)

    @property
    def base_url(self) -> str:
        host, port = self.address
        return f"http://{host}:{port}"

    def start(self) -> None:
        if self._httpd is not None:
            return
        self._logger.info("mock_host_starting", host=self._host, port=self._port)
        httpd = ThreadedHTTPServer((self._host, self._port), self._build_handler_factory())
        self._httpd = httpd
        self._thread = threading.Thread(target=httpd.serve_forever, daemon=True)
        self._thread.start()
        self._logger = self._logger.bind(host=self.address[0], port=self.address[1])
        self._logger.info("mock_host_started")

    def stop(self) -> None:
        if not self._httpd:
            return
        self._logger.info("mock_host_stopping")
        try:
            self._httpd.shutdown()
            self._httpd.server_close()
        finally:
            if self._thread:
                self._thread.join(timeout=2)
            self._httpd = None
            self._thread = None
        self._logger.info("mock_host_stopped")

    def __enter__(self) -> "MockHttpHost":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def _build_handler_factory(self) -> type[BaseHTTPRequestHandler]:
        dispatcher = self._dispatcher
        handler_logger = self._logger

        class Handler(BaseHTTPRequestHandler):
            protocol_version = "HTTP/1.1"

            def log_message(self, format: str, *args: Any) -> None:  # pragma: no cover - avoid stdout
                handler_logger.debug("http_trace", client_ip=self.client_address[0], message=format % args)

            def do_GET(self) -> None:  # noqa: N802 (BaseHTTPRequestHandler requirement)
                self._handle()

            def do_POST(self) -> None:  # noqa: N802
                self._handle()

            def do_PUT(self) -> None:  # noqa: N802
                self._handle()

            def do_DELETE(self) -> None:  # noqa: N802
                self._handle()

            def do_PATCH(self) -> None:  # noqa: N802
                self._handle()

            def do_HEAD(self) -> None:  # noqa: N802
                self._handle(head_only=True)

            def do_OPTIONS(self) -> None:  # noqa: N802
                self._handle()

            def _handle(self, *, head_only: bool = False) -> None:
                host, port = self.server.server_address[:2]
                request = MockRequest(
                    method=self.command,
                    url=f"http://{self.headers.get('Host') or f'{host}:{port}'}{self.path}",
                    headers={key: value for key, value in self.headers.items()},
                    body=self.rfile.read(int(self.headers.get("Content-Length", 0) or 0)),
                )
                request_logger = handler_logger.bind(method=request.method, path=request.path)
                request_logger.debug("request_received", content_length=len(request.body))
                try:
                    outcome = dispatcher.dispatch(request)
                except Exception:
                    request_logger.exception("request_failed")
                    self._respond_error(HTTPStatus.INTERNAL_SERVER_ERROR, "mock failure", head_only=head_only)
                    return

                if isinstance(outcome, TransportFailure):
                    request_logger.info("request_aborted", error=repr(outcome.error))
                    self.close_connection = True
                    return

                self.send_response(outcome.status_code)
                for key, value in outcome.headers.items():
                    if key.lower() != "content-length":
                        self.send_header(key, value)
                self.send_header("Content-Length", str(len(outcome.body)))
                self.end_headers()
                if not head_only:
                    self.wfile.write(outcome.body)
                request_logger.info("request_served", status=outcome.status_code)

            def _respond_error(self, status: HTTPStatus, message: str, *, head_only: bool = False) -> None:
                body = json.dumps({"error": message}).encode("utf-8")
                self.send_response(status)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                if not head_only:
                    self.wfile.write(body)

        return Handler
