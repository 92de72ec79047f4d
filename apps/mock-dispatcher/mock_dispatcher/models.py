"""Request/response value types exchanged with the mock dispatcher."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Union
from urllib.parse import parse_qsl, urlsplit

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .matchers import MatchRule
    from .responses import ResponsePlan


@dataclass(frozen=True)
class MockRequest:
    """Snapshot of one outbound call made by the workflow under test."""

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def __post_init__(self) -> None:
        object.__setattr__(self, "method", self.method.upper())
        object.__setattr__(self, "headers", dict(self.headers))

    @property
    def path(self) -> str:
        return urlsplit(self.url).path or "/"

    @property
    def query(self) -> dict[str, str]:
        return dict(parse_qsl(urlsplit(self.url).query, keep_blank_values=True))

    @property
    def content_type(self) -> str | None:
        return self.header("Content-Type")

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    @property
    def json(self) -> Any:
        if not self.body:
            return None
        return json.loads(self.text)

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""

        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None


@dataclass(frozen=True)
class MockResponse:
    """Materialized HTTP response handed back to the workflow runtime."""

    status_code: int = 200
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.text) if self.body else None


@dataclass(frozen=True)
class TransportFailure:
    """Dispatch outcome signalling that the call must fail below HTTP."""

    error: BaseException
    rule_name: str | None = None


DispatchOutcome = Union[MockResponse, TransportFailure]


@dataclass(frozen=True)
class RecordedCall:
    """Entry of the append-only call log.

    ``outcome`` is empty while the response is being resolved and holds the
    response or transport failure handed back to the caller afterwards.
    """

    sequence: int
    request: MockRequest
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    match_count: int | None = None
    rule: "MatchRule | None" = None
    plan: "ResponsePlan | None" = None
    matching_log: tuple[str, ...] = ()
    outcome: "MockResponse | TransportFailure | None" = None

    @property
    def rule_name(self) -> str | None:
        return self.rule.name if self.rule is not None else None

    @property
    def used_fallback(self) -> bool:
        return self.rule is None


@dataclass(frozen=True)
class CallContext:
    """Inputs available to a computed response body."""

    request: MockRequest
    match_count: int | None
    calls: tuple[RecordedCall, ...]

    @property
    def previous_calls(self) -> tuple[RecordedCall, ...]:
        return self.calls[:-1]
