"""Response plans and their per-call materialization."""

from __future__ import annotations

import json
import random
from dataclasses import dataclass, field
from datetime import timedelta
from http import HTTPStatus
from typing import Any, Callable, Union

from .exceptions import MockConfigurationError
from .models import CallContext, DispatchOutcome, MockResponse, TransportFailure

JSON_CONTENT_TYPE = "application/json"
TEXT_CONTENT_TYPE = "text/plain"
BINARY_CONTENT_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class StaticBody:
    content: bytes
    content_type: str | None = None


@dataclass(frozen=True)
class ComputedBody:
    """Body produced at materialization time from the call context."""

    supplier: Callable[[CallContext], Any]
    content_type: str | None = None


BodySource = Union[StaticBody, ComputedBody]


@dataclass(frozen=True)
class FixedDelay:
    seconds: float

    def resolve(self) -> float:
        return self.seconds


@dataclass(frozen=True)
class RandomDelay:
    minimum: float
    maximum: float

    def resolve(self) -> float:
        return random.uniform(self.minimum, self.maximum)


DelaySpec = Union[FixedDelay, RandomDelay]


def encode_content(value: Any, content_type: str | None = None) -> tuple[bytes, str | None]:
    """Serialize a body value and infer its content type when none is given."""

    if value is None:
        return b"", content_type
    if isinstance(value, (bytes, bytearray)):
        return bytes(value), content_type or BINARY_CONTENT_TYPE
    if isinstance(value, str):
        return value.encode("utf-8"), content_type or TEXT_CONTENT_TYPE
    return json.dumps(value).encode("utf-8"), content_type or JSON_CONTENT_TYPE


@dataclass(frozen=True)
class ResponsePlan:
    """How to synthesize the response for a matched call.

    A plan either describes an HTTP response (status, headers, optional body)
    or a transport failure. Both kinds may be delayed; a failure plan never
    carries headers or a body.
    """

    status_code: int = 200
    headers: dict[str, str] = field(default_factory=dict)
    body: BodySource | None = None
    delay: DelaySpec | None = None
    failure: BaseException | None = None

    def __post_init__(self) -> None:
        if self.failure is not None and (self.body is not None or self.headers):
            raise MockConfigurationError("A response plan that throws an exception cannot also return headers or content")
        if isinstance(self.delay, RandomDelay):
            if self.delay.minimum > self.delay.maximum:
                raise MockConfigurationError("The minimum delay must be less than or equal to the maximum delay")
            if self.delay.minimum < 0:
                raise MockConfigurationError("Delays cannot be negative")
        elif isinstance(self.delay, FixedDelay) and self.delay.seconds < 0:
            raise MockConfigurationError("Delays cannot be negative")

    def resolve_delay(self) -> float:
        return self.delay.resolve() if self.delay is not None else 0.0

    def materialize(self, context: CallContext, rule_name: str | None = None) -> DispatchOutcome:
        if self.failure is not None:
            return TransportFailure(error=self.failure, rule_name=rule_name)

        headers = dict(self.headers)
        content = b""
        content_type: str | None = None
        if isinstance(self.body, StaticBody):
            content, content_type = self.body.content, self.body.content_type
        elif isinstance(self.body, ComputedBody):
            content, content_type = encode_content(self.body.supplier(context), self.body.content_type)

        if content_type and not any(key.lower() == "content-type" for key in headers):
            headers["Content-Type"] = content_type
        return MockResponse(status_code=self.status_code, headers=headers, body=content)


def _seconds(value: float | timedelta) -> float:
    return value.total_seconds() if isinstance(value, timedelta) else float(value)


class ResponseBuilder:
    """Fluent builder producing a :class:`ResponsePlan`."""

    def __init__(self) -> None:
        self._status_code = int(HTTPStatus.OK)
        self._headers: dict[str, str] = {}
        self._body: BodySource | None = None
        self._delay: DelaySpec | None = None
        self._failure: BaseException | None = None

    @classmethod
    def create(cls) -> "ResponseBuilder":
        return cls()

    def with_success(self) -> "ResponseBuilder":
        return self.with_status_code(HTTPStatus.OK)

    def with_no_content(self) -> "ResponseBuilder":
        self._body = None
        return self.with_status_code(HTTPStatus.NO_CONTENT)

    def with_unauthorized(self) -> "ResponseBuilder":
        return self.with_status_code(HTTPStatus.UNAUTHORIZED)

    def with_not_found(self) -> "ResponseBuilder":
        return self.with_status_code(HTTPStatus.NOT_FOUND)

    def with_internal_server_error(self) -> "ResponseBuilder":
        return self.with_status_code(HTTPStatus.INTERNAL_SERVER_ERROR)

    def with_status_code(self, status_code: int | HTTPStatus) -> "ResponseBuilder":
        self._status_code = int(status_code)
        return self

    def with_header(self, name: str, value: str) -> "ResponseBuilder":
        self._headers[name] = value
        return self

    def with_delay(self, delay: float | timedelta) -> "ResponseBuilder":
        self._delay = FixedDelay(_seconds(delay))
        return self

    def with_random_delay(self, minimum: float | timedelta, maximum: float | timedelta) -> "ResponseBuilder":
        low, high = _seconds(minimum), _seconds(maximum)
        if low > high:
            raise MockConfigurationError("The minimum delay must be less than or equal to the maximum delay")
        self._delay = RandomDelay(low, high)
        return self

    def with_content(self, supplier: Callable[[CallContext], Any], content_type: str | None = None) -> "ResponseBuilder":
        self._body = ComputedBody(supplier, content_type)
        return self

    def with_content_as_json(self, value: Any) -> "ResponseBuilder":
        content, content_type = encode_content(value, JSON_CONTENT_TYPE)
        self._body = StaticBody(content, content_type)
        return self

    def with_content_as_plain_text(self, value: str) -> "ResponseBuilder":
        self._body = StaticBody(value.encode("utf-8"), TEXT_CONTENT_TYPE)
        return self

    def with_content_as_bytes(self, value: bytes, content_type: str = BINARY_CONTENT_TYPE) -> "ResponseBuilder":
        self._body = StaticBody(bytes(value), content_type)
        return self

    def throws_exception(self, error: BaseException) -> "ResponseBuilder":
        self._failure = error
        return self

    def build(self) -> ResponsePlan:
        return ResponsePlan(
            status_code=self._status_code,
            headers=dict(self._headers),
            body=self._body,
            delay=self._delay,
            failure=self._failure,
        )
