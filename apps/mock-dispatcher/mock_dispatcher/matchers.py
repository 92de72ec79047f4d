"""Request predicates, match rules and the fluent matcher builder."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from .exceptions import MockConfigurationError
from .models import MockRequest
from .responses import ResponsePlan

ACTION_NAME_HEADER = "x-ms-workflow-operation-name"


class PathMatchType(str, Enum):
    EXACT = "exact"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    CONTAINS = "contains"
    REGEX = "regex"


@dataclass(frozen=True)
class PathMatcher:
    kind: PathMatchType
    pattern: str

    def matches(self, path: str) -> bool:
        if self.kind is PathMatchType.EXACT:
            return path == self.pattern
        if self.kind is PathMatchType.STARTS_WITH:
            return path.startswith(self.pattern)
        if self.kind is PathMatchType.ENDS_WITH:
            return path.endswith(self.pattern)
        if self.kind is PathMatchType.CONTAINS:
            return self.pattern in path
        return re.search(self.pattern, path) is not None

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.pattern}"


@dataclass(frozen=True)
class MatchResult:
    is_match: bool
    reason: str = ""


MATCHED = MatchResult(True)


@dataclass(frozen=True)
class RequestPredicate:
    """Static criteria for an outbound call, excluding any call-count filter.

    Instances are immutable and compare structurally. Rules whose predicates
    are equal form one predicate group and share one call counter. Body
    predicates are callables, so they only compare equal when they are the
    same object.
    """

    methods: frozenset[str] = frozenset()
    paths: tuple[PathMatcher, ...] = ()
    headers: tuple[tuple[str, str | None], ...] = ()
    query_params: tuple[tuple[str, str | None], ...] = ()
    content_type: str | None = None
    action_names: frozenset[str] = frozenset()
    text_predicate: Callable[[str], bool] | None = None
    json_predicate: Callable[[Any], bool] | None = None

    def evaluate(self, request: MockRequest) -> MatchResult:
        # Methods, paths and action names are OR lists; headers and query params are AND.
        if self.methods and request.method not in self.methods:
            return MatchResult(
                False,
                f"request method '{request.method}' is not one of {', '.join(sorted(self.methods))}",
            )

        if self.action_names:
            action = request.header(ACTION_NAME_HEADER)
            if action is None:
                return MatchResult(False, f"request has no '{ACTION_NAME_HEADER}' header")
            if action not in self.action_names:
                return MatchResult(False, f"action name '{action}' is not matched")

        if self.paths and not any(matcher.matches(request.path) for matcher in self.paths):
            return MatchResult(False, f"request path '{request.path}' is not matched")

        for name, expected in self.headers:
            actual = request.header(name)
            if actual is None:
                return MatchResult(False, f"request does not contain a header named '{name}'")
            if expected is not None and actual != expected:
                return MatchResult(False, f"header '{name}' has value '{actual}', expected '{expected}'")

        if self.query_params:
            query = request.query
            for name, expected in self.query_params:
                if name not in query:
                    return MatchResult(False, f"request does not contain a query parameter named '{name}'")
                if expected is not None and query[name] != expected:
                    return MatchResult(
                        False, f"query parameter '{name}' has value '{query[name]}', expected '{expected}'"
                    )

        if self.content_type is not None and request.content_type != self.content_type:
            return MatchResult(
                False, f"content type '{request.content_type}' is not matched with '{self.content_type}'"
            )

        if self.text_predicate is not None:
            result = _run_content_predicate(self.text_predicate, request.text)
            if not result.is_match:
                return result
        if self.json_predicate is not None:
            try:
                payload = request.json
            except ValueError:
                return MatchResult(False, "request content is not valid JSON")
            result = _run_content_predicate(self.json_predicate, payload)
            if not result.is_match:
                return result

        return MATCHED

    def describe(self) -> str:
        methods = "|".join(sorted(self.methods)) or "*"
        paths = "|".join(str(matcher) for matcher in self.paths) or "*"
        return f"{methods} {paths}"


def _run_content_predicate(predicate: Callable[[Any], bool], content: Any) -> MatchResult:
    # A predicate written for one body shape must not break dispatch of another.
    try:
        matched = predicate(content)
    except Exception as exc:
        return MatchResult(False, f"request content predicate raised {exc!r}")
    return MATCHED if matched else MatchResult(False, "request content is not matched")


def _positions(values: frozenset[int] | None, label: str) -> None:
    if values is None:
        return
    if not values:
        raise MockConfigurationError(f"{label} must list at least one call number")
    for value in values:
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise MockConfigurationError(f"{label} must contain positive integers, got {value!r}")


@dataclass(frozen=True)
class MatchRule:
    """A base predicate, an optional count filter and the bound response plan."""

    predicate: RequestPredicate
    plan: ResponsePlan
    exact_positions: frozenset[int] | None = None
    excluded_positions: frozenset[int] | None = None
    name: str | None = None

    def __post_init__(self) -> None:
        if self.exact_positions is not None and self.excluded_positions is not None:
            raise MockConfigurationError(
                f"Rule {self.label} sets both a match count and a not-match count filter"
            )
        _positions(self.exact_positions, "Match count filter")
        _positions(self.excluded_positions, "Not-match count filter")

    @property
    def label(self) -> str:
        return f"'{self.name}'" if self.name else f"[{self.predicate.describe()}]"

    def accepts_count(self, count: int) -> MatchResult:
        if self.exact_positions is not None and count not in self.exact_positions:
            wanted = ", ".join(str(value) for value in sorted(self.exact_positions))
            return MatchResult(False, f"call number {count} is not matched with {wanted}")
        if self.excluded_positions is not None and count in self.excluded_positions:
            excluded = ", ".join(str(value) for value in sorted(self.excluded_positions))
            return MatchResult(False, f"call number {count} is excluded by NOT {excluded}")
        return MATCHED


class RequestMatcher:
    """Fluent builder for a base predicate plus an optional count filter."""

    def __init__(self) -> None:
        self._methods: list[str] = []
        self._paths: list[PathMatcher] = []
        self._headers: dict[str, str | None] = {}
        self._query_params: dict[str, str | None] = {}
        self._content_type: str | None = None
        self._action_names: list[str] = []
        self._text_predicate: Callable[[str], bool] | None = None
        self._json_predicate: Callable[[Any], bool] | None = None
        self._match_counts: set[int] | None = None
        self._not_match_counts: set[int] | None = None

    @classmethod
    def create(cls) -> "RequestMatcher":
        return cls()

    def using_any_method(self) -> "RequestMatcher":
        self._methods.clear()
        return self

    def using_get(self) -> "RequestMatcher":
        return self.using_method("GET")

    def using_post(self) -> "RequestMatcher":
        return self.using_method("POST")

    def using_put(self) -> "RequestMatcher":
        return self.using_method("PUT")

    def using_patch(self) -> "RequestMatcher":
        return self.using_method("PATCH")

    def using_delete(self) -> "RequestMatcher":
        return self.using_method("DELETE")

    def using_method(self, *methods: str) -> "RequestMatcher":
        if not methods:
            raise MockConfigurationError("using_method() needs at least one method")
        for method in methods:
            normalized = method.upper()
            if normalized not in self._methods:
                self._methods.append(normalized)
        return self

    def with_path(self, match_type: PathMatchType, *paths: str) -> "RequestMatcher":
        if not paths:
            raise MockConfigurationError("with_path() needs at least one path")
        for path in paths:
            if match_type is PathMatchType.REGEX:
                try:
                    re.compile(path)
                except re.error as exc:
                    raise MockConfigurationError(f"Invalid path pattern {path!r}: {exc}") from exc
            self._paths.append(PathMatcher(match_type, path))
        return self

    def with_header(self, name: str, value: str | None = None) -> "RequestMatcher":
        if not name:
            raise MockConfigurationError("Header name cannot be empty")
        self._headers[name.lower()] = value
        return self

    def with_query_param(self, name: str, value: str | None = None) -> "RequestMatcher":
        if not name:
            raise MockConfigurationError("Query parameter name cannot be empty")
        self._query_params[name] = value
        return self

    def with_content_type(self, content_type: str) -> "RequestMatcher":
        if not content_type:
            raise MockConfigurationError("Content type cannot be empty")
        self._content_type = content_type
        return self

    def with_content_as_string(self, predicate: Callable[[str], bool]) -> "RequestMatcher":
        self._text_predicate = predicate
        return self

    def with_content_as_json(self, predicate: Callable[[Any], bool]) -> "RequestMatcher":
        self._json_predicate = predicate
        return self

    def from_action(self, *action_names: str) -> "RequestMatcher":
        if not action_names:
            raise MockConfigurationError("from_action() needs at least one action name")
        for action_name in action_names:
            if action_name not in self._action_names:
                self._action_names.append(action_name)
        return self

    def with_match_count(self, *counts: int) -> "RequestMatcher":
        if not counts:
            raise MockConfigurationError("with_match_count() needs at least one call number")
        self._match_counts = (self._match_counts or set()) | set(counts)
        return self

    def with_not_match_count(self, *counts: int) -> "RequestMatcher":
        if not counts:
            raise MockConfigurationError("with_not_match_count() needs at least one call number")
        self._not_match_counts = (self._not_match_counts or set()) | set(counts)
        return self

    def build_predicate(self) -> RequestPredicate:
        return RequestPredicate(
            methods=frozenset(self._methods),
            paths=tuple(self._paths),
            headers=tuple(sorted(self._headers.items())),
            query_params=tuple(sorted(self._query_params.items())),
            content_type=self._content_type,
            action_names=frozenset(self._action_names),
            text_predicate=self._text_predicate,
            json_predicate=self._json_predicate,
        )

    def build_rule(self, plan: ResponsePlan, name: str | None = None) -> MatchRule:
        return MatchRule(
            predicate=self.build_predicate(),
            plan=plan,
            exact_positions=frozenset(self._match_counts) if self._match_counts is not None else None,
            excluded_positions=(
                frozenset(self._not_match_counts) if self._not_match_counts is not None else None
            ),
            name=name,
        )

