"""Errors raised by the mock dispatch engine."""

from __future__ import annotations


class MockConfigurationError(ValueError):
    """A mock rule or response plan was configured inconsistently."""


class SimulatedTransportError(ConnectionError):
    """Transport-level failure injected by a response plan.

    Raised out of ``MockDispatcher.intercept`` so callers experience it the
    same way they would a refused or reset network connection.
    """

    def __init__(self, cause: BaseException, *, rule_name: str | None = None) -> None:
        super().__init__(str(cause))
        self.cause = cause
        self.rule_name = rule_name
