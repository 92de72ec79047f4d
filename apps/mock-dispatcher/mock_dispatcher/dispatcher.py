"""Mock dispatch engine resolving every intercepted outbound call."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Union

import structlog

from .exceptions import MockConfigurationError, SimulatedTransportError
from .matchers import MatchRule, RequestMatcher, RequestPredicate
from .models import CallContext, DispatchOutcome, MockRequest, MockResponse, RecordedCall, TransportFailure
from .responses import ResponseBuilder, ResponsePlan

LOGGER = structlog.get_logger("mock_dispatcher")

FallbackResolver = Callable[[MockRequest], Union[MockResponse, ResponsePlan, None]]


@dataclass
class _PredicateGroup:
    """Rules sharing one base predicate, and the call counter they share."""

    predicate: RequestPredicate
    rules: list[MatchRule] = field(default_factory=list)
    count: int = 0


class PendingRule:
    """Slot reserved by ``add_mock_response`` until a response is attached."""

    def __init__(self, dispatcher: "MockDispatcher", slot: int, matcher: RequestMatcher, name: str | None) -> None:
        self._dispatcher = dispatcher
        self._slot = slot
        self._matcher = matcher
        self._name = name

    def respond_with(self, response: ResponseBuilder | ResponsePlan) -> MatchRule:
        plan = response.build() if isinstance(response, ResponseBuilder) else response
        rule = self._matcher.build_rule(plan, name=self._name)
        self._dispatcher._fill_slot(self._slot, rule)
        return rule

    def respond_with_default(self) -> MatchRule:
        """Respond with 200 (OK) and no content."""

        return self.respond_with(ResponseBuilder.create())


class MockDispatcher:
    """Ordered rule list plus per-predicate call counters and the call log.

    Rules may only be registered before the run starts. ``dispatch`` is safe
    to call from many threads: counter increments and log appends happen in a
    single critical section, and delays are served outside of it.
    """

    def __init__(self, *, default_status_code: int = 200, write_matching_logs: bool = False) -> None:
        self._default_status_code = default_status_code
        self._write_matching_logs = write_matching_logs
        self._lock = threading.Lock()
        self._slots: list[MatchRule | None] = []
        self._names: set[str] = set()
        self._groups: list[_PredicateGroup] = []
        self._fallback: FallbackResolver | None = None
        self._calls: list[RecordedCall] = []
        self._started = False
        self._logger = LOGGER.bind(component="dispatcher")

    # Configuration -----------------------------------------------------

    def add_mock_response(self, matcher: RequestMatcher, name: str | None = None) -> PendingRule:
        with self._lock:
            self._ensure_configurable()
            self._claim_name(name)
            self._slots.append(None)
            slot = len(self._slots) - 1
        return PendingRule(self, slot, matcher, name)

    def register_rule(self, rule: MatchRule) -> MatchRule:
        with self._lock:
            self._ensure_configurable()
            self._claim_name(rule.name)
            self._slots.append(rule)
        self._logger.debug("mock_rule_registered", rule=rule.label, position=len(self._slots))
        return rule

    def use_fallback(self, resolver: FallbackResolver | None) -> None:
        with self._lock:
            self._ensure_configurable()
            self._fallback = resolver

    @property
    def rules(self) -> tuple[MatchRule, ...]:
        with self._lock:
            return tuple(rule for rule in self._slots if rule is not None)

    def _fill_slot(self, slot: int, rule: MatchRule) -> None:
        with self._lock:
            self._ensure_configurable()
            self._slots[slot] = rule
        self._logger.debug("mock_rule_registered", rule=rule.label, position=slot + 1)

    def _claim_name(self, name: str | None) -> None:
        if not name:
            return
        if name in self._names:
            raise MockConfigurationError(f"A mock response with the name '{name}' already exists")
        self._names.add(name)

    def _ensure_configurable(self) -> None:
        if self._started:
            raise MockConfigurationError("Mock rules cannot be changed once the workflow run has started")

    # Run lifecycle -----------------------------------------------------

    def start_run(self) -> None:
        """Freeze the rule list and build the predicate groups."""

        with self._lock:
            if self._started:
                return
            self._start_locked()
        self._logger.info("mock_run_started", rules=len(self._slots), groups=len(self._groups))

    def _start_locked(self) -> None:
        missing = [index + 1 for index, rule in enumerate(self._slots) if rule is None]
        if missing:
            raise MockConfigurationError(
                "A response has not been configured for mock rule(s) "
                f"{', '.join(str(index) for index in missing)} - use respond_with() or respond_with_default()"
            )
        groups: dict[RequestPredicate, _PredicateGroup] = {}
        for rule in [rule for rule in self._slots if rule is not None]:
            group = groups.get(rule.predicate)
            if group is None:
                group = groups[rule.predicate] = _PredicateGroup(rule.predicate)
            group.rules.append(rule)
        self._groups = list(groups.values())
        self._started = True

    def complete_run(self) -> tuple[RecordedCall, ...]:
        """Log the mocked requests of the finished run and return them."""

        calls = self.calls
        if not calls:
            self._logger.info("mock_requests_summary", count=0)
            return calls
        self._logger.info("mock_requests_summary", count=len(calls))
        for call in calls:
            self._logger.info(
                "mock_request_logged",
                sequence=call.sequence,
                timestamp=call.timestamp.isoformat(),
                method=call.request.method,
                url=call.request.url,
                rule=call.rule.label if call.rule else None,
                match_count=call.match_count,
            )
            if self._write_matching_logs:
                for line in call.matching_log:
                    self._logger.info("mock_request_matching", sequence=call.sequence, detail=line)
        return calls

    def reset(self) -> None:
        with self._lock:
            self._slots.clear()
            self._names.clear()
            self._groups = []
            self._fallback = None
            self._calls.clear()
            self._started = False
        self._logger.debug("mock_dispatcher_reset")

    @property
    def calls(self) -> tuple[RecordedCall, ...]:
        with self._lock:
            return tuple(self._calls)

    def call_count(self, predicate: RequestPredicate | RequestMatcher) -> int:
        """Current counter value of the predicate group, 0 when unknown."""

        key = predicate.build_predicate() if isinstance(predicate, RequestMatcher) else predicate
        with self._lock:
            for group in self._groups:
                if group.predicate == key:
                    return group.count
        return 0

    # Dispatch ----------------------------------------------------------

    def dispatch(self, request: MockRequest) -> DispatchOutcome:
        """Resolve one intercepted call to a response or a transport failure."""

        with self._lock:
            if not self._started:
                self._start_locked()
            groups = self._groups
            fallback = self._fallback

        logger = self._logger.bind(method=request.method, path=request.path)
        # The rule list is frozen, so predicates are evaluated without the lock.
        evaluations = [(group, group.predicate.evaluate(request)) for group in groups]

        matching_log: list[str] = [f"Checking {sum(len(group.rules) for group in groups)} mock request matchers:"]
        with self._lock:
            family: _PredicateGroup | None = None
            for group, result in evaluations:
                if not result.is_match:
                    matching_log.append(f"  [{group.predicate.describe()}] not matched - {result.reason}")
                    continue
                group.count += 1
                if family is None:
                    family = group

            match_count = family.count if family is not None else None
            selected: MatchRule | None = None
            if family is not None:
                for rule in family.rules:
                    accepted = rule.accepts_count(family.count)
                    if accepted.is_match:
                        matching_log.append(f"  {rule.label} matched on call {family.count}")
                        selected = rule
                        break
                    matching_log.append(f"  {rule.label} not matched - {accepted.reason}")
            if selected is None:
                matching_log.append("  no rule matched, using the fallback response")

            record = RecordedCall(
                sequence=len(self._calls) + 1,
                request=request,
                match_count=match_count,
                rule=selected,
                plan=selected.plan if selected is not None else None,
                matching_log=tuple(matching_log),
            )
            self._calls.append(record)
            context = CallContext(request=request, match_count=match_count, calls=tuple(self._calls))

        logger = logger.bind(sequence=record.sequence, match_count=match_count)
        if self._write_matching_logs:
            for line in matching_log:
                logger.info("mock_rule_checked", detail=line)

        if selected is None:
            logger.info("mock_request_fallback")
            outcome = self._resolve_fallback(fallback, context)
        else:
            logger.info("mock_rule_matched", rule=selected.label)
            outcome = self._materialize(selected.plan, context, selected.name, logger)
        self._record_outcome(record, outcome)
        return outcome

    def _record_outcome(self, record: RecordedCall, outcome: DispatchOutcome) -> None:
        with self._lock:
            index = record.sequence - 1
            # A reset while the response was being resolved discards the entry.
            if index < len(self._calls) and self._calls[index] is record:
                self._calls[index] = replace(record, outcome=outcome)

    def intercept(self, request: MockRequest) -> MockResponse:
        """Dispatch and raise :class:`SimulatedTransportError` for injected failures."""

        outcome = self.dispatch(request)
        if isinstance(outcome, TransportFailure):
            raise SimulatedTransportError(outcome.error, rule_name=outcome.rule_name) from outcome.error
        return outcome

    def _resolve_fallback(self, fallback: FallbackResolver | None, context: CallContext) -> DispatchOutcome:
        if fallback is None:
            return MockResponse(status_code=self._default_status_code)
        resolved = fallback(context.request)
        if resolved is None:
            return MockResponse(status_code=self._default_status_code)
        if isinstance(resolved, ResponsePlan):
            return self._materialize(resolved, context, None, self._logger)
        return resolved

    @staticmethod
    def _materialize(
        plan: ResponsePlan,
        context: CallContext,
        rule_name: str | None,
        logger: structlog.stdlib.BoundLogger,
    ) -> DispatchOutcome:
        delay = plan.resolve_delay()
        if delay > 0:
            logger.debug("mock_delay_applied", seconds=round(delay, 3))
            time.sleep(delay)
        outcome = plan.materialize(context, rule_name)
        if isinstance(outcome, TransportFailure):
            logger.warning("mock_transport_failure", error=repr(outcome.error))
        return outcome
