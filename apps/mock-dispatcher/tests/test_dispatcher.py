from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from mock_dispatcher.dispatcher import MockDispatcher
from mock_dispatcher.exceptions import MockConfigurationError, SimulatedTransportError
from mock_dispatcher.matchers import PathMatchType, RequestMatcher
from mock_dispatcher.models import MockRequest, MockResponse, TransportFailure
from mock_dispatcher.responses import ResponseBuilder


def _post_x() -> RequestMatcher:
    return RequestMatcher.create().using_post().with_path(PathMatchType.EXACT, "/x")


def _call(dispatcher: MockDispatcher, method: str = "POST", path: str = "/x", body: bytes = b"") -> MockResponse:
    return dispatcher.intercept(MockRequest(method, f"http://mock{path}", body=body))


def test_nth_call_behaves_specially() -> None:
    dispatcher = MockDispatcher()
    dispatcher.add_mock_response(_post_x().with_match_count(4), "fourth").respond_with(
        ResponseBuilder.create().with_internal_server_error()
    )
    dispatcher.add_mock_response(_post_x(), "others").respond_with_default()

    statuses = [_call(dispatcher).status_code for _ in range(5)]

    assert statuses == [200, 200, 200, 500, 200]
    assert [call.match_count for call in dispatcher.calls] == [1, 2, 3, 4, 5]
    assert [call.rule_name for call in dispatcher.calls] == ["others", "others", "others", "fourth", "others"]


def test_excluded_positions_fall_through_to_default() -> None:
    dispatcher = MockDispatcher()
    dispatcher.add_mock_response(_post_x().with_not_match_count(1, 4, 5)).respond_with(
        ResponseBuilder.create().with_content_as_plain_text("served")
    )

    responses = [_call(dispatcher) for _ in range(6)]

    assert [response.text for response in responses] == ["", "served", "served", "", "", "served"]
    assert [call.used_fallback for call in dispatcher.calls] == [True, False, False, True, True, False]
    assert dispatcher.call_count(_post_x()) == 6


def test_fallback_resolver_and_default_status() -> None:
    dispatcher = MockDispatcher(default_status_code=404)
    dispatcher.add_mock_response(_post_x().with_match_count(1)).respond_with_default()
    dispatcher.use_fallback(
        lambda request: ResponseBuilder.create().with_content_as_plain_text(request.path).build()
        if request.path == "/fallback"
        else None
    )

    assert _call(dispatcher).status_code == 200
    assert _call(dispatcher).status_code == 404
    assert _call(dispatcher, "GET", "/fallback").text == "/fallback"
    assert _call(dispatcher, "GET", "/unknown").status_code == 404


def test_counter_increments_for_every_matching_family() -> None:
    dispatcher = MockDispatcher()
    any_post = RequestMatcher.create().using_post()
    dispatcher.add_mock_response(_post_x().with_match_count(99)).respond_with_default()
    dispatcher.add_mock_response(any_post).respond_with(ResponseBuilder.create().with_status_code(202))

    # The first family matches but has no applicable rule, so the call falls through.
    assert _call(dispatcher).status_code == 200
    assert dispatcher.call_count(_post_x()) == 1
    assert dispatcher.call_count(any_post) == 1
    assert _call(dispatcher, path="/y").status_code == 202
    assert dispatcher.call_count(any_post) == 2


def test_raising_content_predicate_does_not_match() -> None:
    dispatcher = MockDispatcher()
    dispatcher.add_mock_response(_post_x().with_content_as_json(lambda payload: payload["type"] == "a")).respond_with(
        ResponseBuilder.create().with_status_code(201)
    )
    dispatcher.add_mock_response(RequestMatcher.create().using_post()).respond_with(
        ResponseBuilder.create().with_status_code(202)
    )

    assert _call(dispatcher, body=b'{"other": 1}').status_code == 202
    assert _call(dispatcher, body=b'{"type": "a"}').status_code == 201
    assert len(dispatcher.calls) == 2
    assert any("raised KeyError" in line for line in dispatcher.calls[0].matching_log)


def test_computed_content_sees_previous_calls() -> None:
    dispatcher = MockDispatcher()
    dispatcher.add_mock_response(_post_x()).respond_with(
        ResponseBuilder.create().with_content(
            lambda context: b"".join(call.request.body for call in context.calls), "application/octet-stream"
        )
    )

    _call(dispatcher, body=b"abc")
    response = _call(dispatcher, body=b"def")

    assert response.body == b"abcdef"
    assert response.headers["Content-Type"] == "application/octet-stream"


def test_transport_failure_is_tagged_and_raised() -> None:
    dispatcher = MockDispatcher()
    error = ConnectionRefusedError("refused")
    dispatcher.add_mock_response(_post_x(), "broken").respond_with(ResponseBuilder.create().throws_exception(error))

    outcome = dispatcher.dispatch(MockRequest("POST", "http://mock/x"))
    assert isinstance(outcome, TransportFailure)
    assert outcome.error is error

    with pytest.raises(SimulatedTransportError) as excinfo:
        _call(dispatcher)
    assert excinfo.value.cause is error
    assert excinfo.value.rule_name == "broken"
    assert len(dispatcher.calls) == 2
    assert all(call.outcome.error is error for call in dispatcher.calls)


def test_call_log_records_the_materialized_outcome() -> None:
    dispatcher = MockDispatcher(default_status_code=404)
    dispatcher.add_mock_response(_post_x()).respond_with(
        ResponseBuilder.create().with_content(lambda context: str(context.match_count).encode(), "text/plain")
    )

    _call(dispatcher)
    _call(dispatcher)
    _call(dispatcher, "GET", "/other")

    outcomes = [call.outcome for call in dispatcher.calls]
    assert [outcome.body for outcome in outcomes[:2]] == [b"1", b"2"]
    assert outcomes[2].status_code == 404


def test_rules_are_frozen_once_the_run_starts() -> None:
    dispatcher = MockDispatcher()
    dispatcher.add_mock_response(_post_x()).respond_with_default()
    dispatcher.start_run()

    with pytest.raises(MockConfigurationError):
        dispatcher.add_mock_response(_post_x())
    with pytest.raises(MockConfigurationError):
        dispatcher.use_fallback(None)


def test_pending_rule_without_response_fails_at_start() -> None:
    dispatcher = MockDispatcher()
    dispatcher.add_mock_response(_post_x())

    with pytest.raises(MockConfigurationError, match="respond_with"):
        dispatcher.start_run()


def test_duplicate_rule_names_are_rejected() -> None:
    dispatcher = MockDispatcher()
    dispatcher.add_mock_response(_post_x(), "same").respond_with_default()

    with pytest.raises(MockConfigurationError):
        dispatcher.add_mock_response(_post_x(), "same")


def test_reset_discards_all_state() -> None:
    dispatcher = MockDispatcher()
    dispatcher.add_mock_response(_post_x().with_match_count(1)).respond_with(
        ResponseBuilder.create().with_not_found()
    )
    assert _call(dispatcher).status_code == 404

    dispatcher.reset()
    dispatcher.add_mock_response(_post_x().with_match_count(1)).respond_with(
        ResponseBuilder.create().with_unauthorized()
    )

    assert dispatcher.calls == ()
    assert _call(dispatcher).status_code == 401
    assert dispatcher.calls[0].match_count == 1


def test_concurrent_calls_get_distinct_gap_free_counts() -> None:
    dispatcher = MockDispatcher()
    dispatcher.add_mock_response(_post_x()).respond_with(
        ResponseBuilder.create().with_content(lambda context: str(context.match_count))
    )

    with ThreadPoolExecutor(max_workers=16) as pool:
        responses = list(pool.map(lambda _: _call(dispatcher), range(200)))

    counts = sorted(int(response.text) for response in responses)
    assert counts == list(range(1, 201))
    assert [call.sequence for call in dispatcher.calls] == list(range(1, 201))
    assert [call.match_count for call in dispatcher.calls] == list(range(1, 201))


def test_delays_do_not_block_other_calls() -> None:
    dispatcher = MockDispatcher()
    slow = RequestMatcher.create().with_path(PathMatchType.EXACT, "/slow")
    dispatcher.add_mock_response(slow).respond_with(
        ResponseBuilder.create().with_random_delay(0.4, 0.5).with_content(lambda context: str(context.match_count))
    )
    dispatcher.add_mock_response(RequestMatcher.create().with_path(PathMatchType.EXACT, "/fast")).respond_with(
        ResponseBuilder.create().with_content_as_plain_text("fast")
    )

    barrier = threading.Barrier(2)

    def slow_call() -> str:
        barrier.wait()
        return _call(dispatcher, "GET", "/slow").text

    with ThreadPoolExecutor(max_workers=3) as pool:
        started = time.monotonic()
        slow_results = [pool.submit(slow_call) for _ in range(2)]
        time.sleep(0.05)
        assert _call(dispatcher, "GET", "/fast").text == "fast"
        fast_elapsed = time.monotonic() - started
        counts = sorted(future.result() for future in slow_results)
        total_elapsed = time.monotonic() - started

    assert fast_elapsed < 0.35
    assert counts == ["1", "2"]
    assert total_elapsed < 0.9
