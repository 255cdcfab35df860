"""
Tests for the resilient fetcher: retry ceiling, 4xx handling, backoff,
timeouts and cancellation.
"""
import threading
import time

import pytest
import requests

from dexview.errors import (
    CancellationError,
    ClientError,
    FetchError,
    NetworkError,
    RequestTimeoutError,
    ResponseDecodeError,
    RetriesExhaustedError,
    ServerError,
)
from dexview.fetcher import (
    CancellationToken,
    RequestSpec,
    ResilientFetcher,
)

from conftest import FakeResponse, FakeSession, make_fetcher, scripted

URL = "https://pokeapi.test/api/v2/pokemon/pikachu"
OK = FakeResponse(200, {"name": "pikachu"})


def _cancel_later(token: CancellationToken, delay: float) -> threading.Timer:
    timer = threading.Timer(delay, token.cancel)
    timer.start()
    return timer


# =============================================================================
# Status handling and retry
# =============================================================================

def test_success_returns_decoded_json():
    session = FakeSession(scripted(OK))
    assert make_fetcher(session).fetch(RequestSpec(URL)) == {"name": "pikachu"}
    assert session.call_count == 1


def test_server_error_makes_exactly_max_retries_plus_one_attempts():
    session = FakeSession(scripted(FakeResponse(503, reason="Service Unavailable")))

    with pytest.raises(RetriesExhaustedError) as exc_info:
        make_fetcher(session).fetch(RequestSpec(URL, max_retries=3))

    assert session.call_count == 4
    assert exc_info.value.attempts == 4
    assert exc_info.value.url == URL
    assert isinstance(exc_info.value.last_error, ServerError)
    assert URL in str(exc_info.value)


def test_client_error_is_not_retried():
    session = FakeSession(scripted(FakeResponse(404, reason="Not Found")))

    with pytest.raises(ClientError) as exc_info:
        make_fetcher(session).fetch(RequestSpec(URL, max_retries=3))

    assert session.call_count == 1
    assert exc_info.value.status == 404


def test_recovers_after_transient_server_errors():
    session = FakeSession(scripted(FakeResponse(500), FakeResponse(502), OK))
    assert make_fetcher(session).fetch(RequestSpec(URL)) == {"name": "pikachu"}
    assert session.call_count == 3


def test_connection_failure_is_retried():
    session = FakeSession(scripted(requests.ConnectionError("Network request failed"), OK))
    assert make_fetcher(session).fetch(RequestSpec(URL)) == {"name": "pikachu"}
    assert session.call_count == 2


def test_truncated_body_is_retried_as_network_error():
    session = FakeSession(scripted(
        requests.exceptions.ChunkedEncodingError("Connection broken: IncompleteRead"),
        requests.exceptions.ChunkedEncodingError("Connection broken: IncompleteRead"),
    ))

    with pytest.raises(RetriesExhaustedError) as exc_info:
        make_fetcher(session).fetch(RequestSpec(URL, max_retries=1))

    assert isinstance(exc_info.value.last_error, NetworkError)
    assert session.call_count == 2


def test_transport_timeout_is_retried():
    session = FakeSession(scripted(requests.ReadTimeout("read timed out"), OK))
    assert make_fetcher(session).fetch(RequestSpec(URL)) == {"name": "pikachu"}
    assert session.call_count == 2


def test_connection_failure_exhausts_as_network_error():
    session = FakeSession(scripted(requests.ConnectionError("refused")))

    with pytest.raises(RetriesExhaustedError) as exc_info:
        make_fetcher(session).fetch(RequestSpec(URL, max_retries=1))

    assert isinstance(exc_info.value.last_error, NetworkError)
    assert session.call_count == 2


def test_other_request_errors_are_terminal():
    session = FakeSession(scripted(requests.exceptions.InvalidURL("bad url")))

    with pytest.raises(FetchError) as exc_info:
        make_fetcher(session).fetch(RequestSpec(URL))

    assert not exc_info.value.retryable
    assert session.call_count == 1


def test_invalid_json_is_terminal():
    session = FakeSession(scripted(FakeResponse(200, ValueError("Expecting value"))))

    with pytest.raises(ResponseDecodeError):
        make_fetcher(session).fetch(RequestSpec(URL))
    assert session.call_count == 1


def test_only_get_is_supported():
    with pytest.raises(ValueError):
        make_fetcher(FakeSession(scripted(OK))).fetch(RequestSpec(URL, method="POST"))


# =============================================================================
# Timeout
# =============================================================================

def slow_upstream(delay: float):
    """Handler that answers after delay, ignoring the caller's timeout."""
    def handler(url):
        time.sleep(delay)
        return OK
    return handler


def test_slow_attempt_times_out_and_is_retried():
    session = FakeSession(slow_upstream(0.2))
    started = time.monotonic()

    with pytest.raises(RetriesExhaustedError) as exc_info:
        make_fetcher(session).fetch(RequestSpec(URL, timeout_ms=50, max_retries=1))

    assert isinstance(exc_info.value.last_error, RequestTimeoutError)
    assert session.call_count == 2
    assert time.monotonic() - started < 1.5


def test_timed_out_attempts_never_overlap():
    """A retry starts only after the timed-out call has returned."""
    session = FakeSession(slow_upstream(0.2))

    with pytest.raises(RetriesExhaustedError):
        make_fetcher(session).fetch(RequestSpec(URL, timeout_ms=50, max_retries=3))

    assert session.call_count == 4
    assert session.max_in_flight == 1


def test_concurrent_calls_are_bounded_across_fetches():
    session = FakeSession(slow_upstream(0.1))
    fetcher = ResilientFetcher(session=session, backoff_base_ms=0, max_jitter_ms=0,
                               max_concurrent_calls=2, poll_interval=0.005)
    errors = []

    def run():
        try:
            fetcher.fetch(RequestSpec(URL, timeout_ms=2000, max_retries=0))
        except FetchError as e:
            errors.append(e)

    threads = [threading.Thread(target=run) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    assert not errors
    assert session.call_count == 6
    assert session.max_in_flight <= 2


# =============================================================================
# Backoff
# =============================================================================

def test_retry_waits_follow_backoff(monkeypatch):
    waits = []
    monkeypatch.setattr("dexview.fetcher.time.sleep", lambda s: waits.append(s))
    session = FakeSession(scripted(FakeResponse(503)))
    fetcher = ResilientFetcher(session=session, backoff_base_ms=1000, max_jitter_ms=0)

    with pytest.raises(RetriesExhaustedError):
        fetcher.fetch(RequestSpec(URL, max_retries=3))

    assert waits == [1.0, 2.0, 4.0]


def test_retry_jitter_is_bounded(monkeypatch):
    waits = []
    monkeypatch.setattr("dexview.fetcher.time.sleep", lambda s: waits.append(s))
    session = FakeSession(scripted(FakeResponse(503)))
    fetcher = ResilientFetcher(session=session, backoff_base_ms=1000, max_jitter_ms=500)

    with pytest.raises(RetriesExhaustedError):
        fetcher.fetch(RequestSpec(URL, max_retries=3))

    assert len(waits) == 3
    for attempt, seconds in enumerate(waits):
        base = 2 ** attempt
        assert base <= seconds <= base + 0.5


def test_no_wait_after_final_attempt(monkeypatch):
    waits = []
    monkeypatch.setattr("dexview.fetcher.time.sleep", lambda s: waits.append(s))
    session = FakeSession(scripted(FakeResponse(503)))
    fetcher = ResilientFetcher(session=session, backoff_base_ms=1000, max_jitter_ms=0)

    with pytest.raises(RetriesExhaustedError) as exc_info:
        fetcher.fetch(RequestSpec(URL, max_retries=0))

    assert waits == []
    assert exc_info.value.attempts == 1



# =============================================================================
# Cancellation
# =============================================================================

def test_cancel_during_attempt_is_terminal(release):
    def handler(url):
        release.wait(2)
        return OK

    session = FakeSession(handler)
    token = CancellationToken()
    _cancel_later(token, 0.05)

    with pytest.raises(CancellationError):
        make_fetcher(session).fetch(RequestSpec(URL, timeout_ms=2000, max_retries=3), token)

    assert session.call_count == 1


def test_cancel_during_backoff_is_terminal():
    session = FakeSession(scripted(FakeResponse(503)))
    fetcher = ResilientFetcher(session=session, backoff_base_ms=5000, max_jitter_ms=0)
    token = CancellationToken()
    _cancel_later(token, 0.05)
    started = time.monotonic()

    with pytest.raises(CancellationError):
        fetcher.fetch(RequestSpec(URL, max_retries=3), token)

    assert session.call_count == 1
    assert time.monotonic() - started < 2


def test_already_cancelled_token_makes_no_request():
    session = FakeSession(scripted(OK))
    token = CancellationToken()
    token.cancel()

    with pytest.raises(CancellationError):
        make_fetcher(session).fetch(RequestSpec(URL), token)
    assert session.call_count == 0


def test_cancellation_error_is_not_retryable():
    assert not CancellationError("x").retryable
    assert ServerError(503, "", URL).retryable
    assert RequestTimeoutError("x").retryable
