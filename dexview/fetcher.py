"""
Resilient single-request execution against the catalog API.

One logical GET with:
1. A per-attempt timeout
2. Retry with exponential backoff + jitter for 5xx, timeouts and connection failures
3. Caller-driven cancellation that aborts the current attempt or backoff wait

Attempts within one fetch never overlap: a timed-out attempt is waited out
(requests enforces the same timeout on the socket) before the next one starts.
"""
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional

import requests
from tenacity import (
    Retrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

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

logger = logging.getLogger("fetcher")

DEFAULT_TIMEOUT_MS = 8000
MAX_RETRIES = 3
BACKOFF_BASE_MS = 1000
MAX_JITTER_MS = 500
# Upper bound on upstream calls running at once, abandoned ones included
MAX_CONCURRENT_CALLS = 10

# How often a waiting attempt checks its cancellation token
POLL_INTERVAL_SECONDS = 0.02


class CancellationToken:
    """
    One-shot cancellation flag shared between a caller and a fetch.

    Thread-safe; once cancelled it stays cancelled.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or timeout elapses. Returns True if cancelled."""
        return self._event.wait(timeout)


@dataclass(frozen=True)
class RequestSpec:
    """Describes one logical catalog query."""
    url: str
    method: str = "GET"
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_retries: int = MAX_RETRIES
    allow_cache: bool = True
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    def without_cache(self) -> "RequestSpec":
        """Same request with caching disabled."""
        return replace(self, allow_cache=False)


def backoff_wait(base_ms: float = BACKOFF_BASE_MS, max_jitter_ms: float = MAX_JITTER_MS):
    """
    tenacity wait strategy: 2^attempt * base plus uniform jitter in [0, max_jitter].

    attempt counts from 0 for the delay after the first failure.
    """
    return wait_exponential(multiplier=base_ms / 1000, exp_base=2) + wait_random(
        0, max_jitter_ms / 1000
    )


def _is_retryable(error: BaseException) -> bool:
    return getattr(error, "retryable", False)


class ResilientFetcher:
    """
    Executes catalog GETs with timeout, retry and cancellation.

    The fetcher knows nothing about caching; it returns the decoded JSON
    body and leaves storage to the caller.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        backoff_base_ms: float = BACKOFF_BASE_MS,
        max_jitter_ms: float = MAX_JITTER_MS,
        max_concurrent_calls: int = MAX_CONCURRENT_CALLS,
        poll_interval: float = POLL_INTERVAL_SECONDS,
    ):
        """
        Args:
            session: requests-compatible session (anything with .get)
            backoff_base_ms: Deterministic part of the first retry delay
            max_jitter_ms: Upper bound of the random addend
            max_concurrent_calls: Upstream calls allowed in flight at once
            poll_interval: Seconds between cancellation checks
        """
        self._session = session or requests.Session()
        self.backoff_base_ms = backoff_base_ms
        self.max_jitter_ms = max_jitter_ms
        self._poll_interval = poll_interval
        # Held for the whole upstream call, even after the caller stops waiting
        self._call_slots = threading.BoundedSemaphore(max_concurrent_calls)
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent_calls,
            thread_name_prefix="fetch-attempt",
        )

    def fetch(self, spec: RequestSpec, cancel_token: Optional[CancellationToken] = None) -> Any:
        """
        Fetch spec.url, retrying transient failures.

        Returns:
            Decoded JSON body

        Raises:
            ClientError: 4xx response, never retried
            CancellationError: cancel_token fired
            RetriesExhaustedError: Every attempt failed with a retryable error
            FetchError: Any other terminal failure
        """
        if spec.method.upper() != "GET":
            raise ValueError(f"Unsupported method: {spec.method}")

        def log_retry(retry_state: RetryCallState) -> None:
            logger.warning(
                f"[Retry] Attempt {retry_state.attempt_number} failed for {spec.url} "
                f"({retry_state.outcome.exception()}). "
                f"Retrying in {retry_state.next_action.sleep * 1000:.0f}ms"
            )

        def give_up(retry_state: RetryCallState) -> None:
            attempts = retry_state.attempt_number
            logger.error(f"Giving up on {spec.url} after {attempts} attempts")
            raise RetriesExhaustedError(spec.url, attempts, retry_state.outcome.exception())

        retryer = Retrying(
            stop=stop_after_attempt(spec.max_retries + 1),
            wait=backoff_wait(self.backoff_base_ms, self.max_jitter_ms),
            retry=retry_if_exception(_is_retryable),
            sleep=lambda seconds: self._sleep(seconds, spec.url, cancel_token),
            before_sleep=log_retry,
            retry_error_callback=give_up,
        )
        return retryer(self._attempt, spec, cancel_token)

    def _sleep(self, seconds: float, url: str, cancel_token: Optional[CancellationToken]) -> None:
        """Wait out a backoff delay, aborting if the token fires."""
        if cancel_token is None:
            time.sleep(seconds)
        elif cancel_token.wait(seconds):
            raise CancellationError(f"Request cancelled during backoff: {url}", url)

    def _call(self, spec: RequestSpec):
        with self._call_slots:
            return self._session.get(
                spec.url,
                headers=spec.headers or None,
                timeout=spec.timeout_seconds,
            )

    def _attempt(self, spec: RequestSpec, cancel_token: Optional[CancellationToken]) -> Any:
        """Run a single attempt bounded by spec.timeout_ms."""
        url = spec.url
        if cancel_token is not None and cancel_token.cancelled:
            raise CancellationError(f"Request cancelled: {url}", url)

        future = self._executor.submit(self._call, spec)
        deadline = time.monotonic() + spec.timeout_seconds

        if not self._wait(future, deadline, cancel_token, url):
            logger.warning(f"[Timeout] Request aborted after {spec.timeout_ms}ms: {url}")
            # The socket timeout ends the call; the next attempt waits for it
            self._wait(future, None, cancel_token, url)
            raise RequestTimeoutError(f"Timed out after {spec.timeout_ms}ms: {url}", url)

        try:
            response = future.result()
        except requests.Timeout as e:
            raise RequestTimeoutError(f"Timed out: {url} ({e})", url) from e
        except (requests.ConnectionError, requests.exceptions.ChunkedEncodingError) as e:
            raise NetworkError(f"Network request failed: {url} ({e})", url) from e
        except requests.RequestException as e:
            raise FetchError(f"Request failed: {url} ({e})", url) from e

        return self._handle_response(response, url)

    def _wait(
        self,
        future: Future,
        deadline: Optional[float],
        cancel_token: Optional[CancellationToken],
        url: str,
    ) -> bool:
        """
        Wait for an attempt until deadline (None waits for completion).

        Returns:
            True if the attempt finished, False if the deadline passed

        Raises:
            CancellationError: The token fired; any response is discarded
        """
        while True:
            if cancel_token is not None and cancel_token.cancelled:
                future.cancel()
                logger.info(f"Request cancelled: {url}")
                raise CancellationError(f"Request cancelled: {url}", url)
            if future.done():
                return True

            step = self._poll_interval if cancel_token is not None else None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                step = remaining if step is None else min(step, remaining)
            wait([future], timeout=step)

    def _handle_response(self, response, url: str) -> Any:
        status = response.status_code
        if 400 <= status < 500:
            raise ClientError(status, response.reason or "", url)
        if status >= 500:
            raise ServerError(status, response.reason or "", url)
        try:
            return response.json()
        except ValueError as e:
            raise ResponseDecodeError(f"Invalid JSON from {url}: {e}", url) from e

    def close(self) -> None:
        """Release the attempt threads and the HTTP session."""
        self._executor.shutdown(wait=False)
        self._session.close()
