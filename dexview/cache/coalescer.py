"""
Request deduplication for concurrent cache misses.

Concurrent queries for the same URL share one upstream fetch: the first
caller performs it, later callers wait for its outcome.
"""
import threading
import time
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from dexview.errors import RequestTimeoutError

logger = logging.getLogger("cache.coalescer")


@dataclass
class InFlightFetch:
    """An upstream fetch other callers can join."""
    done: threading.Event = field(default_factory=threading.Event)
    result: Optional[Any] = None
    error: Optional[BaseException] = None
    started_at: float = field(default_factory=time.monotonic)
    waiters: int = 0


class RequestCoalescer:
    """
    Shares one upstream call among concurrent callers for the same key.

    Usage:
        coalescer = RequestCoalescer()
        data = coalescer.get_or_fetch(url, lambda: fetcher.fetch(spec))
    """

    def __init__(self, timeout: float = 30.0):
        """
        Args:
            timeout: Max seconds a joining caller waits for the leader
        """
        self._in_flight: Dict[str, InFlightFetch] = {}
        self._lock = threading.Lock()
        self._timeout = timeout

    def get_or_fetch(self, key: str, fetch_fn: Callable[[], Any]) -> Any:
        """
        Join the in-flight fetch for key, or start one.

        Raises:
            RequestTimeoutError: If the leader does not finish in time
            Exception: Whatever fetch_fn raised, re-raised for every caller
        """
        with self._lock:
            in_flight = self._in_flight.get(key)
            leader = in_flight is None
            if leader:
                in_flight = InFlightFetch()
                self._in_flight[key] = in_flight
            else:
                in_flight.waiters += 1

        if leader:
            logger.debug(f"Initiating fetch for {key}")
            try:
                in_flight.result = fetch_fn()
            except BaseException as e:
                in_flight.error = e
            finally:
                with self._lock:
                    self._in_flight.pop(key, None)
                in_flight.done.set()
        else:
            logger.debug(f"Joining in-flight fetch for {key} (waiters: {in_flight.waiters})")
            if not in_flight.done.wait(timeout=self._timeout):
                logger.error(f"Timeout waiting for coalesced fetch: {key}")
                raise RequestTimeoutError(
                    f"Shared fetch for {key} did not finish within {self._timeout}s", key
                )

        if in_flight.error is not None:
            raise in_flight.error
        return in_flight.result

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight fetches."""
        with self._lock:
            return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "active_requests": len(self._in_flight),
                "active_keys": list(self._in_flight.keys()),
            }
