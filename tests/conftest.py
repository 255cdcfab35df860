"""
Shared fixtures: a scripted stand-in for requests.Session and fast fetchers.
"""
import threading
from typing import Any, Callable, Dict, List, Union

import pytest

from dexview.cache import CacheManager, MemoryBackend, TTLStore
from dexview.catalog_client import CatalogClient
from dexview.fetcher import ResilientFetcher

BASE_URL = "https://pokeapi.test/api/v2"


class FakeResponse:
    """Minimal requests.Response stand-in."""

    def __init__(self, status_code: int = 200, payload: Any = None, reason: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.reason = reason or ("OK" if status_code < 400 else "Error")

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


Outcome = Union[FakeResponse, Exception]


class FakeSession:
    """
    Records every GET and answers it from a handler.

    The handler gets the URL and returns a FakeResponse, or an exception
    which is raised from get() the way requests raises.
    """

    def __init__(self, handler: Callable[[str], Outcome]):
        self.handler = handler
        self.calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def get(self, url, headers=None, timeout=None):
        with self._lock:
            self.calls.append(url)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            outcome = self.handler(url)
        finally:
            with self._lock:
                self.in_flight -= 1
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def count(self, url: str) -> int:
        with self._lock:
            return self.calls.count(url)

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.calls)

    def close(self):
        pass


def scripted(*outcomes: Outcome) -> Callable[[str], Outcome]:
    """Handler returning outcomes in order, repeating the last one."""
    remaining = list(outcomes)
    lock = threading.Lock()

    def handler(url):
        with lock:
            if len(remaining) > 1:
                return remaining.pop(0)
            return remaining[0]

    return handler


def routed(routes: Dict[str, Callable[[], Outcome]]) -> Callable[[str], Outcome]:
    """Handler dispatching on exact URL; unknown URLs get a 404."""

    def handler(url):
        if url in routes:
            return routes[url]()
        return FakeResponse(404, {"detail": "Not found"}, "Not Found")

    return handler


def make_fetcher(session: FakeSession) -> ResilientFetcher:
    """Fetcher with no backoff delay so retries run instantly."""
    return ResilientFetcher(session=session, backoff_base_ms=0, max_jitter_ms=0, poll_interval=0.005)


def make_client(session: FakeSession, max_retries: int = 3, timeout_ms: int = 2000) -> CatalogClient:
    store = TTLStore(MemoryBackend())
    manager = CacheManager(store, make_fetcher(session))
    return CatalogClient(manager, base_url=BASE_URL, timeout_ms=timeout_ms, max_retries=max_retries)


# =============================================================================
# Catalog payloads
# =============================================================================

def listing_payload(offset: int, limit: int = 20, count: int = 1302) -> dict:
    results = [
        {"name": f"mon-{i}", "url": f"{BASE_URL}/pokemon/{i + 1}/"}
        for i in range(offset, min(offset + limit, count))
    ]
    next_offset = offset + limit
    return {
        "count": count,
        "next": f"{BASE_URL}/pokemon?offset={next_offset}&limit={limit}" if next_offset < count else None,
        "previous": f"{BASE_URL}/pokemon?offset={max(offset - limit, 0)}&limit={limit}" if offset else None,
        "results": results,
    }


def detail_payload(name: str, dex_id: int = 1, type_name: str = "fire") -> dict:
    return {
        "id": dex_id,
        "name": name,
        "sprites": {
            "front_default": f"https://img.test/{dex_id}.png",
            "other": {"official-artwork": {"front_default": f"https://img.test/art/{dex_id}.png"}},
        },
        "types": [{"slot": 1, "type": {"name": type_name, "url": f"{BASE_URL}/type/{type_name}/"}}],
        "abilities": [
            {"ability": {"name": "blaze", "url": f"{BASE_URL}/ability/66/"}, "is_hidden": False}
        ],
        "stats": [{"base_stat": 39, "stat": {"name": "hp", "url": f"{BASE_URL}/stat/1/"}}],
    }


def type_payload(name: str, members: List[str]) -> dict:
    return {
        "id": 10,
        "name": name,
        "pokemon": [
            {"pokemon": {"name": m, "url": f"{BASE_URL}/pokemon/{m}/"}, "slot": 1}
            for m in members
        ],
    }


@pytest.fixture
def release():
    """Event that blocked handlers wait on; always set at teardown."""
    event = threading.Event()
    yield event
    event.set()
