"""
Cache-aside orchestration with stale-while-revalidate.
"""
import threading
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional, Set

from dexview.errors import CancellationError
from dexview.fetcher import CancellationToken, RequestSpec, ResilientFetcher
from .coalescer import RequestCoalescer
from .store import TTLStore

logger = logging.getLogger("cache.manager")


def _apply(parse: Optional[Callable[[Any], Any]], data: Any) -> Any:
    return parse(data) if parse is not None else data


class CacheManager:
    """
    Decides per query whether to serve from the store, the network, or both.

    - allow_cache=False: network only, the store is neither read nor written
    - hit: cached payload returned at once, one background refresh scheduled
    - miss: fetched synchronously (deduplicated), stored, returned

    A parse callable, when given, validates every payload before it is
    stored or returned; a payload it rejects never reaches the store.
    """

    def __init__(
        self,
        store: TTLStore,
        fetcher: ResilientFetcher,
        max_revalidation_workers: int = 4,
        coalesce_timeout: float = 30.0,
    ):
        """
        Args:
            store: TTL store holding cached payloads
            fetcher: Network fetcher
            max_revalidation_workers: Thread pool size for background refreshes
            coalesce_timeout: Timeout for waiting on a shared in-flight fetch
        """
        self._store = store
        self._fetcher = fetcher
        self._coalescer = RequestCoalescer(timeout=coalesce_timeout)

        # Background revalidation
        self._revalidation_pool = ThreadPoolExecutor(
            max_workers=max_revalidation_workers,
            thread_name_prefix="cache-revalidate",
        )
        self._pending_refreshes: Set[Future] = set()
        self._refresh_lock = threading.Lock()

        self._stats_lock = threading.Lock()
        self._stats = {
            "hits": 0,
            "misses": 0,
            "uncached": 0,
            "revalidations": 0,
            "revalidation_failures": 0,
        }

    @property
    def store(self) -> TTLStore:
        return self._store

    def _bump(self, name: str) -> None:
        with self._stats_lock:
            self._stats[name] += 1

    def query(
        self,
        spec: RequestSpec,
        cancel_token: Optional[CancellationToken] = None,
        dedupe: bool = True,
        parse: Optional[Callable[[Any], Any]] = None,
    ) -> Any:
        """
        Resolve a query from the cache and/or the network.

        Args:
            spec: The request; spec.url is the cache key
            cancel_token: Optional caller cancellation
            dedupe: Share in-flight fetches for the same key
            parse: Turns the decoded JSON into the returned value; raises to reject it

        Returns:
            Decoded JSON payload, or parse(payload)

        Raises:
            FetchError: Terminal fetch failure (never on a cache hit)
        """
        cache_key = spec.url

        if not spec.allow_cache:
            logger.debug(f"UNCACHED: {cache_key}")
            self._bump("uncached")
            return _apply(parse, self._fetch(spec, cancel_token, dedupe))

        cached = self._store.get(cache_key)
        if cached is not None:
            logger.info(f"CACHE HIT: {cache_key}")
            self._bump("hits")
            self._trigger_background_refresh(spec, parse)
            return _apply(parse, cached)

        logger.info(f"CACHE MISS: {cache_key}")
        self._bump("misses")
        data = self._fetch(spec, cancel_token, dedupe)
        if cancel_token is not None and cancel_token.cancelled:
            raise CancellationError(f"Request cancelled: {cache_key}", cache_key)
        result = _apply(parse, data)
        self._store.put(cache_key, data)
        return result

    def _fetch(
        self,
        spec: RequestSpec,
        cancel_token: Optional[CancellationToken],
        dedupe: bool,
    ) -> Any:
        # A cancellable fetch belongs to its caller and is not shared
        if not dedupe or cancel_token is not None:
            return self._fetcher.fetch(spec, cancel_token)
        return self._coalescer.get_or_fetch(spec.url, lambda: self._fetcher.fetch(spec))

    def _trigger_background_refresh(
        self,
        spec: RequestSpec,
        parse: Optional[Callable[[Any], Any]] = None,
    ) -> None:
        """Schedule a network refresh of spec.url without blocking."""
        refresh_spec = spec.without_cache()
        cache_key = spec.url

        def do_refresh():
            try:
                logger.debug(f"Background refresh started: {cache_key}")
                data = self._fetcher.fetch(refresh_spec)
                _apply(parse, data)
                self._store.put(cache_key, data)
                self._bump("revalidations")
                logger.debug(f"Background refresh complete: {cache_key}")
            except Exception as e:
                self._bump("revalidation_failures")
                logger.warning(f"[Cache Refresh] Refresh failed for {cache_key}: {e}")

        future = self._revalidation_pool.submit(do_refresh)
        with self._refresh_lock:
            self._pending_refreshes.add(future)
        future.add_done_callback(self._forget_refresh)

    def _forget_refresh(self, future: Future) -> None:
        with self._refresh_lock:
            self._pending_refreshes.discard(future)

    def wait_for_refreshes(self, timeout: Optional[float] = None) -> None:
        """Block until currently scheduled background refreshes finish."""
        with self._refresh_lock:
            pending = list(self._pending_refreshes)
        for future in pending:
            future.exception(timeout=timeout)

    def clear(self) -> None:
        """Wipe the whole store."""
        self._store.clear()

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._stats_lock:
            stats = dict(self._stats)
        total = stats["hits"] + stats["misses"]
        stats["hit_rate_percent"] = round(stats["hits"] / total * 100, 1) if total else 0
        with self._refresh_lock:
            stats["refreshing_count"] = len(self._pending_refreshes)
        stats["store"] = self._store.stats()
        stats["coalescer"] = self._coalescer.get_stats()
        return stats

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting refreshes; optionally wait for running ones."""
        self._revalidation_pool.shutdown(wait=wait)
