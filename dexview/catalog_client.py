"""
Client for the PokeAPI catalog.
Every query goes through the cache-aside manager and the resilient fetcher;
type filtering fans detail fetches out over a bounded worker pool.
"""
import logging
from typing import Any, Callable, List, Optional, Type, Union
from urllib.parse import urlencode

import requests
from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError

from dexview.cache import CacheManager, MemoryBackend, SQLiteBackend, TTLStore
from dexview.errors import ResponseDecodeError
from dexview.fetcher import CancellationToken, RequestSpec, ResilientFetcher
from dexview.pool import FilterJob, WorkerPool
from dexview.schemas import NamedResource, PaginatedResponse, PokemonDetail, TypeDetails
from config.settings import Settings, settings

load_dotenv()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("catalog_client")

# The type list is not paginated upstream; 18 covers the main types
TYPE_LIST_LIMIT = 18


def _validator(model: Type[BaseModel], url: str) -> Callable[[Any], BaseModel]:
    """Parse a payload into model; a mismatch is a decode failure of url."""

    def parse(data: Any) -> BaseModel:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Unexpected payload shape from {url}: {e.error_count()} errors")
            raise ResponseDecodeError(f"Unexpected payload from {url}", url) from e

    return parse


class CatalogClient:
    """
    Typed queries against the catalog.

    Usage:
        client = CatalogClient.from_settings(settings)
        page = client.list(limit=20, offset=0)
        job = client.filter_by_category("fire")
    """

    def __init__(
        self,
        cache_manager: CacheManager,
        base_url: str = "https://pokeapi.co/api/v2",
        timeout_ms: int = 8000,
        max_retries: int = 3,
        max_concurrent_requests: int = 5,
    ):
        self.cache_manager = cache_manager
        self.base_url = base_url.rstrip("/")
        self.timeout_ms = timeout_ms
        self.max_retries = max_retries
        self.max_concurrent_requests = max_concurrent_requests

    @classmethod
    def from_settings(
        cls,
        config: Settings,
        session: Optional[requests.Session] = None,
    ) -> "CatalogClient":
        """Build the full stack (store, fetcher, cache manager) from settings."""
        if config.cache_enabled:
            backend = SQLiteBackend(config.cache_db_path)
        else:
            backend = MemoryBackend()
        store = TTLStore(backend, ttl_seconds=config.cache_ttl_seconds)
        fetcher = ResilientFetcher(
            session=session,
            backoff_base_ms=config.backoff_base_ms,
            max_jitter_ms=config.max_jitter_ms,
            max_concurrent_calls=config.max_concurrent_calls,
        )
        manager = CacheManager(
            store,
            fetcher,
            max_revalidation_workers=config.revalidation_workers,
            coalesce_timeout=config.coalesce_timeout,
        )
        return cls(
            manager,
            base_url=config.catalog_base_url,
            timeout_ms=config.request_timeout_ms,
            max_retries=config.max_retries,
            max_concurrent_requests=config.max_concurrent_requests,
        )

    def url_for(self, path: str, **params: Any) -> str:
        """Fully qualified URL; doubles as the cache key."""
        url = f"{self.base_url}{path}"
        if params:
            url = f"{url}?{urlencode(params)}"
        return url

    def _spec(self, url: str, allow_cache: bool = True) -> RequestSpec:
        return RequestSpec(
            url=url,
            timeout_ms=self.timeout_ms,
            max_retries=self.max_retries,
            allow_cache=allow_cache,
        )

    # ===== QUERIES =====

    def list(self, limit: int, offset: int) -> PaginatedResponse:
        """One page of the pokemon listing."""
        url = self.url_for("/pokemon", limit=limit, offset=offset)
        return self.cache_manager.query(self._spec(url), parse=_validator(PaginatedResponse, url))

    def detail(
        self,
        name_or_id: Union[str, int],
        cancel_token: Optional[CancellationToken] = None,
        allow_cache: bool = True,
        dedupe: bool = True,
    ) -> PokemonDetail:
        """Details of one pokemon by name or national dex id."""
        url = self.url_for(f"/pokemon/{str(name_or_id).strip().lower()}")
        return self.cache_manager.query(
            self._spec(url, allow_cache=allow_cache),
            cancel_token=cancel_token,
            dedupe=dedupe,
            parse=_validator(PokemonDetail, url),
        )

    def by_category(self, name: str) -> TypeDetails:
        """A type and its member list."""
        url = self.url_for(f"/type/{name.strip().lower()}")
        return self.cache_manager.query(self._spec(url), parse=_validator(TypeDetails, url))

    def all_categories(self) -> List[NamedResource]:
        """Every type, for the filter picker."""
        url = self.url_for("/type", limit=TYPE_LIST_LIMIT)
        page = self.cache_manager.query(self._spec(url), parse=_validator(PaginatedResponse, url))
        return page.results

    # ===== BULK =====

    def filter_by_category(self, name: str, concurrency: Optional[int] = None) -> FilterJob:
        """
        Fetch details for every member of a type.

        The member list is fetched (and cached) synchronously; member
        details are fetched uncached and undeduplicated by a worker pool.
        The returned job fills in as workers complete.

        Raises:
            FetchError: If the member list itself cannot be fetched
        """
        type_details = self.by_category(name)
        members = type_details.members
        logger.info(f"Filtering by type '{type_details.name}': {len(members)} members")

        pool = WorkerPool(concurrency or self.max_concurrent_requests)
        return pool.run(
            members,
            lambda member: self.detail(member.name, allow_cache=False, dedupe=False),
        )

    def get_cache_stats(self) -> dict:
        return self.cache_manager.get_stats()

    def clear_cache(self) -> None:
        self.cache_manager.clear()


# Global client instance
_catalog_client: Optional[CatalogClient] = None


def get_catalog_client() -> CatalogClient:
    """Get or create the global catalog client."""
    global _catalog_client
    if _catalog_client is None:
        _catalog_client = CatalogClient.from_settings(settings)
    return _catalog_client
