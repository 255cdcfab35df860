"""
Search-by-name and filter-by-type state for the UI.

A new search cancels the one it supersedes; the superseded search ends
with a CancellationError that is dropped instead of shown.
"""
import logging
import threading
from typing import List, Optional

from dexview.errors import FetchError, is_user_visible
from dexview.fetcher import CancellationToken
from dexview.pool import FilterJob
from dexview.schemas import NamedResource, PokemonDetail

logger = logging.getLogger("search")


class SearchSession:
    """Holds the latest search result or error for one search box."""

    def __init__(self, client):
        self._client = client
        self._lock = threading.Lock()
        self._token: Optional[CancellationToken] = None
        self.query = ""
        self.result: Optional[PokemonDetail] = None
        self.error: Optional[FetchError] = None

    def search(self, query: str) -> Optional[PokemonDetail]:
        """
        Look up a pokemon by name or id, superseding any running search.

        Returns:
            The detail record, or None if the query was empty, the lookup
            failed (see .error) or this search was itself superseded
        """
        query = query.strip()
        token = CancellationToken()
        with self._lock:
            if self._token is not None:
                self._token.cancel()
            self._token = token
            self.query = query
            if not query:
                self.result = None
                self.error = None
                return None

        try:
            result = self._client.detail(query, cancel_token=token)
        except FetchError as e:
            if not is_user_visible(e):
                logger.info(f"Search aborted: {query}")
                return None
            with self._lock:
                if self._token is token:
                    self.result = None
                    self.error = e
            return None

        with self._lock:
            if self._token is not token:
                return None
            self.result = result
            self.error = None
        return result

    def cancel(self) -> None:
        """Abort the running search, if any."""
        with self._lock:
            if self._token is not None:
                self._token.cancel()

    def clear(self) -> None:
        self.search("")


class TypeFilter:
    """Active type filter and its streaming detail job."""

    def __init__(self, client):
        self._client = client
        self.active_type: Optional[str] = None
        self.job: Optional[FilterJob] = None
        self.error: Optional[FetchError] = None
        self.types: List[NamedResource] = []

    def load_types(self) -> List[NamedResource]:
        """Fetch the type list for the picker. Failures are logged only."""
        try:
            self.types = self._client.all_categories()
        except FetchError as e:
            logger.error(f"Failed to fetch types: {e}")
        return self.types

    def apply(self, type_name: Optional[str]) -> Optional[FilterJob]:
        """
        Switch to a new type (or clear with None).

        The previous job stops taking new items.
        """
        if self.job is not None:
            self.job.cancel()
        self.job = None
        self.error = None
        self.active_type = type_name or None

        if not type_name:
            return None
        try:
            self.job = self._client.filter_by_category(type_name)
        except FetchError as e:
            logger.warning(f"Failed to apply type filter '{type_name}': {e}")
            self.error = e
        return self.job

    @property
    def results(self) -> List[PokemonDetail]:
        return self.job.results.snapshot() if self.job else []

    @property
    def is_loading(self) -> bool:
        return self.job is not None and not self.job.done
