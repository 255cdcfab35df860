"""
Infinite-scroll pagination over the pokemon listing.
"""
import logging
import threading
from typing import List, Optional

from dexview.errors import FetchError
from dexview.schemas import NamedResource
from config.settings import settings

logger = logging.getLogger("paging")


class ListPager:
    """
    Accumulates listing pages for a scrolling list.

    Each load_more() appends the next page, skipping names already loaded.
    A failed load keeps the offset so retry() asks for the same page again.
    """

    def __init__(self, client, page_limit: Optional[int] = None):
        self._client = client
        self.page_limit = page_limit or settings.page_limit
        self.items: List[NamedResource] = []
        self.offset = 0
        self.has_next_page = True
        self.is_loading = False
        self.error: Optional[FetchError] = None
        self.total_count: Optional[int] = None
        self._lock = threading.Lock()

    def load_more(self) -> List[NamedResource]:
        """
        Load the next page.

        Returns:
            Items newly added by this call (empty if nothing was loaded)
        """
        with self._lock:
            if self.is_loading or not self.has_next_page:
                return []
            self.is_loading = True
            self.error = None
            offset = self.offset

        try:
            page = self._client.list(limit=self.page_limit, offset=offset)
            with self._lock:
                known = {item.name for item in self.items}
                added = [item for item in page.results if item.name not in known]
                self.items.extend(added)
                self.offset = offset + self.page_limit
                self.has_next_page = page.has_next_page
                self.total_count = page.count
            return added
        except FetchError as e:
            logger.warning(f"Failed to load page at offset {offset}: {e}")
            with self._lock:
                self.error = e
            return []
        finally:
            with self._lock:
                self.is_loading = False

    def retry(self) -> List[NamedResource]:
        """Clear the last error and try the same page again."""
        self.error = None
        return self.load_more()
