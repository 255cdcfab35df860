"""
Core cache data structures.
"""
import json
from dataclasses import dataclass
from typing import Any

# Entries older than this are treated as absent
DEFAULT_TTL_SECONDS = 30 * 60


@dataclass(frozen=True)
class CacheEntry:
    """
    A cached response payload and the time it was stored.

    Entries are immutable; an update replaces the whole entry.
    """
    stored_at: float  # epoch seconds
    payload: Any

    def age_seconds(self, now: float) -> float:
        """Seconds since the entry was stored."""
        return now - self.stored_at

    def is_live(self, ttl_seconds: float, now: float) -> bool:
        """Live iff age <= TTL."""
        return self.age_seconds(now) <= ttl_seconds

    def to_json(self) -> str:
        """Serialize to the on-disk representation."""
        return json.dumps({"storedAt": self.stored_at, "payload": self.payload})

    @classmethod
    def from_json(cls, raw: str) -> "CacheEntry":
        """
        Parse the on-disk representation.

        Raises:
            ValueError: If the document is malformed
        """
        item = json.loads(raw)
        if not isinstance(item, dict) or "storedAt" not in item or "payload" not in item:
            raise ValueError("cache entry missing storedAt/payload")
        return cls(stored_at=float(item["storedAt"]), payload=item["payload"])
