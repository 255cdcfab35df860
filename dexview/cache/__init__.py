"""
Response caching with a fixed TTL, request coalescing and stale-while-revalidate.
"""
from .core import CacheEntry, DEFAULT_TTL_SECONDS
from .store import KeyValueBackend, MemoryBackend, SQLiteBackend, TTLStore
from .coalescer import RequestCoalescer
from .manager import CacheManager

__all__ = [
    # Core types
    "CacheEntry",
    "DEFAULT_TTL_SECONDS",
    # Storage
    "KeyValueBackend",
    "MemoryBackend",
    "SQLiteBackend",
    "TTLStore",
    # Coalescing
    "RequestCoalescer",
    # Orchestration
    "CacheManager",
]
