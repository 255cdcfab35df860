"""Configuration management using pydantic-settings."""
from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # PokeAPI configuration
    catalog_base_url: str = "https://pokeapi.co/api/v2"

    # Fetcher behaviour
    request_timeout_ms: int = 8000
    max_retries: int = 3
    backoff_base_ms: int = 1000
    max_jitter_ms: int = 500
    # Upstream calls in flight at once, across all callers
    max_concurrent_calls: int = 10

    # Cache settings
    cache_enabled: bool = True
    cache_db_path: Path = Path("./data/dexview_cache.db")
    cache_ttl_seconds: int = 30 * 60
    revalidation_workers: int = 4
    coalesce_timeout: float = 30.0

    # Listing and filtering
    page_limit: int = 20
    # Parallel detail fetches when filtering by type
    max_concurrent_requests: int = 5

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
