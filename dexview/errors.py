"""
Error taxonomy for the fetch pipeline.

Fetch errors are the only ones allowed to reach callers. Cache errors are
raised by storage backends and absorbed by the TTL store.
"""
from typing import Optional


class FetchError(Exception):
    """Base class for a failed catalog request."""

    retryable = False

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class ClientError(FetchError):
    """4xx response. The request itself is invalid, retrying cannot help."""

    def __init__(self, status: int, reason: str, url: str):
        super().__init__(f"HTTP {status} {reason} for {url}", url)
        self.status = status
        self.reason = reason


class ServerError(FetchError):
    """5xx response."""

    retryable = True

    def __init__(self, status: int, reason: str, url: str):
        super().__init__(f"Server error: {status} {reason} for {url}", url)
        self.status = status
        self.reason = reason


class RequestTimeoutError(FetchError):
    """An attempt did not complete within its timeout."""

    retryable = True


class NetworkError(FetchError):
    """Connectivity failure (refused, reset, DNS)."""

    retryable = True


class CancellationError(FetchError):
    """The caller's cancellation token fired. Never retried."""


class ResponseDecodeError(FetchError):
    """The response body was not valid JSON."""


class RetriesExhaustedError(FetchError):
    """Every attempt failed with a retryable error."""

    def __init__(self, url: str, attempts: int, last_error: FetchError):
        super().__init__(
            f"Failed to fetch {url} after {attempts} attempts: {last_error}", url
        )
        self.attempts = attempts
        self.last_error = last_error


class CacheError(Exception):
    """Base class for storage backend failures."""


class CacheReadError(CacheError):
    pass


class CacheWriteError(CacheError):
    pass


def is_user_visible(error: BaseException) -> bool:
    """
    Whether an error should be shown to the user.

    Cancellations are self-inflicted (e.g. a superseded search) and are
    silently dropped.
    """
    return not isinstance(error, CancellationError)
