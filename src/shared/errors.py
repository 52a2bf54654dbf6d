"""Exceptions shared by storage backends, the fetch client and the services."""

from __future__ import annotations


class TileSeederError(Exception):
    """Base class for errors raised by the seeder."""


class TileAbsentError(TileSeederError):
    """Upstream answered "no content" or "not found": the tile legitimately does not exist."""

    def __init__(self, url: str, status: int) -> None:
        super().__init__(f'Tile does not exist (HTTP {status}) at {url}')
        self.url = url
        self.status = status


class RetryableFetchError(TileSeederError):
    """Transport error or unexpected status; the request may succeed later."""

    def __init__(self, url: str, reason: str, status: int | None = None) -> None:
        super().__init__(f'Failed to request {url}: {reason}')
        self.url = url
        self.reason = reason
        self.status = status


class LockTimeoutError(TileSeederError, TimeoutError):
    """A resource lock could not be acquired in time."""

    def __init__(self, resource: str, timeout: float) -> None:
        super().__init__(f'Timeout to access {resource} after {timeout:.1f}s')
        self.resource = resource
        self.timeout = timeout


class BackendError(TileSeederError):
    """A storage backend could not be opened or its schema is unusable."""


class JobRejectedError(TileSeederError):
    """A job was requested while another one is still running."""
