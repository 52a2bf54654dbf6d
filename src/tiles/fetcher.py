from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import aiohttp

from shared.constants import (
    HTTP_BACKOFF_BASE_S,
    HTTP_BACKOFF_FACTOR,
    HTTP_BACKOFF_MAX_S,
    HTTP_NO_CONTENT,
    HTTP_NOT_FOUND,
    HTTP_OK,
    HTTP_RETRIES_DEFAULT,
    HTTP_TIMEOUT_DEFAULT,
)
from shared.errors import RetryableFetchError, TileAbsentError
from shared.progress import check_cancelled

if TYPE_CHECKING:
    from shared.progress import CancelToken

logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    """Body and the response headers we care about."""

    data: bytes
    status: int = HTTP_OK
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def etag(self) -> str | None:
        value = self.headers.get('etag')
        return value.strip('"') if value else None


def _release(resp: object) -> None:
    try:
        close = getattr(resp, 'close', None)
        if callable(close):
            close()
        release = getattr(resp, 'release', None)
        if callable(release):
            release()
    except Exception as e:
        logger.debug('Failed to cleanup HTTP response: %s', e, exc_info=True)


async def fetch_data(
    session: aiohttp.ClientSession,
    url: str,
    timeout: float = HTTP_TIMEOUT_DEFAULT,
) -> FetchResult:
    """Perform a single GET.

    Raises:
        TileAbsentError: On HTTP 204 or 404.
        RetryableFetchError: On any other status, a timeout or a transport error.
    """
    try:
        resp = await session.get(url, timeout=aiohttp.ClientTimeout(total=timeout))
        try:
            sc = resp.status
            if sc == HTTP_OK:
                data = await resp.read()
                headers = {k.lower(): v for k, v in (resp.headers or {}).items()}
                return FetchResult(data=data, status=sc, headers=headers)
            if sc in (HTTP_NO_CONTENT, HTTP_NOT_FOUND):
                raise TileAbsentError(url, sc)
            raise RetryableFetchError(url, f'HTTP {sc}', status=sc)
        finally:
            _release(resp)
    except (TileAbsentError, RetryableFetchError):
        raise
    except TimeoutError as e:
        raise RetryableFetchError(url, f'timeout after {timeout:.1f}s') from e
    except aiohttp.ClientError as e:
        raise RetryableFetchError(url, f'{type(e).__name__}: {e}') from e


def backoff_delay(
    attempt: int,
    base: float = HTTP_BACKOFF_BASE_S,
    factor: float = HTTP_BACKOFF_FACTOR,
    cap: float = HTTP_BACKOFF_MAX_S,
) -> float:
    """Sleep before retry number *attempt* (0-based): ``base * factor**attempt``, capped."""
    return min(cap, base * factor**attempt)


async def download_with_retry(
    session: aiohttp.ClientSession,
    url: str,
    *,
    max_try: int = HTTP_RETRIES_DEFAULT,
    timeout: float = HTTP_TIMEOUT_DEFAULT,
    backoff_base: float = HTTP_BACKOFF_BASE_S,
    backoff_factor: float = HTTP_BACKOFF_FACTOR,
    cancel: CancelToken | None = None,
) -> FetchResult:
    """GET *url* up to *max_try* times.

    Absence (204/404) is final and propagates on the first attempt; every
    other failure is retried with exponential backoff.

    Raises:
        TileAbsentError: The resource does not exist upstream.
        RetryableFetchError: All attempts failed; carries the last reason.
        CancelledError: Cancellation was requested between attempts.
    """
    attempts = max(1, max_try)
    for attempt in range(attempts):
        check_cancelled(cancel)
        try:
            return await fetch_data(session, url, timeout)
        except RetryableFetchError as e:
            logger.debug('Attempt %d/%d failed for %s: %s', attempt + 1, attempts, url, e.reason)
            if attempt == attempts - 1:
                raise
        await asyncio.sleep(backoff_delay(attempt, backoff_base, backoff_factor))
    msg = f'No download attempt made for {url}'
    raise RuntimeError(msg)
