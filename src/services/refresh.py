"""Freshness rules for seeding and cleanup.

A refresh directive decides whether a stored tile must be downloaded again:

- ``time``: refresh tiles created before an absolute instant.
- ``day``: refresh tiles older than N days at job start.
- ``md5``: refresh when the upstream hash differs from the stored one.

Without a directive every tile is downloaded. Cleanup uses the same cutoff
rules to decide what to delete.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from shared.constants import MS_PER_DAY, MS_PER_SECOND
from shared.errors import RetryableFetchError, TileAbsentError
from tiles.fetcher import download_with_retry

if TYPE_CHECKING:
    import aiohttp

    from domain.models import CleanupDirective, RefreshDirective, SeedJob
    from tiles.store import TileStore

logger = logging.getLogger(__name__)


class RefreshMode(str, Enum):
    ALWAYS = 'always'
    CUTOFF = 'cutoff'
    MD5 = 'md5'


def _to_ms(moment: datetime) -> int:
    # Naive timestamps in job documents are local time
    return int(moment.timestamp() * MS_PER_SECOND)


def cutoff_ms(time: datetime | None, day: int | None, now: datetime) -> int:
    """Epoch ms before which a tile counts as stale."""
    if time is not None:
        return _to_ms(time)
    if day is not None:
        return _to_ms(now) - day * MS_PER_DAY
    msg = 'Either time or day is required to compute a cutoff'
    raise ValueError(msg)


def is_stale(created_ms: int | None, cutoff: int) -> bool:
    """A tile with unknown creation time is always stale."""
    return created_ms is None or created_ms < cutoff


@dataclass(frozen=True)
class RefreshPolicy:
    mode: RefreshMode
    cutoff_ms: int | None = None

    @classmethod
    def from_directive(
        cls, directive: RefreshDirective | None, now: datetime | None = None
    ) -> RefreshPolicy:
        """Resolve *directive* once per job; ``day`` is measured from *now*."""
        if directive is None:
            return cls(RefreshMode.ALWAYS)
        if directive.md5:
            return cls(RefreshMode.MD5)
        return cls(
            RefreshMode.CUTOFF,
            cutoff_ms(directive.time, directive.day, now or datetime.now().astimezone()),
        )

    def older_than_cutoff(self, created_ms: int | None) -> bool:
        if self.cutoff_ms is None:
            msg = f'{self.mode.value} refresh policy has no cutoff'
            raise ValueError(msg)
        return is_stale(created_ms, self.cutoff_ms)


def _upstream_hash(result_data: bytes, etag: str | None) -> str:
    if etag:
        return etag.strip()
    return result_data.decode('utf-8', errors='replace').strip()


async def needs_refresh(
    policy: RefreshPolicy,
    store: TileStore,
    z: int,
    x: int,
    y: int,
    *,
    job: SeedJob | None = None,
    session: aiohttp.ClientSession | None = None,
) -> bool:
    """Decide whether tile (z, x, y) must be downloaded.

    Backend reads run in a worker thread. md5 checks require *job* and
    *session* to query the upstream hash endpoint.
    """
    if policy.mode == RefreshMode.ALWAYS:
        return True
    if policy.mode == RefreshMode.CUTOFF:
        created = await asyncio.to_thread(store.get_tile_created, z, x, y)
        return policy.older_than_cutoff(created)

    stored = await asyncio.to_thread(store.get_tile_hash, z, x, y)
    if stored is None:
        return True
    if job is None or session is None:
        msg = 'md5 refresh needs the job and an HTTP session'
        raise ValueError(msg)
    url = job.hash_url(z, x, y)
    try:
        result = await download_with_retry(
            session,
            url,
            max_try=job.max_try,
            timeout=job.timeout,
            backoff_base=job.retry_backoff,
        )
    except (TileAbsentError, RetryableFetchError) as e:
        logger.debug('Upstream hash unavailable for %s/%s/%s: %s', z, x, y, e)
        return True
    return _upstream_hash(result.data, result.etag) != stored


@dataclass(frozen=True)
class CleanupPolicy:
    """``cutoff_ms is None`` deletes every tile in scope."""

    cutoff_ms: int | None = None

    @classmethod
    def from_directive(
        cls, directive: CleanupDirective | None, now: datetime | None = None
    ) -> CleanupPolicy:
        if directive is None:
            return cls()
        return cls(cutoff_ms(directive.time, directive.day, now or datetime.now().astimezone()))

    def should_delete(self, created_ms: int | None) -> bool:
        if self.cutoff_ms is None:
            return True
        return is_stale(created_ms, self.cutoff_ms)
