"""Seed orchestration: download every tile of a job into its backend.

The pyramid is walked lazily in deterministic order. At most
``job.concurrency`` tiles are in flight; admission of the next tile waits
for a free slot, so memory stays bounded for any pyramid size. A failure
on one tile is counted and logged, never fatal for the job.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import TYPE_CHECKING

from infrastructure.http import make_http_session
from services.refresh import RefreshPolicy, needs_refresh
from shared.constants import StorageType
from shared.diagnostics import log_memory_usage
from shared.errors import RetryableFetchError, TileAbsentError
from shared.progress import ProgressReporter
from tiles.fetcher import download_with_retry
from tiles.image import is_fully_transparent
from tiles.pyramid import TilePyramid
from tiles.store import open_store

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    import aiohttp

    from domain.models import SeedJob
    from domain.settings import AppSettings
    from shared.progress import CancelToken
    from tiles.store import TileStore

logger = logging.getLogger(__name__)


class TileOutcome(str, Enum):
    DOWNLOADED = 'downloaded'
    FRESH = 'skipped_fresh'
    ABSENT = 'absent'
    TRANSPARENT = 'transparent'
    FAILED = 'failed'


@dataclass
class SeedSummary:
    """Per-job counters; every enumerated tile lands in exactly one bucket unless cancelled."""

    job_id: str = ''
    total: int = 0
    downloaded: int = 0
    skipped_fresh: int = 0
    absent: int = 0
    transparent: int = 0
    failed: int = 0
    cancelled: bool = False
    elapsed: float = 0.0

    @property
    def processed(self) -> int:
        return self.downloaded + self.skipped_fresh + self.absent + self.transparent + self.failed

    def record(self, outcome: TileOutcome) -> None:
        name = outcome.value
        setattr(self, name, getattr(self, name) + 1)

    def to_dict(self) -> dict:
        return {**asdict(self), 'processed': self.processed}


async def seed_tile(
    job: SeedJob,
    store: TileStore,
    session: aiohttp.ClientSession,
    policy: RefreshPolicy,
    z: int,
    x: int,
    y: int,
) -> TileOutcome:
    """Refresh check, download and store one tile. Never raises for per-tile failures."""
    try:
        if not await needs_refresh(policy, store, z, x, y, job=job, session=session):
            return TileOutcome.FRESH
        url = job.tile_url(z, x, y)
        result = await download_with_retry(
            session,
            url,
            max_try=job.max_try,
            timeout=job.timeout,
            backoff_base=job.retry_backoff,
        )
        if not job.store_transparent and await asyncio.to_thread(
            is_fully_transparent, result.data
        ):
            logger.info('Skipped transparent tile %s/%s/%s', z, x, y)
            return TileOutcome.TRANSPARENT
        await asyncio.to_thread(
            store.put_tile, z, x, y, result.data, store_md5=job.store_md5
        )
    except TileAbsentError:
        logger.info('Skipped tile %s/%s/%s: absent upstream', z, x, y)
        return TileOutcome.ABSENT
    except RetryableFetchError as e:
        logger.warning('Failed to download tile %s/%s/%s: %s', z, x, y, e)
        return TileOutcome.FAILED
    except Exception:
        logger.exception('Failed to store tile %s/%s/%s', z, x, y)
        return TileOutcome.FAILED
    return TileOutcome.DOWNLOADED


async def seed_tiles(
    job: SeedJob,
    store: TileStore,
    session: aiohttp.ClientSession,
    *,
    cancel: CancelToken | None = None,
    now: datetime | None = None,
    on_progress: Callable[[int, int, str], None] | None = None,
) -> SeedSummary:
    """Seed every tile of *job* into *store*.

    Metadata is written before the first tile; a failure there is fatal and
    propagates. Cancellation is honoured at admission: no new tile starts,
    in-flight tiles finish, and the summary comes back with ``cancelled``.

    Args:
        job: Validated seed job.
        store: Open backend for the job target.
        session: HTTP session used for tiles and md5 checks.
        cancel: Optional cancel token checked before each admission.
        now: Reference time for ``day`` directives. Defaults to job start.
        on_progress: Called with ``(done, total, label)`` after each tile.

    Returns:
        Counters of the run.
    """
    start = time.monotonic()
    policy = RefreshPolicy.from_directive(job.refresh_before, now)
    pyramid = TilePyramid(job.bboxes, job.zooms)
    summary = SeedSummary(job_id=job.id, total=pyramid.total)
    logger.info(
        'Seeding "%s": %d tiles, zooms %s, concurrency %d, refresh %s',
        job.id,
        summary.total,
        list(job.zooms),
        job.concurrency,
        policy.mode.value,
    )

    await asyncio.to_thread(store.update_metadata, job.effective_metadata())

    progress = ProgressReporter(summary.total, label=f'Seed {job.id}', on_progress=on_progress)
    slots = asyncio.Semaphore(job.concurrency)
    in_flight: set[asyncio.Task] = set()

    async def run_one(z: int, x: int, y: int) -> None:
        try:
            outcome = await seed_tile(job, store, session, policy, z, x, y)
        finally:
            slots.release()
        summary.record(outcome)
        await progress.step()

    try:
        for z, x, y in pyramid:
            if cancel is not None and cancel.is_cancelled():
                summary.cancelled = True
                logger.info('Seeding "%s" cancelled; waiting for %d in-flight tiles', job.id, len(in_flight))
                break
            await slots.acquire()
            task = asyncio.create_task(run_one(z, x, y))
            in_flight.add(task)
            task.add_done_callback(in_flight.discard)
        if in_flight:
            await asyncio.gather(*in_flight)
    except BaseException:
        for task in in_flight:
            task.cancel()
        raise

    if job.storage == StorageType.XYZ:
        await asyncio.to_thread(store.remove_empty_folders)

    summary.elapsed = time.monotonic() - start
    log_memory_usage(f'after seeding {job.id}')
    logger.info(
        'Seeding "%s" %s in %.1fs: downloaded=%d fresh=%d absent=%d transparent=%d failed=%d',
        job.id,
        'cancelled' if summary.cancelled else 'completed',
        summary.elapsed,
        summary.downloaded,
        summary.skipped_fresh,
        summary.absent,
        summary.transparent,
        summary.failed,
    )
    return summary


async def run_seed_job(
    job: SeedJob,
    settings: AppSettings,
    *,
    session: aiohttp.ClientSession | None = None,
    cancel: CancelToken | None = None,
    now: datetime | None = None,
    on_progress: Callable[[int, int, str], None] | None = None,
) -> SeedSummary:
    """Open (creating if needed) the target backend and seed it.

    Raises:
        BackendError: If the backend cannot be opened.
    """
    location = settings.tile_store_location(job.storage, job.id)
    store = await asyncio.to_thread(
        open_store, job.storage, location, tile_format=job.format, create=True
    )
    try:
        if session is not None:
            return await seed_tiles(
                job, store, session, cancel=cancel, now=now, on_progress=on_progress
            )
        async with make_http_session(concurrency=job.concurrency) as client:
            return await seed_tiles(
                job, store, client, cancel=cancel, now=now, on_progress=on_progress
            )
    finally:
        await asyncio.to_thread(store.close)
