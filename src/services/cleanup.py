"""Cleanup orchestration: delete tiles in scope that are older than a cutoff."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING

from services.refresh import CleanupPolicy
from shared.constants import StorageType
from shared.progress import ProgressReporter
from tiles.pyramid import TilePyramid
from tiles.store import open_store

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from domain.models import CleanupJob
    from domain.settings import AppSettings
    from shared.progress import CancelToken
    from tiles.store import TileStore

logger = logging.getLogger(__name__)


@dataclass
class CleanupSummary:
    job_id: str = ''
    total: int = 0
    deleted: int = 0
    kept: int = 0
    missing: int = 0
    failed: int = 0
    cancelled: bool = False
    elapsed: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


def _cleanup_tile(store: TileStore, policy: CleanupPolicy, z: int, x: int, y: int) -> str:
    created = store.get_tile_created(z, x, y)
    if created is None and not store.has_tile(z, x, y):
        return 'missing'
    if not policy.should_delete(created):
        return 'kept'
    store.delete_tile(z, x, y)
    return 'deleted'


async def cleanup_tiles(
    job: CleanupJob,
    store: TileStore,
    *,
    cancel: CancelToken | None = None,
    now: datetime | None = None,
    on_progress: Callable[[int, int, str], None] | None = None,
) -> CleanupSummary:
    """Delete the tiles of *job* whose creation time is before the cutoff.

    Without a directive every tile in scope is deleted. Metadata is left
    untouched. XYZ trees are pruned of empty folders afterwards.
    """
    start = time.monotonic()
    policy = CleanupPolicy.from_directive(job.cleanup_before, now)
    pyramid = TilePyramid(job.bboxes, job.zooms)
    summary = CleanupSummary(job_id=job.id, total=pyramid.total)
    logger.info(
        'Cleaning up "%s": %d tiles in scope, cutoff %s',
        job.id,
        summary.total,
        policy.cutoff_ms if policy.cutoff_ms is not None else 'none (delete all)',
    )

    progress = ProgressReporter(summary.total, label=f'Cleanup {job.id}', on_progress=on_progress)
    slots = asyncio.Semaphore(job.concurrency)
    in_flight: set[asyncio.Task] = set()

    async def run_one(z: int, x: int, y: int) -> None:
        try:
            outcome = await asyncio.to_thread(_cleanup_tile, store, policy, z, x, y)
        except Exception:
            logger.exception('Failed to clean up tile %s/%s/%s', z, x, y)
            outcome = 'failed'
        finally:
            slots.release()
        setattr(summary, outcome, getattr(summary, outcome) + 1)
        await progress.step()

    try:
        for z, x, y in pyramid:
            if cancel is not None and cancel.is_cancelled():
                summary.cancelled = True
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
    logger.info(
        'Cleanup "%s" %s in %.1fs: deleted=%d kept=%d missing=%d failed=%d',
        job.id,
        'cancelled' if summary.cancelled else 'completed',
        summary.elapsed,
        summary.deleted,
        summary.kept,
        summary.missing,
        summary.failed,
    )
    return summary


async def run_cleanup_job(
    job: CleanupJob,
    settings: AppSettings,
    *,
    cancel: CancelToken | None = None,
    now: datetime | None = None,
    on_progress: Callable[[int, int, str], None] | None = None,
) -> CleanupSummary | None:
    """Open the target backend and clean it. Returns None if the target does not exist."""
    location = settings.tile_store_location(job.storage, job.id)
    if not location.exists():
        logger.info('Nothing to clean up for "%s": %s does not exist', job.id, location)
        return None
    store = await asyncio.to_thread(
        open_store, job.storage, location, tile_format=job.format, create=False
    )
    try:
        return await cleanup_tiles(job, store, cancel=cancel, now=now, on_progress=on_progress)
    finally:
        await asyncio.to_thread(store.close)
