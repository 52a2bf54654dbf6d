"""One background task: optional stale lock removal, then cleanup, then seed.

Targets are processed one after another in document order. A failing target
is logged and recorded; the remaining targets still run. Cancellation is
checked between targets and inside each tile job.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from domain.config import load_cleanup_config, load_seed_config
from infrastructure.http import make_http_session
from infrastructure.locks import remove_stale_locks
from services.assets import AssetKind, asset_path, cleanup_asset, seed_asset
from services.cleanup import run_cleanup_job
from services.seed import run_seed_job
from shared.diagnostics import log_memory_usage, log_thread_status
from shared.progress import CancelledError, check_cancelled

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from domain.models import TaskRequest
    from domain.settings import AppSettings
    from services.assets import AssetResult
    from services.cleanup import CleanupSummary
    from services.seed import SeedSummary
    from shared.progress import CancelToken

logger = logging.getLogger(__name__)


@dataclass
class TaskReport:
    stale_locks_removed: int = 0
    seeds: list[SeedSummary] = field(default_factory=list)
    cleanups: list[CleanupSummary] = field(default_factory=list)
    assets: list[AssetResult] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    elapsed: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            'stale_locks_removed': self.stale_locks_removed,
            'seeds': [s.to_dict() for s in self.seeds],
            'cleanups': [c.to_dict() for c in self.cleanups],
            'assets': [
                {'kind': a.kind.value, 'id': a.id, 'outcome': a.outcome} for a in self.assets
            ],
            'failures': dict(self.failures),
            'elapsed': self.elapsed,
        }


async def _run_cleanup(
    request: TaskRequest,
    settings: AppSettings,
    report: TaskReport,
    cancel: CancelToken | None,
    now: datetime | None,
    on_progress: Callable[[int, int, str], None] | None = None,
) -> None:
    config = load_cleanup_config(settings.data_dir)
    for target_id, job in config.datas.items():
        if not request.selects(target_id):
            continue
        check_cancelled(cancel)
        try:
            summary = await run_cleanup_job(
                job, settings, cancel=cancel, now=now, on_progress=on_progress
            )
        except Exception as e:
            logger.exception('Failed to clean up data "%s". Skipping...', target_id)
            report.failures[f'cleanup:{target_id}'] = str(e)
            continue
        if summary is not None:
            report.cleanups.append(summary)
            if summary.cancelled:
                check_cancelled(cancel)

    for kind, entries in ((AssetKind.STYLE, config.styles), (AssetKind.GEOJSON, config.geojsons)):
        for asset_id, asset_job in entries.items():
            if not request.selects(asset_id):
                continue
            check_cancelled(cancel)
            result = await cleanup_asset(kind, asset_job, asset_path(settings, kind, asset_id), now=now)
            report.assets.append(result)


async def _run_seed(
    request: TaskRequest,
    settings: AppSettings,
    report: TaskReport,
    cancel: CancelToken | None,
    now: datetime | None,
    on_progress: Callable[[int, int, str], None] | None = None,
) -> None:
    config = load_seed_config(settings.data_dir)
    for target_id, job in config.datas.items():
        if not request.selects(target_id):
            continue
        check_cancelled(cancel)
        try:
            summary = await run_seed_job(
                job, settings, cancel=cancel, now=now, on_progress=on_progress
            )
        except Exception as e:
            logger.exception('Failed to seed data "%s". Skipping...', target_id)
            report.failures[f'seed:{target_id}'] = str(e)
            continue
        report.seeds.append(summary)
        if summary.cancelled:
            check_cancelled(cancel)

    assets = [
        *((AssetKind.STYLE, i, j) for i, j in config.styles.items()),
        *((AssetKind.GEOJSON, i, j) for i, j in config.geojsons.items()),
    ]
    assets = [a for a in assets if request.selects(a[1])]
    if not assets:
        return
    async with make_http_session() as session:
        for kind, asset_id, asset_job in assets:
            check_cancelled(cancel)
            result = await seed_asset(
                kind, asset_job, asset_path(settings, kind, asset_id), session, now=now
            )
            report.assets.append(result)


async def run_tasks(
    request: TaskRequest,
    settings: AppSettings,
    *,
    cancel: CancelToken | None = None,
    now: datetime | None = None,
    on_progress: Callable[[int, int, str], None] | None = None,
) -> TaskReport:
    """Execute *request* against the documents in ``settings.data_dir``.

    Raises:
        CancelledError: If cancellation was requested; work done so far is kept.
        ConfigError: If a requested job document is invalid.
    """
    start = time.monotonic()
    report = TaskReport()
    log_memory_usage('task start')
    log_thread_status('task start')
    try:
        if request.remove_stale_locks:
            report.stale_locks_removed = remove_stale_locks(settings.caches_dir)
        if request.cleanup:
            logger.info('Starting cleanup')
            await _run_cleanup(request, settings, report, cancel, now, on_progress)
            logger.info('Completed cleaning up data!')
        if request.seed:
            logger.info('Starting seed')
            await _run_seed(request, settings, report, cancel, now, on_progress)
            logger.info('Completed seeding data!')
    except CancelledError:
        logger.warning('Task cancelled after %.1fs', time.monotonic() - start)
        raise
    finally:
        report.elapsed = time.monotonic() - start
        log_memory_usage('task end')
    return report
