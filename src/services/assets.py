"""Single-file assets cached next to the tiles: style JSON and GeoJSON.

Each asset is one file written atomically under its ``.lock`` marker. The
refresh rules are the tile ones, with the file modification time as the
creation time. For GeoJSON the md5 rule compares the local file digest with
the ETag of the sibling ``{id}/md5`` endpoint.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from infrastructure.locks import LockFileLock
from services.refresh import CleanupPolicy, RefreshMode, RefreshPolicy
from shared.constants import LOCK_TIMEOUT_S, MS_PER_SECOND
from shared.errors import RetryableFetchError, TileAbsentError
from tiles.fetcher import download_with_retry
from tiles.image import md5_hex
from tiles.xyz import write_atomic

if TYPE_CHECKING:
    from datetime import datetime

    import aiohttp

    from domain.models import AssetCleanupJob, AssetSeedJob
    from domain.settings import AppSettings

logger = logging.getLogger(__name__)


class AssetKind(str, Enum):
    STYLE = 'style'
    GEOJSON = 'geojson'


@dataclass
class AssetResult:
    kind: AssetKind
    id: str
    outcome: str
    path: Path


def asset_path(settings: AppSettings, kind: AssetKind, asset_id: str) -> Path:
    if kind == AssetKind.STYLE:
        return settings.style_path(asset_id)
    return settings.geojson_path(asset_id)


def _file_created_ms(path: Path) -> int | None:
    try:
        return int(path.stat().st_mtime * MS_PER_SECOND)
    except FileNotFoundError:
        return None


def validate_payload(kind: AssetKind, data: bytes) -> None:
    """Reject payloads that are not the JSON document we expect.

    Raises:
        ValueError: If *data* is not a JSON object (with ``type`` for GeoJSON).
    """
    try:
        doc = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        msg = f'Invalid {kind.value} JSON: {e}'
        raise ValueError(msg) from e
    if not isinstance(doc, dict):
        msg = f'Invalid {kind.value}: top level must be an object'
        raise ValueError(msg)
    if kind == AssetKind.GEOJSON and 'type' not in doc:
        msg = 'Invalid GeoJSON: missing "type"'
        raise ValueError(msg)


def md5_url_for(job: AssetSeedJob) -> str:
    """``.../{id}.geojson`` becomes ``.../{id}/md5``."""
    suffix = f'{job.id}.geojson'
    if suffix in job.url:
        return job.url.replace(suffix, f'{job.id}/md5')
    return job.url.rstrip('/') + '/md5'


async def _needs_download(
    kind: AssetKind,
    job: AssetSeedJob,
    path: Path,
    session: aiohttp.ClientSession,
    policy: RefreshPolicy,
) -> bool:
    if policy.mode == RefreshMode.ALWAYS or not path.exists():
        return True
    if policy.mode == RefreshMode.CUTOFF:
        return policy.older_than_cutoff(_file_created_ms(path))
    if kind != AssetKind.GEOJSON:
        return True
    try:
        result = await download_with_retry(
            session,
            md5_url_for(job),
            max_try=job.max_try,
            timeout=job.timeout,
            backoff_base=job.retry_backoff,
        )
    except (TileAbsentError, RetryableFetchError) as e:
        logger.debug('Upstream md5 unavailable for geojson "%s": %s', job.id, e)
        return True
    upstream = result.etag or result.data.decode('utf-8', errors='replace').strip()
    local = md5_hex(await asyncio.to_thread(path.read_bytes))
    return upstream != local


async def seed_asset(
    kind: AssetKind,
    job: AssetSeedJob,
    path: Path,
    session: aiohttp.ClientSession,
    *,
    now: datetime | None = None,
    lock: LockFileLock | None = None,
    lock_timeout: float = LOCK_TIMEOUT_S,
) -> AssetResult:
    """Download one asset if its refresh rule says so. Failures are logged, not raised."""
    lock = lock or LockFileLock()
    policy = RefreshPolicy.from_directive(job.refresh_before, now)
    try:
        if not await _needs_download(kind, job, path, session, policy):
            logger.info('%s "%s" is fresh', kind.value.capitalize(), job.id)
            return AssetResult(kind, job.id, 'fresh', path)
        logger.info('Downloading %s "%s" from %s', kind.value, job.id, job.url)
        result = await download_with_retry(
            session,
            job.url,
            max_try=job.max_try,
            timeout=job.timeout,
            backoff_base=job.retry_backoff,
        )
        validate_payload(kind, result.data)

        def store() -> None:
            with lock.acquire(path, lock_timeout):
                write_atomic(path, result.data)

        await asyncio.to_thread(store)
    except TileAbsentError as e:
        logger.warning('%s "%s" does not exist upstream: %s', kind.value.capitalize(), job.id, e)
        return AssetResult(kind, job.id, 'absent', path)
    except Exception as e:
        logger.error('Failed to seed %s "%s": %s', kind.value, job.id, e)
        return AssetResult(kind, job.id, 'failed', path)
    return AssetResult(kind, job.id, 'downloaded', path)


async def cleanup_asset(
    kind: AssetKind,
    job: AssetCleanupJob,
    path: Path,
    *,
    now: datetime | None = None,
    lock: LockFileLock | None = None,
    lock_timeout: float = LOCK_TIMEOUT_S,
) -> AssetResult:
    """Delete one asset if it is older than the cutoff (or unconditionally)."""
    lock = lock or LockFileLock()
    policy = CleanupPolicy.from_directive(job.cleanup_before, now)
    if not path.exists():
        return AssetResult(kind, job.id, 'missing', path)
    if not policy.should_delete(_file_created_ms(path)):
        return AssetResult(kind, job.id, 'kept', path)

    def remove() -> None:
        with lock.acquire(path, lock_timeout):
            path.unlink(missing_ok=True)
        try:
            path.parent.rmdir()
        except OSError:
            logger.debug('Keeping non-empty folder %s', path.parent)

    try:
        await asyncio.to_thread(remove)
    except Exception as e:
        logger.error('Failed to clean up %s "%s": %s', kind.value, job.id, e)
        return AssetResult(kind, job.id, 'failed', path)
    logger.info('Removed %s "%s"', kind.value, job.id)
    return AssetResult(kind, job.id, 'deleted', path)
