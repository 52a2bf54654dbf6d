"""Tests for refresh and cleanup policies."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from domain.models import CleanupDirective, RefreshDirective, SeedJob
from services.refresh import (
    CleanupPolicy,
    RefreshMode,
    RefreshPolicy,
    cutoff_ms,
    is_stale,
    needs_refresh,
)
from shared.errors import RetryableFetchError, TileAbsentError
from tiles.fetcher import FetchResult

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
NOW_MS = int(NOW.timestamp() * 1000)
DAY_MS = 24 * 60 * 60 * 1000


def _store(created=None, stored_hash=None):
    store = MagicMock()
    store.get_tile_created.return_value = created
    store.get_tile_hash.return_value = stored_hash
    return store


def _md5_job():
    return SeedJob.model_validate(
        {
            'url': 'https://t.example.com/{z}/{x}/{y}.png',
            'bboxes': [[0, 0, 1, 1]],
            'zooms': [1],
            'refresh_before': {'md5': True},
        }
    )


class TestCutoff:
    """Tests for cutoff_ms and is_stale."""

    def test_day_is_relative_to_now(self):
        assert cutoff_ms(None, 10, NOW) == NOW_MS - 10 * DAY_MS

    def test_time_is_absolute(self):
        moment = NOW - timedelta(hours=1)
        assert cutoff_ms(moment, None, NOW) == NOW_MS - 3_600_000

    def test_neither(self):
        with pytest.raises(ValueError):
            cutoff_ms(None, None, NOW)

    def test_unknown_created_is_stale(self):
        assert is_stale(None, NOW_MS)

    def test_boundary(self):
        """A tile created exactly at the cutoff is fresh."""
        assert not is_stale(NOW_MS, NOW_MS)
        assert is_stale(NOW_MS - 1, NOW_MS)


class TestRefreshPolicy:
    """Tests for RefreshPolicy.from_directive."""

    def test_no_directive_refreshes_everything(self):
        assert RefreshPolicy.from_directive(None).mode == RefreshMode.ALWAYS

    def test_md5(self):
        assert RefreshPolicy.from_directive(RefreshDirective(md5=True)).mode == RefreshMode.MD5

    def test_day_resolved_once(self):
        policy = RefreshPolicy.from_directive(RefreshDirective(day=2), NOW)
        assert policy == RefreshPolicy(RefreshMode.CUTOFF, NOW_MS - 2 * DAY_MS)

    def test_older_than_cutoff(self):
        policy = RefreshPolicy(RefreshMode.CUTOFF, NOW_MS)
        assert policy.older_than_cutoff(NOW_MS - 1)
        assert policy.older_than_cutoff(None)
        assert not policy.older_than_cutoff(NOW_MS)

    def test_cutoff_mode_without_cutoff(self):
        """A hand-built CUTOFF policy missing its instant is rejected."""
        with pytest.raises(ValueError, match='no cutoff'):
            RefreshPolicy(RefreshMode.CUTOFF).older_than_cutoff(NOW_MS)


class TestNeedsRefresh:
    """Tests for needs_refresh."""

    @pytest.mark.asyncio
    async def test_always(self):
        store = _store()
        assert await needs_refresh(RefreshPolicy(RefreshMode.ALWAYS), store, 1, 0, 0)
        store.get_tile_created.assert_not_called()

    @pytest.mark.asyncio
    async def test_cutoff_old_and_new(self):
        policy = RefreshPolicy(RefreshMode.CUTOFF, NOW_MS)
        assert await needs_refresh(policy, _store(created=NOW_MS - 1), 1, 0, 0)
        assert not await needs_refresh(policy, _store(created=NOW_MS + 1), 1, 0, 0)

    @pytest.mark.asyncio
    async def test_cutoff_missing_tile(self):
        """A tile that is not stored yet is downloaded."""
        policy = RefreshPolicy(RefreshMode.CUTOFF, NOW_MS)
        assert await needs_refresh(policy, _store(created=None), 1, 0, 0)

    @pytest.mark.asyncio
    async def test_md5_without_stored_hash(self):
        """No local hash means there is nothing to compare: download."""
        session = MagicMock()
        with patch('services.refresh.download_with_retry', new_callable=AsyncMock) as dl:
            result = await needs_refresh(
                RefreshPolicy(RefreshMode.MD5), _store(), 1, 0, 0, job=_md5_job(), session=session
            )
        assert result is True
        dl.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_md5_equal_etag(self):
        with patch(
            'services.refresh.download_with_retry',
            new_callable=AsyncMock,
            return_value=FetchResult(data=b'', headers={'etag': '"abc"'}),
        ) as dl:
            result = await needs_refresh(
                RefreshPolicy(RefreshMode.MD5),
                _store(stored_hash='abc'),
                1,
                0,
                1,
                job=_md5_job(),
                session=MagicMock(),
            )
        assert result is False
        assert dl.await_args.args[1] == 'https://t.example.com/md5/1/0/1.png'

    @pytest.mark.asyncio
    async def test_md5_body_differs(self):
        """Without an ETag the body carries the hash."""
        with patch(
            'services.refresh.download_with_retry',
            new_callable=AsyncMock,
            return_value=FetchResult(data=b'def\n'),
        ):
            result = await needs_refresh(
                RefreshPolicy(RefreshMode.MD5),
                _store(stored_hash='abc'),
                1,
                0,
                1,
                job=_md5_job(),
                session=MagicMock(),
            )
        assert result is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        'error',
        [TileAbsentError('u', 404), RetryableFetchError('u', 'HTTP 500', status=500)],
    )
    async def test_md5_endpoint_unavailable(self, error):
        """If the hash cannot be fetched the tile is refreshed."""
        with patch(
            'services.refresh.download_with_retry', new_callable=AsyncMock, side_effect=error
        ):
            result = await needs_refresh(
                RefreshPolicy(RefreshMode.MD5),
                _store(stored_hash='abc'),
                1,
                0,
                1,
                job=_md5_job(),
                session=MagicMock(),
            )
        assert result is True


class TestCleanupPolicy:
    """Tests for CleanupPolicy."""

    def test_no_directive_deletes_all(self):
        policy = CleanupPolicy.from_directive(None)
        assert policy.should_delete(NOW_MS)
        assert policy.should_delete(None)

    def test_day(self):
        policy = CleanupPolicy.from_directive(CleanupDirective(day=30), NOW)
        assert policy.should_delete(NOW_MS - 40 * DAY_MS)
        assert not policy.should_delete(NOW_MS - 10 * DAY_MS)
