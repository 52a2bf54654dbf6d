"""Tests for the task pipeline (stale locks, cleanup, seed)."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from domain.models import TaskRequest
from services.assets import AssetKind, AssetResult
from services.cleanup import CleanupSummary
from services.seed import SeedSummary
from services.tasks import TaskReport, run_tasks
from shared.progress import CancelledError, EventCancelToken

SEED_TOML = '''
[datas.osm]
url = "https://tiles.example.com/osm/{z}/{x}/{y}.png"
bboxes = [[-10.0, -10.0, 10.0, 10.0]]
zooms = [0, 1]

[datas.sat]
url = "https://tiles.example.com/sat/{z}/{x}/{y}.jpg"
format = "jpg"
bboxes = [[0.0, 0.0, 1.0, 1.0]]
zooms = [3]

[styles.basic]
url = "https://tiles.example.com/styles/basic/style.json"
'''

CLEANUP_TOML = '''
[datas.osm.cleanup_before]
day = 30

[geojsons.borders]
'''


@pytest.fixture
def data_dir(settings):
    settings.data_dir.mkdir(parents=True)
    (settings.data_dir / 'seed.toml').write_text(SEED_TOML, encoding='utf-8')
    (settings.data_dir / 'cleanup.toml').write_text(CLEANUP_TOML, encoding='utf-8')
    return settings.data_dir


@pytest.fixture
def calls():
    """Patch the per-target services and record the order they run in."""
    order = []

    async def seed(job, settings, **kwargs):
        order.append(('seed', job.id))
        return SeedSummary(job_id=job.id, total=1, downloaded=1)

    async def cleanup(job, settings, **kwargs):
        order.append(('cleanup', job.id))
        return CleanupSummary(job_id=job.id, total=1, deleted=1)

    async def seed_asset(kind, job, path, session, **kwargs):
        order.append(('seed', job.id))
        return AssetResult(kind, job.id, 'downloaded', path)

    async def cleanup_asset(kind, job, path, **kwargs):
        order.append(('cleanup', job.id))
        return AssetResult(kind, job.id, 'missing', path)

    with patch('services.tasks.run_seed_job', side_effect=seed), patch(
        'services.tasks.run_cleanup_job', side_effect=cleanup
    ), patch('services.tasks.seed_asset', side_effect=seed_asset), patch(
        'services.tasks.cleanup_asset', side_effect=cleanup_asset
    ):
        yield order


class TestRunTasks:
    """Tests for run_tasks."""

    @pytest.mark.asyncio
    async def test_cleanup_runs_before_seed(self, settings, data_dir, calls):
        report = await run_tasks(TaskRequest(seed=True, cleanup=True), settings)
        assert calls == [
            ('cleanup', 'osm'),
            ('cleanup', 'borders'),
            ('seed', 'osm'),
            ('seed', 'sat'),
            ('seed', 'basic'),
        ]
        assert [s.job_id for s in report.seeds] == ['osm', 'sat']
        assert [c.job_id for c in report.cleanups] == ['osm']
        assert [(a.kind, a.outcome) for a in report.assets] == [
            (AssetKind.GEOJSON, 'missing'),
            (AssetKind.STYLE, 'downloaded'),
        ]
        assert report.failures == {}

    @pytest.mark.asyncio
    async def test_ids_filter(self, settings, data_dir, calls):
        await run_tasks(TaskRequest(seed=True, ids=('sat',)), settings)
        assert calls == [('seed', 'sat')]

    @pytest.mark.asyncio
    async def test_nothing_requested(self, settings, data_dir, calls):
        report = await run_tasks(TaskRequest(), settings)
        assert calls == []
        assert report.seeds == []

    @pytest.mark.asyncio
    async def test_failing_target_does_not_stop_others(self, settings, data_dir):
        """An error on one target is recorded and the next target still runs."""

        async def seed(job, settings, **kwargs):
            if job.id == 'osm':
                msg = 'disk full'
                raise OSError(msg)
            return SeedSummary(job_id=job.id)

        with patch('services.tasks.run_seed_job', side_effect=seed), patch(
            'services.tasks.seed_asset', new_callable=AsyncMock
        ):
            report = await run_tasks(TaskRequest(seed=True, ids=('osm', 'sat')), settings)
        assert report.failures == {'seed:osm': 'disk full'}
        assert [s.job_id for s in report.seeds] == ['sat']

    @pytest.mark.asyncio
    async def test_cancelled_between_targets(self, settings, data_dir):
        token = EventCancelToken()

        async def seed(job, settings, **kwargs):
            token.cancel()
            return SeedSummary(job_id=job.id, cancelled=True)

        with patch('services.tasks.run_seed_job', side_effect=seed) as mock_seed:
            with pytest.raises(CancelledError):
                await run_tasks(TaskRequest(seed=True), settings, cancel=token)
        assert mock_seed.await_count == 1

    @pytest.mark.asyncio
    async def test_progress_callback_passed_down(self, settings, data_dir, calls):
        def on_progress(done, total, label):
            pass

        with patch('services.tasks.run_seed_job', new_callable=AsyncMock) as mock_seed:
            mock_seed.return_value = SeedSummary()
            await run_tasks(
                TaskRequest(seed=True, ids=('osm',)), settings, on_progress=on_progress
            )
        assert mock_seed.await_args.kwargs['on_progress'] is on_progress

    @pytest.mark.asyncio
    async def test_remove_stale_locks_first(self, settings, data_dir, calls):
        marker = settings.caches_dir / 'xyzs' / 'osm' / '1' / '0' / '0.png.lock'
        marker.parent.mkdir(parents=True)
        marker.write_bytes(b'')
        report = await run_tasks(TaskRequest(remove_stale_locks=True), settings)
        assert report.stale_locks_removed == 1
        assert not marker.exists()
        assert calls == []

    @pytest.mark.asyncio
    async def test_missing_documents(self, settings, calls):
        """No documents means nothing to do, not an error."""
        report = await run_tasks(TaskRequest(seed=True, cleanup=True), settings)
        assert calls == []
        assert report.failures == {}


def test_report_to_dict():
    report = TaskReport(stale_locks_removed=2)
    report.seeds.append(SeedSummary(job_id='osm', total=2, downloaded=2))
    data = report.to_dict()
    assert data['stale_locks_removed'] == 2
    assert data['seeds'][0]['processed'] == 2
    assert data['assets'] == []
