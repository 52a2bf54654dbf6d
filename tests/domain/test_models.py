"""Tests for job models."""

from datetime import datetime

import pytest
from pydantic import ValidationError

from domain.models import (
    CleanupDirective,
    CleanupJob,
    RefreshDirective,
    SeedConfig,
    SeedJob,
    TaskRequest,
    TileMetadata,
)
from shared.constants import StorageType, TileScheme

URL = 'https://tiles.example.com/osm/{z}/{x}/{y}.png'


def _job(**kwargs):
    data = {'url': URL, 'bboxes': [[-10, -10, 10, 10]], 'zooms': [0, 1]}
    data.update(kwargs)
    return SeedJob.model_validate(data)


class TestRefreshDirective:
    """Tests for RefreshDirective validation."""

    def test_day(self):
        assert RefreshDirective(day=7).day == 7

    def test_time_from_iso_string(self):
        d = RefreshDirective.model_validate({'time': '2024-01-02T03:04:05Z'})
        assert d.time.year == 2024

    def test_md5(self):
        assert RefreshDirective(md5=True).md5 is True

    @pytest.mark.parametrize(
        'data',
        [{}, {'day': 1, 'md5': True}, {'day': 1, 'time': '2024-01-01T00:00:00'}],
    )
    def test_exactly_one(self, data):
        """Zero or several rules are rejected."""
        with pytest.raises(ValidationError, match='exactly one'):
            RefreshDirective.model_validate(data)

    def test_negative_day(self):
        with pytest.raises(ValidationError):
            RefreshDirective(day=-1)

    def test_unknown_key(self):
        with pytest.raises(ValidationError):
            RefreshDirective.model_validate({'day': 1, 'hour': 2})


class TestCleanupDirective:
    """Tests for CleanupDirective validation."""

    def test_one_of_time_or_day(self):
        assert CleanupDirective(day=10).day == 10
        assert CleanupDirective(time=datetime(2024, 1, 1)).time.year == 2024
        with pytest.raises(ValidationError):
            CleanupDirective()
        with pytest.raises(ValidationError):
            CleanupDirective(day=1, time=datetime(2024, 1, 1))


class TestSeedJob:
    """Tests for SeedJob validation and URL helpers."""

    def test_defaults(self):
        job = _job()
        assert job.storage == StorageType.MBTILES
        assert job.scheme == TileScheme.XYZ
        assert job.concurrency >= 1
        assert job.store_transparent is True
        assert job.refresh_before is None

    def test_legacy_keys(self):
        """Keys from the JSON document format are accepted."""
        job = SeedJob.model_validate(
            {
                'url': URL,
                'bboxs': [[-10, -10, 10, 10]],
                'zooms': [3],
                'maxTry': 2,
                'storeMD5': True,
                'storeTransparent': False,
                'refreshBefore': {'day': 3},
            }
        )
        assert job.bboxes == ((-10.0, -10.0, 10.0, 10.0),)
        assert job.max_try == 2
        assert job.store_md5 is True
        assert job.store_transparent is False
        assert job.refresh_before.day == 3

    def test_url_placeholders_required(self):
        with pytest.raises(ValidationError, match='must contain'):
            _job(url='https://tiles.example.com/{z}/{x}.png')

    @pytest.mark.parametrize(
        'bbox',
        [[170, -10, -170, 10], [-10, 10, 10, -10], [-190, 0, 0, 1], [0, -91, 1, 0]],
    )
    def test_bad_bbox(self, bbox):
        with pytest.raises(ValidationError):
            _job(bboxes=[bbox])

    def test_zoom_range(self):
        with pytest.raises(ValidationError, match='out of range'):
            _job(zooms=[23])

    def test_empty_lists(self):
        with pytest.raises(ValidationError):
            _job(zooms=[])
        with pytest.raises(ValidationError):
            _job(bboxes=[])

    def test_concurrency_positive(self):
        with pytest.raises(ValidationError):
            _job(concurrency=0)

    def test_unknown_format(self):
        with pytest.raises(ValidationError):
            _job(format='tiff')

    def test_tile_url(self):
        assert _job().tile_url(3, 4, 2) == 'https://tiles.example.com/osm/3/4/2.png'

    def test_tile_url_tms_upstream(self):
        """A TMS upstream gets the flipped row."""
        assert _job(scheme='tms').tile_url(3, 4, 2) == 'https://tiles.example.com/osm/3/4/5.png'

    def test_hash_url_derived(self):
        job = _job(refresh_before={'md5': True})
        assert job.hash_url(3, 4, 2) == 'https://tiles.example.com/osm/md5/3/4/2.png'

    def test_hash_url_follows_tms_rows(self):
        """The md5 sibling is addressed like the tile it describes."""
        job = _job(scheme='tms', refresh_before={'md5': True})
        assert job.hash_url(3, 4, 2) == 'https://tiles.example.com/osm/md5/3/4/5.png'

    def test_hash_url_explicit(self):
        job = _job(md5_url='https://h.example.com/{z}-{x}-{y}', refresh_before={'md5': True})
        assert job.hash_url(1, 0, 1) == 'https://h.example.com/1-0-1'

    def test_md5_needs_derivable_url(self):
        """md5 refresh without a z/x/y path and no md5_url is rejected."""
        with pytest.raises(ValidationError, match='md5'):
            _job(url='https://t.example.com/tile?z={z}&x={x}&y={y}', refresh_before={'md5': True})

    def test_effective_metadata_fills_format(self):
        job = _job(format='jpg', metadata={'name': 'Sat'})
        meta = job.effective_metadata()
        assert meta.format == 'jpg'
        assert meta.name == 'Sat'

    def test_frozen(self):
        job = _job()
        with pytest.raises(ValidationError):
            job.concurrency = 3


class TestTileMetadata:
    """Tests for TileMetadata."""

    def test_unknown_keys_go_to_extra(self):
        meta = TileMetadata.model_validate({'name': 'n', 'tilestats': {'a': 1}})
        assert meta.extra == {'tilestats': {'a': 1}}
        assert meta.to_dict() == {'name': 'n', 'tilestats': {'a': 1}}

    def test_bad_format(self):
        with pytest.raises(ValidationError):
            TileMetadata(format='bmp')


class TestConfigs:
    """Tests for SeedConfig and CleanupJob."""

    def test_ids_from_keys(self):
        config = SeedConfig.model_validate(
            {
                'datas': {'osm': {'url': URL, 'bboxes': [[0, 0, 1, 1]], 'zooms': [2]}},
                'styles': {'basic': {'url': 'https://s.example.com/basic/style.json'}},
            }
        )
        assert config.datas['osm'].id == 'osm'
        assert config.styles['basic'].id == 'basic'

    def test_invalid_id(self):
        with pytest.raises(ValidationError, match='Invalid target id'):
            SeedConfig.model_validate(
                {'datas': {'../etc': {'url': URL, 'bboxes': [[0, 0, 1, 1]], 'zooms': [2]}}}
            )

    def test_style_md5_rejected(self):
        with pytest.raises(ValidationError, match='md5'):
            SeedConfig.model_validate(
                {'styles': {'s': {'url': 'https://s/style.json', 'refreshBefore': {'md5': True}}}}
            )

    def test_cleanup_job(self):
        job = CleanupJob.model_validate(
            {'bboxs': [[0, 0, 1, 1]], 'zooms': [1], 'cleanUpBefore': {'day': 10}}
        )
        assert job.cleanup_before.day == 10


class TestTaskRequest:
    """Tests for TaskRequest."""

    def test_selects_all_without_ids(self):
        assert TaskRequest(seed=True).selects('anything')

    def test_selects_listed_ids(self):
        request = TaskRequest(seed=True, ids=('a', 'b'))
        assert request.selects('a')
        assert not request.selects('c')
