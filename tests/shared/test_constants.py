"""Tests for constants module."""

from shared.constants import (
    CLEANUP_FILE_NAMES,
    DEFAULT_MAXZOOM,
    DEFAULT_MINZOOM,
    HTTP_BACKOFF_BASE_S,
    HTTP_BACKOFF_MAX_S,
    LOCK_FILE_SUFFIX,
    MAX_ZOOM,
    MERCATOR_MAX_LAT_DEG,
    MIN_ZOOM,
    MS_PER_DAY,
    SEED_FILE_NAMES,
    TILE_FORMATS,
    WORLD_BOUNDS,
    JobState,
    StorageType,
    TileScheme,
)


class TestEnums:
    """Tests for the string enums used in documents and status files."""

    def test_storage_values(self):
        assert StorageType('mbtiles') is StorageType.MBTILES
        assert StorageType('xyz') is StorageType.XYZ

    def test_scheme_values(self):
        assert {s.value for s in TileScheme} == {'xyz', 'tms'}

    def test_job_states(self):
        """Job states serialise as plain strings."""
        assert [s.value for s in JobState] == ['idle', 'running', 'done', 'failed', 'cancelled']
        assert JobState.DONE == 'done'


class TestValues:
    """Sanity checks on numeric constants."""

    def test_zoom_range(self):
        assert (MIN_ZOOM, MAX_ZOOM) == (0, 22)
        assert (DEFAULT_MINZOOM, DEFAULT_MAXZOOM) == (MIN_ZOOM, MAX_ZOOM)

    def test_world_bounds(self):
        assert WORLD_BOUNDS == (-180.0, -MERCATOR_MAX_LAT_DEG, 180.0, MERCATOR_MAX_LAT_DEG)

    def test_backoff(self):
        assert 0 < HTTP_BACKOFF_BASE_S < HTTP_BACKOFF_MAX_S

    def test_day(self):
        assert MS_PER_DAY == 86_400_000

    def test_document_lookup_order(self):
        """TOML documents win over JSON ones."""
        assert SEED_FILE_NAMES[0].endswith('.toml')
        assert CLEANUP_FILE_NAMES[0].endswith('.toml')

    def test_formats_and_suffixes(self):
        assert 'png' in TILE_FORMATS
        assert 'pbf' in TILE_FORMATS
        assert LOCK_FILE_SUFFIX == '.lock'
