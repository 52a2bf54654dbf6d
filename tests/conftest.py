"""Pytest configuration and fixtures for tile seeder tests."""

import sys
from io import BytesIO
from pathlib import Path

import mapbox_vector_tile
import pytest
from PIL import Image

# Add src directory to path for imports
src_path = Path(__file__).parent.parent / 'src'
sys.path.insert(0, str(src_path))

from domain.settings import AppSettings  # noqa: E402


def make_png(color=(200, 30, 30, 255), size=(8, 8), mode='RGBA') -> bytes:
    """Encode a solid-color PNG."""
    buf = BytesIO()
    Image.new(mode, size, color).save(buf, format='PNG')
    return buf.getvalue()


def make_pbf(*layer_names) -> bytes:
    """Encode a vector tile holding one point in each named layer."""
    return mapbox_vector_tile.encode(
        [
            {'name': name, 'features': [{'geometry': 'POINT(16 16)', 'properties': {}}]}
            for name in layer_names
        ]
    )


@pytest.fixture
def png_tile() -> bytes:
    return make_png()


@pytest.fixture
def transparent_tile() -> bytes:
    return make_png(color=(0, 0, 0, 0))


@pytest.fixture
def settings(tmp_path) -> AppSettings:
    return AppSettings(data_dir=tmp_path / 'data')


@pytest.fixture
def vector_tile():
    """Factory for vector tiles: ``vector_tile('water', 'roads')``."""
    return make_pbf
