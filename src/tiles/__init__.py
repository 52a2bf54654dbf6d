"""Tile addressing, storage backends and upstream fetching.

This package provides:
- TilePyramid: enumeration of the tiles covering bounding boxes and zooms
- MBTilesStore: SQLite MBTiles backend
- XYZStore: z/x/y directory backend with an md5 sidecar database
- download_with_retry: HTTP tile fetch with absence detection and backoff
"""

from tiles.fetcher import FetchResult, download_with_retry, fetch_data
from tiles.image import detect_format, is_fully_transparent
from tiles.mbtiles import MBTilesStore
from tiles.pyramid import TileCoord, TilePyramid, enumerate_tiles, tile_bounds
from tiles.store import TileStore, open_store
from tiles.xyz import XYZStore, remove_empty_folders

__all__ = [
    'FetchResult',
    'MBTilesStore',
    'TileCoord',
    'TilePyramid',
    'TileStore',
    'XYZStore',
    'detect_format',
    'download_with_retry',
    'enumerate_tiles',
    'fetch_data',
    'is_fully_transparent',
    'open_store',
    'remove_empty_folders',
    'tile_bounds',
]
