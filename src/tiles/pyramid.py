"""Web Mercator tile pyramid enumeration.

Converts geographic bounding boxes and zoom levels into the set of XYZ tile
addresses that cover them, plus the inverse helpers used to derive backend
bounds from stored tile ranges.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, NamedTuple

from shared.constants import (
    MERCATOR_MAX_LAT_DEG,
    WORLD_LNG_HALF_SPAN_DEG,
    WORLD_LNG_SPAN_DEG,
)

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from domain.models import BBox


class TileCoord(NamedTuple):
    """XYZ tile address: row 0 is the northernmost row."""

    z: int
    x: int
    y: int


@dataclass(frozen=True)
class TileRange:
    """Inclusive rectangle of tiles at one zoom level."""

    z: int
    x_min: int
    x_max: int
    y_min: int
    y_max: int

    @property
    def count(self) -> int:
        return (self.x_max - self.x_min + 1) * (self.y_max - self.y_min + 1)

    def __iter__(self) -> Iterator[TileCoord]:
        for x in range(self.x_min, self.x_max + 1):
            for y in range(self.y_min, self.y_max + 1):
                yield TileCoord(self.z, x, y)


def _clamp(v: int, lo: int, hi: int) -> int:
    return min(max(v, lo), hi)


def lng_to_tile_x(lng_deg: float, zoom: int) -> int:
    """Column of the tile containing longitude *lng_deg*, clamped to the grid."""
    n = 1 << zoom
    x = math.floor((lng_deg + WORLD_LNG_HALF_SPAN_DEG) / WORLD_LNG_SPAN_DEG * n)
    return _clamp(x, 0, n - 1)


def lat_to_tile_y(lat_deg: float, zoom: int) -> int:
    """Row of the tile containing latitude *lat_deg*, clamped to the grid.

    Latitudes beyond the Mercator limit are clamped first.
    """
    n = 1 << zoom
    lat = min(max(lat_deg, -MERCATOR_MAX_LAT_DEG), MERCATOR_MAX_LAT_DEG)
    lat_rad = math.radians(lat)
    merc = math.log(math.tan(lat_rad) + 1.0 / math.cos(lat_rad))
    y = math.floor((1.0 - merc / math.pi) / 2.0 * n)
    return _clamp(y, 0, n - 1)


def tile_x_to_lng(x: int, zoom: int) -> float:
    """Longitude of the west edge of column *x*."""
    return x / (1 << zoom) * WORLD_LNG_SPAN_DEG - WORLD_LNG_HALF_SPAN_DEG


def tile_y_to_lat(y: int, zoom: int) -> float:
    """Latitude of the north edge of row *y*."""
    merc_y = math.pi * (1.0 - 2.0 * y / (1 << zoom))
    return math.degrees(math.atan(math.sinh(merc_y)))


def tile_bounds(z: int, x: int, y: int) -> tuple[float, float, float, float]:
    """Geographic [west, south, east, north] of XYZ tile (z, x, y)."""
    return (
        tile_x_to_lng(x, z),
        tile_y_to_lat(y + 1, z),
        tile_x_to_lng(x + 1, z),
        tile_y_to_lat(y, z),
    )


def tile_range(bbox: BBox, zoom: int) -> TileRange:
    """Covering tile rectangle of *bbox* at *zoom*.

    Raises:
        ValueError: If the box has ``lon_min > lon_max`` (antimeridian
            crossing is not supported) or ``lat_min > lat_max``.
    """
    lon_min, lat_min, lon_max, lat_max = bbox
    if lon_min > lon_max:
        msg = f'lon_min > lon_max in bbox {list(bbox)}'
        raise ValueError(msg)
    if lat_min > lat_max:
        msg = f'lat_min > lat_max in bbox {list(bbox)}'
        raise ValueError(msg)
    return TileRange(
        z=zoom,
        x_min=lng_to_tile_x(lon_min, zoom),
        x_max=lng_to_tile_x(lon_max, zoom),
        # North edge maps to the smaller row number
        y_min=lat_to_tile_y(lat_max, zoom),
        y_max=lat_to_tile_y(lat_min, zoom),
    )


def bbox_from_tile_range(
    z: int, x_min: int, x_max: int, y_min: int, y_max: int
) -> tuple[float, float, float, float]:
    """Geographic extent of an inclusive XYZ tile rectangle."""
    west, _, _, north = tile_bounds(z, x_min, y_min)
    _, south, east, _ = tile_bounds(z, x_max, y_max)
    return west, south, east, north


def xyz_to_tms(z: int, y: int) -> int:
    """Flip a row between XYZ and TMS numbering (the operation is an involution)."""
    return (1 << z) - 1 - y


tms_to_xyz = xyz_to_tms


class TilePyramid:
    """Tiles covering a list of bounding boxes over a list of zoom levels.

    Iteration order is deterministic: bbox, then zoom, then x, then y.
    Tiles shared by overlapping boxes are yielded (and counted) once per box.

    Usage:
        pyramid = TilePyramid([(-10, -10, 10, 10)], [0, 1])
        pyramid.total  # 5
        for z, x, y in pyramid: ...
    """

    def __init__(self, bboxes: Sequence[BBox], zooms: Sequence[int]) -> None:
        self.bboxes = tuple(tuple(b) for b in bboxes)
        self.zooms = tuple(zooms)
        self._ranges = [tile_range(b, z) for b in self.bboxes for z in self.zooms]

    @property
    def ranges(self) -> list[TileRange]:
        return list(self._ranges)

    @property
    def total(self) -> int:
        return sum(r.count for r in self._ranges)

    def __len__(self) -> int:
        return self.total

    def __iter__(self) -> Iterator[TileCoord]:
        for r in self._ranges:
            yield from r


def enumerate_tiles(
    bboxes: Sequence[BBox], zooms: Sequence[int]
) -> tuple[int, Iterator[TileCoord]]:
    """Return ``(total, lazy iterator)`` of the tiles covering *bboxes* at *zooms*.

    Args:
        bboxes: ``(lon_min, lat_min, lon_max, lat_max)`` boxes in degrees.
        zooms: Zoom levels, each in ``[0, 22]``.

    Returns:
        The total tile count (duplicates across boxes included) and an
        iterator producing the same number of :class:`TileCoord` values.
    """
    pyramid = TilePyramid(bboxes, zooms)
    return pyramid.total, iter(pyramid)
