"""Metadata encoding and TileJSON-style info derivation shared by the backends."""

from __future__ import annotations

import json
import logging
import math
from typing import TYPE_CHECKING, Any

from domain.models import TileMetadata
from shared.constants import (
    DEFAULT_MAXZOOM,
    DEFAULT_METADATA_NAME,
    DEFAULT_METADATA_TYPE,
    DEFAULT_METADATA_VERSION,
    DEFAULT_MINZOOM,
    DEFAULT_TILE_FORMAT,
    TILE_FORMATS,
    WORLD_BOUNDS,
)
from tiles.pyramid import bbox_from_tile_range

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping

logger = logging.getLogger(__name__)

# Keys stored as plain text rows in an MBTiles metadata table
_TEXT_KEYS = ('name', 'description', 'attribution', 'version', 'type', 'format')
_INT_KEYS = ('minzoom', 'maxzoom')
_LIST_KEYS = ('bounds', 'center')
# Row that carries structured values (vector_layers and non-text extensions)
JSON_KEY = 'json'


def _join(values: Iterable[float]) -> str:
    return ','.join(f'{v:g}' if isinstance(v, float) else str(v) for v in values)


def encode_metadata_rows(metadata: TileMetadata) -> dict[str, str]:
    """Flatten *metadata* into MBTiles ``name -> value`` text rows."""
    rows: dict[str, str] = {}
    for key in _TEXT_KEYS:
        value = getattr(metadata, key)
        if value is not None:
            rows[key] = str(value)
    for key in _INT_KEYS:
        value = getattr(metadata, key)
        if value is not None:
            rows[key] = str(int(value))
    for key in _LIST_KEYS:
        value = getattr(metadata, key)
        if value is not None:
            rows[key] = _join(value)

    structured: dict[str, Any] = {}
    if metadata.vector_layers is not None:
        structured['vector_layers'] = [
            layer.model_dump(exclude_none=True) for layer in metadata.vector_layers
        ]
    for key, value in metadata.extra.items():
        if isinstance(value, str):
            rows[key] = value
        else:
            structured[key] = value
    if structured:
        rows[JSON_KEY] = json.dumps(structured, separators=(',', ':'))
    return rows


def decode_metadata_rows(rows: Iterable[tuple[str, str]]) -> TileMetadata:
    """Inverse of :func:`encode_metadata_rows`; malformed values are skipped."""
    data: dict[str, Any] = {}
    for name, value in rows:
        try:
            if name == JSON_KEY:
                parsed = json.loads(value)
                if isinstance(parsed, dict):
                    data.update(parsed)
            elif name in _INT_KEYS:
                data[name] = int(float(value))
            elif name in _LIST_KEYS:
                parts = [float(v) for v in value.split(',')]
                if len(parts) != (4 if name == 'bounds' else 3):
                    raise ValueError(name)
                data[name] = parts
            elif name == 'format' and value not in TILE_FORMATS:
                raise ValueError(name)
            else:
                data[name] = value
        except ValueError:
            logger.warning('Ignoring malformed metadata %s=%r', name, value)
    return TileMetadata.model_validate(data)


def bounds_from_zoom_ranges(
    ranges: Iterable[tuple[int, int, int, int, int]],
) -> tuple[float, float, float, float] | None:
    """Union of the extents of per-zoom ``(z, x_min, x_max, y_min, y_max)`` XYZ ranges."""
    boxes = [bbox_from_tile_range(*r) for r in ranges]
    if not boxes:
        return None
    return (
        min(b[0] for b in boxes),
        min(b[1] for b in boxes),
        max(b[2] for b in boxes),
        max(b[3] for b in boxes),
    )


def complete_info(
    metadata: TileMetadata,
    *,
    minzoom: int | None,
    maxzoom: int | None,
    tile_format: str | None,
    bounds: tuple[float, float, float, float] | None,
    layer_names: Callable[[], Iterable[str]] | None = None,
) -> TileMetadata:
    """Fill every field missing from *metadata* with derived values, then defaults.

    Explicit metadata always wins. Derived values come from the stored tiles;
    when the store is empty the world bounds, zooms 0..22 and ``png`` apply.
    *layer_names* is only called for pbf stores without stored vector_layers.
    """
    info: dict[str, Any] = metadata.model_dump()
    info['name'] = info['name'] or DEFAULT_METADATA_NAME
    info['description'] = info['description'] or info['name']
    info['version'] = info['version'] or DEFAULT_METADATA_VERSION
    info['type'] = info['type'] or DEFAULT_METADATA_TYPE
    if info['minzoom'] is None:
        info['minzoom'] = minzoom if minzoom is not None else DEFAULT_MINZOOM
    if info['maxzoom'] is None:
        info['maxzoom'] = maxzoom if maxzoom is not None else DEFAULT_MAXZOOM
    if info['format'] is None:
        info['format'] = tile_format or DEFAULT_TILE_FORMAT
    if info['bounds'] is None:
        info['bounds'] = bounds or WORLD_BOUNDS
    if info['center'] is None:
        b = info['bounds']
        info['center'] = (
            (b[0] + b[2]) / 2,
            (b[1] + b[3]) / 2,
            math.floor((info['minzoom'] + info['maxzoom']) / 2),
        )
    if info['format'] == 'pbf' and info['vector_layers'] is None:
        names = layer_names() if layer_names is not None else ()
        info['vector_layers'] = [{'id': name} for name in names]
    return TileMetadata.model_validate(info)


def merge_metadata(current: TileMetadata, updates: TileMetadata | Mapping[str, Any]) -> TileMetadata:
    """Overlay the non-empty fields of *updates* on *current*."""
    if not isinstance(updates, TileMetadata):
        updates = TileMetadata.model_validate(dict(updates))
    merged = current.model_dump(exclude_none=True, exclude={'extra'})
    merged.update(updates.model_dump(exclude_none=True, exclude={'extra'}))
    merged['extra'] = {**current.extra, **updates.extra}
    return TileMetadata.model_validate(merged)
