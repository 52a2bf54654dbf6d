from __future__ import annotations

import gzip
import hashlib
import logging
from io import BytesIO
from typing import TYPE_CHECKING

import mapbox_vector_tile
from PIL import Image, UnidentifiedImageError

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)

# Magic numbers of the raster formats we can recognise
PNG_SIGNATURE = b'\x89PNG\r\n\x1a\n'
JPEG_SOI = b'\xff\xd8'
JPEG_EOI = b'\xff\xd9'
GIF_SIGNATURES = (b'GIF87a', b'GIF89a')
RIFF_TAG = b'RIFF'
WEBP_TAG = b'WEBP'
GZIP_MAGIC = b'\x1f\x8b'

# Content types per tile format
CONTENT_TYPES = {
    'png': 'image/png',
    'jpeg': 'image/jpeg',
    'gif': 'image/gif',
    'webp': 'image/webp',
    'pbf': 'application/x-protobuf',
}


def detect_format(data: bytes) -> str:
    """Sniff the tile format from its leading bytes.

    Anything that is not a known raster format is treated as a vector tile.
    """
    if data.startswith(PNG_SIGNATURE):
        return 'png'
    if data.startswith(JPEG_SOI) and data.endswith(JPEG_EOI):
        return 'jpeg'
    if data[:6] in GIF_SIGNATURES:
        return 'gif'
    if data[:4] == RIFF_TAG and data[8:12] == WEBP_TAG:
        return 'webp'
    return 'pbf'


def is_fully_transparent(data: bytes) -> bool:
    """Return True if *data* decodes to an image whose every pixel has alpha 0.

    Images without an alpha channel and data that cannot be decoded are
    never considered transparent.
    """
    try:
        with Image.open(BytesIO(data)) as img:
            if img.mode not in ('RGBA', 'LA', 'PA') and 'transparency' not in img.info:
                return False
            alpha = img.convert('RGBA').getchannel('A')
            return alpha.getextrema() == (0, 0)
    except (UnidentifiedImageError, OSError, ValueError) as e:
        logger.debug('Cannot decode tile for transparency check: %s', e)
        return False


def md5_hex(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()  # noqa: S324


def vector_layer_names(payloads: Iterable[bytes]) -> list[str]:
    """Layer names found in the vector tiles *payloads*, in first-seen order.

    Gzipped tiles are inflated first. Tiles that cannot be decoded are skipped.
    """
    names: dict[str, None] = {}
    for data in payloads:
        try:
            if data[:2] == GZIP_MAGIC:
                data = gzip.decompress(data)
            layers = mapbox_vector_tile.decode(data)
        except Exception as e:
            logger.warning('Cannot decode vector tile for layer names: %s', e)
            continue
        for name in layers:
            names.setdefault(name, None)
    return list(names)
