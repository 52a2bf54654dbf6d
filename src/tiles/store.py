"""Common interface of the tile storage backends."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

from shared.constants import LOCK_TIMEOUT_S, StorageType
from tiles.mbtiles import MBTilesStore
from tiles.xyz import XYZStore

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping
    from pathlib import Path

    from domain.models import TileMetadata


class TileStore(Protocol):
    """Operations the seed and cleanup services need from a backend.

    Coordinates are always XYZ (row 0 at the north edge).
    """

    def get_tile(self, z: int, x: int, y: int) -> bytes | None: ...

    def has_tile(self, z: int, x: int, y: int) -> bool: ...

    def get_tile_hash(self, z: int, x: int, y: int) -> str | None: ...

    def get_tile_created(self, z: int, x: int, y: int) -> int | None: ...

    def put_tile(
        self,
        z: int,
        x: int,
        y: int,
        data: bytes,
        *,
        store_md5: bool = False,
        created: int | None = None,
    ) -> None: ...

    def delete_tile(self, z: int, x: int, y: int) -> bool: ...

    def iter_tiles(self) -> Iterator[tuple[int, int, int]]: ...

    def update_metadata(self, metadata: TileMetadata | Mapping[str, Any]) -> None: ...

    def get_info(self) -> TileMetadata: ...

    def close(self) -> None: ...


def open_store(
    storage: StorageType,
    location: Path,
    *,
    tile_format: str = 'png',
    create: bool = False,
    lock_timeout: float = LOCK_TIMEOUT_S,
) -> TileStore:
    """Open the backend of kind *storage* at *location* (a file or a folder)."""
    if storage == StorageType.MBTILES:
        return MBTilesStore.open(location, create=create, lock_timeout=lock_timeout)
    if storage == StorageType.XYZ:
        return XYZStore.open(
            location, tile_format=tile_format, create=create, lock_timeout=lock_timeout
        )
    msg = f'Unsupported storage type: {storage}'
    raise ValueError(msg)
