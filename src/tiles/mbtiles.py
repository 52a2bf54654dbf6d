"""MBTiles storage backend.

Tiles live in a single SQLite file following the MBTiles layout: a ``tiles``
table keyed by ``(zoom_level, tile_column, tile_row)`` with rows in TMS order,
and a ``metadata`` name/value table. Each tile row also carries an optional
content ``hash`` and its ``created`` time in epoch milliseconds.

All public methods take XYZ coordinates; the TMS flip happens here.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

from infrastructure.locks import BusyRetryLock
from shared.constants import LOCK_TIMEOUT_S, MS_PER_SECOND, SQLITE_BUSY_TIMEOUT_MS
from shared.errors import BackendError
from tiles.image import detect_format, md5_hex, vector_layer_names
from tiles.metadata import (
    bounds_from_zoom_ranges,
    complete_info,
    decode_metadata_rows,
    encode_metadata_rows,
    merge_metadata,
)
from tiles.pyramid import tms_to_xyz, xyz_to_tms

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator, Mapping

    from domain.models import TileMetadata
    from infrastructure.locks import ResourceLock

logger = logging.getLogger(__name__)

SCHEMA = '''
    CREATE TABLE IF NOT EXISTS metadata (
        name TEXT NOT NULL,
        value TEXT NOT NULL,
        PRIMARY KEY (name)
    );

    CREATE TABLE IF NOT EXISTS tiles (
        zoom_level INTEGER NOT NULL,
        tile_column INTEGER NOT NULL,
        tile_row INTEGER NOT NULL,
        tile_data BLOB NOT NULL,
        hash TEXT,
        created INTEGER,
        PRIMARY KEY (zoom_level, tile_column, tile_row)
    );
'''

UPSERT_TILE = '''
    INSERT INTO tiles (zoom_level, tile_column, tile_row, tile_data, hash, created)
    VALUES (?, ?, ?, ?, ?, ?)
    ON CONFLICT (zoom_level, tile_column, tile_row)
    DO UPDATE SET
        tile_data = excluded.tile_data,
        hash = excluded.hash,
        created = excluded.created
'''

# Rows read per query when scanning every tile payload
TILE_SCAN_BATCH = 200

UPSERT_METADATA = '''
    INSERT INTO metadata (name, value) VALUES (?, ?)
    ON CONFLICT (name) DO UPDATE SET value = excluded.value
'''


def now_ms() -> int:
    return int(time.time() * MS_PER_SECOND)


class MBTilesStore:
    """Read/write access to one ``.mbtiles`` file.

    Writes go through a :class:`BusyRetryLock` so that concurrent writers
    (other threads or processes) are retried instead of failing on
    ``database is locked``. The connection itself is shared between the
    worker threads of one job and serialised with a mutex.

    Usage:
        store = MBTilesStore.open(path, create=True)
        store.put_tile(1, 0, 0, data, store_md5=True)
        data = store.get_tile(1, 0, 0)
        store.close()
    """

    def __init__(
        self,
        path: Path,
        conn: sqlite3.Connection,
        *,
        lock: ResourceLock | None = None,
        lock_timeout: float = LOCK_TIMEOUT_S,
    ) -> None:
        self.path = path
        self._conn: sqlite3.Connection | None = conn
        self._mutex = threading.RLock()
        self._lock = lock or BusyRetryLock()
        self._lock_timeout = lock_timeout

    @classmethod
    def open(
        cls,
        path: str | Path,
        *,
        create: bool = False,
        lock: ResourceLock | None = None,
        lock_timeout: float = LOCK_TIMEOUT_S,
    ) -> MBTilesStore:
        """Open an MBTiles file, creating file and schema when *create* is set.

        Raises:
            BackendError: If the file does not exist (and *create* is false)
                or cannot be opened as SQLite.
        """
        path = Path(path)
        if create:
            path.parent.mkdir(parents=True, exist_ok=True)
        elif not path.exists():
            msg = f'MBTiles file does not exist: {path}'
            raise BackendError(msg)
        try:
            conn = sqlite3.connect(
                str(path),
                timeout=SQLITE_BUSY_TIMEOUT_MS / MS_PER_SECOND,
                check_same_thread=False,
            )
        except sqlite3.Error as e:
            msg = f'Cannot open MBTiles file {path}: {e}'
            raise BackendError(msg) from e
        store = cls(path, conn, lock=lock, lock_timeout=lock_timeout)
        try:
            if create:
                store._write(lambda c: c.execute('PRAGMA journal_mode=WAL'))
                store._write(lambda c: c.executescript(SCHEMA))
            else:
                store._read(lambda c: c.execute('SELECT 1 FROM tiles LIMIT 1').fetchall())
        except sqlite3.DatabaseError as e:
            store.close()
            msg = f'Unusable MBTiles file {path}: {e}'
            raise BackendError(msg) from e
        logger.info('MBTiles opened at %s', path)
        return store

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            msg = f'MBTiles store {self.path} is closed'
            raise BackendError(msg)
        return self._conn

    def _read(self, fn: Callable[[sqlite3.Connection], Any]) -> Any:
        def op() -> Any:
            with self._mutex:
                return fn(self.conn)

        return self._lock.with_lock(str(self.path), self._lock_timeout, op)

    def _write(self, fn: Callable[[sqlite3.Connection], Any]) -> Any:
        def op() -> Any:
            with self._mutex:
                conn = self.conn
                try:
                    result = fn(conn)
                    conn.commit()
                except BaseException:
                    conn.rollback()
                    raise
                return result

        return self._lock.with_lock(str(self.path), self._lock_timeout, op)

    def _fetch_one(self, sql: str, params: tuple = ()) -> tuple | None:
        return self._read(lambda c: c.execute(sql, params).fetchone())

    # Tiles

    def get_tile(self, z: int, x: int, y: int) -> bytes | None:
        """Get tile data, or None if the tile is not stored."""
        row = self._fetch_one(
            'SELECT tile_data FROM tiles WHERE zoom_level = ? AND tile_column = ? AND tile_row = ?',
            (z, x, xyz_to_tms(z, y)),
        )
        return bytes(row[0]) if row is not None else None

    def get_tile_hash(self, z: int, x: int, y: int) -> str | None:
        row = self._fetch_one(
            'SELECT hash FROM tiles WHERE zoom_level = ? AND tile_column = ? AND tile_row = ?',
            (z, x, xyz_to_tms(z, y)),
        )
        return row[0] if row is not None else None

    def get_tile_created(self, z: int, x: int, y: int) -> int | None:
        """Creation time of the tile in epoch ms, or None if absent or unknown."""
        row = self._fetch_one(
            'SELECT created FROM tiles WHERE zoom_level = ? AND tile_column = ? AND tile_row = ?',
            (z, x, xyz_to_tms(z, y)),
        )
        return row[0] if row is not None else None

    def has_tile(self, z: int, x: int, y: int) -> bool:
        row = self._fetch_one(
            'SELECT 1 FROM tiles WHERE zoom_level = ? AND tile_column = ? AND tile_row = ?',
            (z, x, xyz_to_tms(z, y)),
        )
        return row is not None

    def put_tile(
        self,
        z: int,
        x: int,
        y: int,
        data: bytes,
        *,
        store_md5: bool = False,
        created: int | None = None,
    ) -> None:
        """Insert or replace a tile; the previous hash and time are overwritten.

        Args:
            z: Zoom level.
            x: Tile column.
            y: Tile row (XYZ).
            data: Tile payload.
            store_md5: Store the MD5 of *data* in ``hash``; NULL otherwise.
            created: Creation time in epoch ms. Defaults to now.
        """
        digest = md5_hex(data) if store_md5 else None
        stamp = created if created is not None else now_ms()
        self._write(
            lambda c: c.execute(
                UPSERT_TILE,
                (z, x, xyz_to_tms(z, y), sqlite3.Binary(data), digest, stamp),
            )
        )

    def delete_tile(self, z: int, x: int, y: int) -> bool:
        """Delete a tile. Returns True if a row was removed."""
        cur = self._write(
            lambda c: c.execute(
                'DELETE FROM tiles WHERE zoom_level = ? AND tile_column = ? AND tile_row = ?',
                (z, x, xyz_to_tms(z, y)),
            )
        )
        return cur.rowcount > 0

    def iter_tiles(self) -> Iterator[tuple[int, int, int]]:
        """XYZ coordinates of every stored tile."""
        rows = self._read(
            lambda c: c.execute(
                'SELECT zoom_level, tile_column, tile_row FROM tiles '
                'ORDER BY zoom_level, tile_column, tile_row'
            ).fetchall()
        )
        for z, x, row in rows:
            yield z, x, tms_to_xyz(z, row)

    def count_tiles(self) -> int:
        row = self._fetch_one('SELECT COUNT(*) FROM tiles')
        return int(row[0]) if row else 0

    # Metadata

    def read_metadata(self) -> TileMetadata:
        """Metadata exactly as stored, without derived values."""
        rows = self._read(lambda c: c.execute('SELECT name, value FROM metadata').fetchall())
        return decode_metadata_rows(rows)

    def update_metadata(self, metadata: TileMetadata | Mapping[str, Any]) -> None:
        """Upsert the given metadata keys; keys not mentioned are kept.

        ``scheme`` is always recorded as ``tms``.
        """
        merged = merge_metadata(self.read_metadata(), metadata)
        rows = encode_metadata_rows(merged)
        rows['scheme'] = 'tms'

        def upsert(c: sqlite3.Connection) -> None:
            c.executemany(UPSERT_METADATA, list(rows.items()))

        self._write(upsert)
        logger.debug('MBTiles metadata updated at %s: %s', self.path, sorted(rows))

    def _zoom_ranges(self) -> list[tuple[int, int, int, int, int]]:
        rows = self._read(
            lambda c: c.execute(
                'SELECT zoom_level, MIN(tile_column), MAX(tile_column), '
                'MIN(tile_row), MAX(tile_row) FROM tiles GROUP BY zoom_level'
            ).fetchall()
        )
        # TMS row bounds become swapped XYZ row bounds
        return [
            (z, x_min, x_max, tms_to_xyz(z, row_max), tms_to_xyz(z, row_min))
            for z, x_min, x_max, row_min, row_max in rows
        ]

    def _iter_tile_data(self) -> Iterator[bytes]:
        offset = 0
        while True:
            rows = self._read(
                lambda c, offset=offset: c.execute(
                    'SELECT tile_data FROM tiles ORDER BY zoom_level, tile_column, tile_row '
                    'LIMIT ? OFFSET ?',
                    (TILE_SCAN_BATCH, offset),
                ).fetchall()
            )
            if not rows:
                return
            for (data,) in rows:
                yield bytes(data)
            offset += TILE_SCAN_BATCH

    def get_info(self) -> TileMetadata:
        """Stored metadata completed with values derived from the tiles."""
        metadata = self.read_metadata()
        zooms = self._fetch_one('SELECT MIN(zoom_level), MAX(zoom_level) FROM tiles')
        first = self._fetch_one('SELECT tile_data FROM tiles LIMIT 1')
        return complete_info(
            metadata,
            minzoom=zooms[0] if zooms else None,
            maxzoom=zooms[1] if zooms else None,
            tile_format=detect_format(bytes(first[0])) if first else None,
            bounds=bounds_from_zoom_ranges(self._zoom_ranges()),
            layer_names=lambda: vector_layer_names(self._iter_tile_data()),
        )

    def close(self) -> None:
        """Close the connection; further calls raise BackendError."""
        with self._mutex:
            if self._conn is not None:
                try:
                    self._conn.close()
                except sqlite3.Error as e:
                    logger.debug('Error closing MBTiles %s: %s', self.path, e)
                self._conn = None
                logger.info('MBTiles closed at %s', self.path)

    def __enter__(self) -> MBTilesStore:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
