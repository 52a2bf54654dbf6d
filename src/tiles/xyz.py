"""XYZ directory storage backend.

Tiles are plain files at ``{root}/{z}/{x}/{y}.{format}``. A sidecar SQLite
database ``{root}/md5.sqlite`` records the content hash and creation time of
every tile, and ``{root}/metadata.json`` holds the backend metadata.

File writes are atomic (temporary file + rename) and guarded by an advisory
``.lock`` marker next to the target file.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sqlite3
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any

from domain.models import TileMetadata
from infrastructure.locks import BusyRetryLock, LockFileLock
from shared.constants import (
    LOCK_TIMEOUT_S,
    MS_PER_SECOND,
    SQLITE_BUSY_TIMEOUT_MS,
    TMP_FILE_SUFFIX,
    XYZ_MD5_DB_NAME,
    XYZ_METADATA_FILE_NAME,
)
from shared.errors import BackendError
from tiles.image import md5_hex, vector_layer_names
from tiles.mbtiles import now_ms
from tiles.metadata import bounds_from_zoom_ranges, complete_info, merge_metadata

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator, Mapping

logger = logging.getLogger(__name__)

SIDECAR_SCHEMA = '''
    CREATE TABLE IF NOT EXISTS tiles (
        zoom_level INTEGER NOT NULL,
        tile_column INTEGER NOT NULL,
        tile_row INTEGER NOT NULL,
        hash TEXT,
        created INTEGER,
        PRIMARY KEY (zoom_level, tile_column, tile_row)
    );
'''

UPSERT_SIDECAR = '''
    INSERT INTO tiles (zoom_level, tile_column, tile_row, hash, created)
    VALUES (?, ?, ?, ?, ?)
    ON CONFLICT (zoom_level, tile_column, tile_row)
    DO UPDATE SET hash = excluded.hash, created = excluded.created
'''

# Tile, column and zoom entries: '<n>' or '<n>.<ext>'
_TILE_NAME_RE = re.compile(r'(\d+)(?:\.[A-Za-z0-9]+)?')


def write_atomic(path: Path, data: bytes) -> None:
    """Write *data* to a sibling temporary file and rename it over *path*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + TMP_FILE_SUFFIX)
    try:
        tmp.write_bytes(data)
        os.replace(tmp, path)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise


def remove_empty_folders(root: str | Path) -> int:
    """Delete empty directories below *root*, deepest first. Returns the count removed.

    *root* itself is kept.
    """
    root = Path(root)
    if not root.is_dir():
        return 0
    removed = 0
    for dirpath, _dirnames, _filenames in os.walk(root, topdown=False):
        current = Path(dirpath)
        if current == root:
            continue
        try:
            if not any(current.iterdir()):
                current.rmdir()
                removed += 1
        except OSError as e:
            # A concurrent writer may have just created something inside
            logger.debug('Keeping folder %s: %s', current, e)
    return removed


def _numeric_children(path: Path) -> list[tuple[int, Path]]:
    """Children named '<n>' or '<n>.<ext>'; lock and temporary files are skipped."""
    out = []
    try:
        entries = list(os.scandir(path))
    except OSError:
        return out
    for entry in entries:
        m = _TILE_NAME_RE.fullmatch(entry.name)
        if m:
            out.append((int(m.group(1)), Path(entry.path)))
    return out


class _Sidecar:
    """Hash and creation time of each XYZ tile, in XYZ row order."""

    def __init__(self, path: Path, lock: BusyRetryLock, lock_timeout: float) -> None:
        self.path = path
        self._lock = lock
        self._lock_timeout = lock_timeout
        self._mutex = threading.RLock()
        self._conn: sqlite3.Connection | None = sqlite3.connect(
            str(path),
            timeout=SQLITE_BUSY_TIMEOUT_MS / MS_PER_SECOND,
            check_same_thread=False,
        )
        self.run(lambda c: c.execute('PRAGMA journal_mode=WAL'), write=True)
        self.run(lambda c: c.executescript(SIDECAR_SCHEMA), write=True)

    def run(self, fn: Callable[[sqlite3.Connection], Any], *, write: bool = False) -> Any:
        def op() -> Any:
            with self._mutex:
                if self._conn is None:
                    msg = f'Sidecar {self.path} is closed'
                    raise BackendError(msg)
                try:
                    result = fn(self._conn)
                    if write:
                        self._conn.commit()
                except BaseException:
                    if write:
                        self._conn.rollback()
                    raise
                return result

        return self._lock.with_lock(str(self.path), self._lock_timeout, op)

    def get(self, z: int, x: int, y: int) -> tuple[str | None, int | None] | None:
        return self.run(
            lambda c: c.execute(
                'SELECT hash, created FROM tiles '
                'WHERE zoom_level = ? AND tile_column = ? AND tile_row = ?',
                (z, x, y),
            ).fetchone()
        )

    def upsert(self, z: int, x: int, y: int, digest: str | None, created: int) -> None:
        self.run(lambda c: c.execute(UPSERT_SIDECAR, (z, x, y, digest, created)), write=True)

    def delete(self, z: int, x: int, y: int) -> None:
        self.run(
            lambda c: c.execute(
                'DELETE FROM tiles WHERE zoom_level = ? AND tile_column = ? AND tile_row = ?',
                (z, x, y),
            ),
            write=True,
        )

    def close(self) -> None:
        with self._mutex:
            if self._conn is not None:
                self._conn.close()
                self._conn = None


class XYZStore:
    """Tile files in a ``z/x/y`` directory tree plus the md5 sidecar.

    Usage:
        store = XYZStore.open(root, tile_format='png', create=True)
        store.put_tile(3, 4, 2, data, store_md5=True)
        store.remove_empty_folders()
        store.close()
    """

    def __init__(
        self,
        root: Path,
        tile_format: str,
        sidecar: _Sidecar,
        *,
        file_lock: LockFileLock | None = None,
        lock_timeout: float = LOCK_TIMEOUT_S,
    ) -> None:
        self.root = root
        self.tile_format = tile_format
        self._sidecar = sidecar
        self._file_lock = file_lock or LockFileLock()
        self._lock_timeout = lock_timeout

    @classmethod
    def open(
        cls,
        root: str | Path,
        *,
        tile_format: str = 'png',
        create: bool = False,
        lock_timeout: float = LOCK_TIMEOUT_S,
    ) -> XYZStore:
        """Open an XYZ tree, creating the folder and sidecar when *create* is set.

        Raises:
            BackendError: If the folder is missing (and *create* is false) or the
                sidecar cannot be opened.
        """
        root = Path(root)
        if create:
            root.mkdir(parents=True, exist_ok=True)
        elif not root.is_dir():
            msg = f'XYZ folder does not exist: {root}'
            raise BackendError(msg)
        try:
            sidecar = _Sidecar(root / XYZ_MD5_DB_NAME, BusyRetryLock(), lock_timeout)
        except sqlite3.DatabaseError as e:
            msg = f'Cannot open XYZ sidecar in {root}: {e}'
            raise BackendError(msg) from e
        logger.info('XYZ store opened at %s', root)
        return cls(root, tile_format, sidecar, lock_timeout=lock_timeout)

    def tile_path(self, z: int, x: int, y: int) -> Path:
        return self.root / str(z) / str(x) / f'{y}.{self.tile_format}'

    @property
    def metadata_path(self) -> Path:
        return self.root / XYZ_METADATA_FILE_NAME

    # Tiles

    def get_tile(self, z: int, x: int, y: int) -> bytes | None:
        try:
            return self.tile_path(z, x, y).read_bytes()
        except FileNotFoundError:
            return None

    def has_tile(self, z: int, x: int, y: int) -> bool:
        return self.tile_path(z, x, y).is_file()

    def get_tile_hash(self, z: int, x: int, y: int) -> str | None:
        row = self._sidecar.get(z, x, y)
        return row[0] if row is not None else None

    def get_tile_created(self, z: int, x: int, y: int) -> int | None:
        """Creation time in epoch ms from the sidecar.

        None for tiles without a sidecar record, including files placed in
        the tree by other tools; such tiles count as stale.
        """
        row = self._sidecar.get(z, x, y)
        if row is None or row[1] is None:
            return None
        return int(row[1])

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
        path = self.tile_path(z, x, y)
        with self._file_lock.acquire(path, self._lock_timeout):
            write_atomic(path, data)
            self._sidecar.upsert(
                z,
                x,
                y,
                md5_hex(data) if store_md5 else None,
                created if created is not None else now_ms(),
            )

    def delete_tile(self, z: int, x: int, y: int) -> bool:
        """Delete the tile file and its sidecar record. Returns True if a file was removed."""
        path = self.tile_path(z, x, y)
        with self._file_lock.acquire(path, self._lock_timeout):
            try:
                path.unlink()
                removed = True
            except FileNotFoundError:
                removed = False
            self._sidecar.delete(z, x, y)
        return removed

    def iter_tiles(self) -> Iterator[tuple[int, int, int]]:
        for z, z_dir in sorted(_numeric_children(self.root)):
            if not z_dir.is_dir():
                continue
            for x, x_dir in sorted(_numeric_children(z_dir)):
                if not x_dir.is_dir():
                    continue
                for y, y_file in sorted(_numeric_children(x_dir)):
                    if y_file.is_file() and y_file.suffix == f'.{self.tile_format}':
                        yield z, x, y

    def _iter_payloads(self, tile_format: str) -> Iterator[bytes]:
        for _, z_dir in sorted(_numeric_children(self.root)):
            for _, x_dir in sorted(_numeric_children(z_dir)):
                for _, y_file in sorted(_numeric_children(x_dir)):
                    if y_file.suffix == f'.{tile_format}' and y_file.is_file():
                        yield y_file.read_bytes()

    def remove_empty_folders(self) -> int:
        removed = remove_empty_folders(self.root)
        if removed:
            logger.info('Removed %d empty folder(s) under %s', removed, self.root)
        return removed

    # Metadata

    def read_metadata(self) -> TileMetadata:
        try:
            data = json.loads(self.metadata_path.read_text(encoding='utf-8'))
        except FileNotFoundError:
            return TileMetadata()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning('Ignoring unreadable %s: %s', self.metadata_path, e)
            return TileMetadata()
        if not isinstance(data, dict):
            return TileMetadata()
        data.pop('scheme', None)
        return TileMetadata.model_validate(data)

    def update_metadata(self, metadata: TileMetadata | Mapping[str, Any]) -> None:
        """Merge *metadata* into ``metadata.json`` under the file lock."""
        path = self.metadata_path
        with self._file_lock.acquire(path, self._lock_timeout):
            merged = merge_metadata(self.read_metadata(), metadata)
            payload = {**merged.to_dict(), 'scheme': 'xyz'}
            write_atomic(path, json.dumps(payload, indent=2).encode('utf-8'))
        logger.debug('XYZ metadata updated at %s', path)

    def get_info(self) -> TileMetadata:
        """Stored metadata completed with values derived from the tile tree."""
        ranges: list[tuple[int, int, int, int, int]] = []
        tile_format: str | None = None
        for z, z_dir in _numeric_children(self.root):
            xs: list[int] = []
            ys: list[int] = []
            for x, x_dir in _numeric_children(z_dir):
                for y, y_file in _numeric_children(x_dir):
                    if tile_format is None and y_file.suffix:
                        tile_format = y_file.suffix[1:]
                    xs.append(x)
                    ys.append(y)
            if xs:
                ranges.append((z, min(xs), max(xs), min(ys), max(ys)))
        zooms = [r[0] for r in ranges]
        return complete_info(
            self.read_metadata(),
            minzoom=min(zooms) if zooms else None,
            maxzoom=max(zooms) if zooms else None,
            tile_format=tile_format,
            bounds=bounds_from_zoom_ranges(ranges),
            layer_names=lambda: vector_layer_names(self._iter_payloads('pbf')),
        )

    def close(self) -> None:
        self._sidecar.close()
        logger.info('XYZ store closed at %s', self.root)

    def __enter__(self) -> XYZStore:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
