"""Mutual exclusion for shared cache resources.

Two strategies share the ``with_lock(resource_key, timeout, fn)`` contract:

- :class:`BusyRetryLock` for SQLite databases: run ``fn`` and retry while the
  database reports itself busy or locked.
- :class:`LockFileLock` for plain files: an advisory ``<path>.lock`` marker
  created exclusively, polled while another writer holds it and always
  removed once ``fn`` returns or raises.

Markers left behind by a crashed process are removed with
:func:`remove_stale_locks` before a new job starts.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, TypeVar

from shared.constants import (
    LOCK_FILE_POLL_S,
    LOCK_FILE_SUFFIX,
    SQLITE_BUSY_BACKOFF_FACTOR,
    SQLITE_BUSY_RETRY_MAX_S,
    SQLITE_BUSY_RETRY_S,
)
from shared.errors import LockTimeoutError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Substrings of sqlite3.OperationalError messages meaning "try again later"
_BUSY_MARKERS = ('database is locked', 'database is busy', 'database table is locked')


class ResourceLock(Protocol):
    def with_lock(self, resource_key: str, timeout: float, fn: Callable[[], T]) -> T: ...


@dataclass(frozen=True)
class RetryPolicy:
    """Sleep schedule between busy retries: ``interval * factor**n`` capped at ``max_interval``."""

    interval: float = SQLITE_BUSY_RETRY_S
    factor: float = SQLITE_BUSY_BACKOFF_FACTOR
    max_interval: float = SQLITE_BUSY_RETRY_MAX_S

    def delays(self) -> Iterator[float]:
        delay = self.interval
        while True:
            yield min(delay, self.max_interval)
            delay *= self.factor


def is_busy_error(exc: BaseException) -> bool:
    """True for SQLite errors that mean another connection holds the database."""
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return any(marker in message for marker in _BUSY_MARKERS)


class BusyRetryLock:
    """Retry ``fn`` while SQLite reports the database busy, until *timeout* expires."""

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._clock = clock

    def with_lock(self, resource_key: str, timeout: float, fn: Callable[[], T]) -> T:
        deadline = self._clock() + max(0.0, timeout)
        delays = self.policy.delays()
        attempts = 0
        while True:
            attempts += 1
            try:
                return fn()
            except sqlite3.OperationalError as e:
                if not is_busy_error(e):
                    raise
                remaining = deadline - self._clock()
                if remaining <= 0:
                    logger.warning(
                        'Giving up on busy resource %s after %d attempts', resource_key, attempts
                    )
                    raise LockTimeoutError(resource_key, timeout) from e
                self._sleep(min(next(delays), remaining))


def lock_path_for(path: str | Path) -> Path:
    p = Path(path)
    return p.with_name(p.name + LOCK_FILE_SUFFIX)


class LockFileLock:
    """Advisory per-file lock based on an exclusively created marker file."""

    def __init__(
        self,
        poll_interval: float = LOCK_FILE_POLL_S,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock

    def _try_create(self, lock_path: Path) -> bool:
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        except FileNotFoundError:
            # Parent directory does not exist yet
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            return self._try_create(lock_path)
        try:
            os.write(fd, f'{os.getpid()} {time.time():.3f}\n'.encode())
        finally:
            os.close(fd)
        return True

    @contextmanager
    def acquire(self, path: str | Path, timeout: float) -> Iterator[Path]:
        """Hold the lock of *path* for the duration of the ``with`` block.

        Raises:
            LockTimeoutError: If the marker still exists after *timeout* seconds.
        """
        lock_path = lock_path_for(path)
        deadline = self._clock() + max(0.0, timeout)
        while not self._try_create(lock_path):
            if self._clock() >= deadline:
                raise LockTimeoutError(str(path), timeout)
            self._sleep(self.poll_interval)
        try:
            yield lock_path
        finally:
            try:
                lock_path.unlink()
            except FileNotFoundError:
                logger.debug('Lock marker %s already removed', lock_path)

    def with_lock(self, resource_key: str, timeout: float, fn: Callable[[], T]) -> T:
        with self.acquire(resource_key, timeout):
            return fn()


def remove_stale_locks(root: str | Path) -> int:
    """Delete every ``*.lock`` marker under *root*.

    Must only run while no job is active. Returns the number of removed markers.
    """
    root = Path(root)
    if not root.exists():
        return 0
    removed = 0
    for lock_path in root.rglob(f'*{LOCK_FILE_SUFFIX}'):
        if not lock_path.is_file():
            continue
        try:
            lock_path.unlink()
        except FileNotFoundError:
            continue
        removed += 1
        logger.info('Removed stale lock %s', lock_path)
    logger.info('Removed %d stale lock(s) under %s', removed, root)
    return removed
