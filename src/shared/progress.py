import asyncio
import logging
import threading
import time
from collections.abc import Callable
from typing import Protocol

from shared.constants import PROGRESS_LOG_EVERY

logger = logging.getLogger(__name__)


class CancelledError(Exception):
    """Задание обнаружило запрос на отмену."""


class CancelToken(Protocol):
    def is_cancelled(self) -> bool: ...


class EventCancelToken:
    """Токен отмены на основе ``threading.Event`` или ``multiprocessing.Event``."""

    def __init__(self, event: threading.Event | None = None) -> None:
        self._event = event if event is not None else threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()


def check_cancelled(token: CancelToken | None) -> None:
    """Бросает CancelledError, если *token* отменён."""
    if token is not None and token.is_cancelled():
        msg = 'Operation cancelled'
        raise CancelledError(msg)


class ProgressReporter:
    """Считает обработанные тайлы и периодически пишет в лог скорость и ETA."""

    def __init__(
        self,
        total: int,
        label: str = 'Progress',
        on_progress: Callable[[int, int, str], None] | None = None,
        log_every: int = PROGRESS_LOG_EVERY,
    ) -> None:
        self.total = max(1, int(total))
        self.done = 0
        self.start = time.monotonic()
        self.label = label
        self._on_progress = on_progress
        self._log_every = max(1, log_every)
        self._lock = asyncio.Lock()

    def _format_eta(self, remaining: float) -> str:
        if remaining == float('inf'):
            return '--:--'
        m, s = divmod(int(remaining), 60)
        h, m = divmod(m, 60)
        if h > 0:
            return f'{h:02d}:{m:02d}:{s:02d}'
        return f'{m:02d}:{s:02d}'

    def _render(self) -> None:
        elapsed = max(1e-6, time.monotonic() - self.start)
        rps = self.done / elapsed
        remaining = (self.total - self.done) / rps if rps > 0 else float('inf')
        if self.done == self.total or self.done % self._log_every == 0:
            logger.info(
                '%s: %d/%d | %.1f/s | ETA %s',
                self.label,
                self.done,
                self.total,
                rps,
                self._format_eta(remaining),
            )
        # Колбэк вызывается на каждом шаге, лог только раз в N тайлов
        if self._on_progress is not None:
            try:
                self._on_progress(self.done, self.total, self.label)
            except Exception:
                logger.debug('Progress callback failed', exc_info=True)

    async def step(self, n: int = 1) -> None:
        async with self._lock:
            self.done = min(self.total, self.done + n)
            self._render()
