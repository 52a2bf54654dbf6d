"""
Точка входа дочернего процесса, выполняющего одно задание.

Запускается через ``multiprocessing.Process``.
События прогресса передаются родителю через ``mp.Queue``; последнее
сообщение всегда ``('finished', state, error, report)``.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import multiprocessing as mp
    from multiprocessing.synchronize import Event as _MpEvent

    from domain.models import TaskRequest
    from domain.settings import AppSettings

logger = logging.getLogger(__name__)


class QueueProgressSink:
    """Пересылает события прогресса в родительский процесс."""

    def __init__(self, queue: mp.Queue) -> None:
        self._q = queue

    def on_progress(self, done: int, total: int, label: str) -> None:
        self._q.put(('progress', done, total, label))


def worker_process_main(
    request: TaskRequest,
    settings: AppSettings,
    queue: mp.Queue,
    cancel_event: _MpEvent,
) -> None:
    """Выполнить *request* и отправить итог последним сообщением очереди."""
    # Дочерний процесс не наследует изменения sys.path, сделанные во время работы
    src_dir = str(Path(__file__).resolve().parent.parent)
    if src_dir not in sys.path:
        sys.path.insert(0, src_dir)

    _logging = importlib.import_module('shared.logging_setup')
    _logging.setup_logging(settings.log_level, settings.data_dir / 'log')

    _constants = importlib.import_module('shared.constants')
    _progress = importlib.import_module('shared.progress')
    _tasks = importlib.import_module('services.tasks')
    job_state = _constants.JobState

    sink = QueueProgressSink(queue)
    cancel = _progress.EventCancelToken(cancel_event)

    try:
        report = asyncio.run(
            _tasks.run_tasks(request, settings, cancel=cancel, on_progress=sink.on_progress)
        )
        queue.put(('finished', job_state.DONE.value, '', report.to_dict()))
    except (_progress.CancelledError, KeyboardInterrupt):
        logger.info('Task cancelled')
        queue.put(('finished', job_state.CANCELLED.value, 'Operation cancelled', None))
    except Exception as e:
        logger.exception('Worker process failed')
        queue.put(('finished', job_state.FAILED.value, str(e), None))
