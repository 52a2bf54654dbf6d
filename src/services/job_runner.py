"""
Запуск фоновых заданий, не более одного одновременно.

Задание выполняется в отдельном ``multiprocessing.Process``, долгое
заполнение не блокирует вызывающий код. Поток чтения разбирает очередь
рабочего процесса, обновляет реестр и фиксирует итоговое состояние. Реестр
дублируется в JSON-файл состояния, поэтому итог последнего задания
сохраняется между перезапусками.
"""

from __future__ import annotations

import json
import logging
import multiprocessing as mp
import queue as _queue_mod
import threading
import time
from dataclasses import asdict, dataclass, field, fields, replace
from typing import TYPE_CHECKING, Any

from services._worker_entry import worker_process_main
from shared.constants import (
    JOB_CANCEL_GRACE_S,
    JOB_QUEUE_POLL_S,
    JOB_READER_JOIN_S,
    JOB_STATUS_FLUSH_S,
    JobState,
)
from shared.diagnostics import is_process_alive
from shared.errors import JobRejectedError
from tiles.xyz import write_atomic

if TYPE_CHECKING:
    from collections.abc import Callable
    from multiprocessing.context import BaseContext
    from pathlib import Path

    from domain.models import TaskRequest
    from domain.settings import AppSettings

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.IDLE: frozenset({JobState.RUNNING}),
    JobState.RUNNING: frozenset({JobState.DONE, JobState.FAILED, JobState.CANCELLED}),
    JobState.DONE: frozenset({JobState.RUNNING}),
    JobState.FAILED: frozenset({JobState.RUNNING}),
    JobState.CANCELLED: frozenset({JobState.RUNNING}),
}


@dataclass
class JobStatus:
    state: JobState = JobState.IDLE
    pid: int | None = None
    request: dict[str, Any] | None = None
    started_at: float | None = None
    finished_at: float | None = None
    cancel_requested: bool = False
    progress: dict[str, Any] = field(default_factory=dict)
    error: str = ''
    report: dict[str, Any] | None = None

    @property
    def is_running(self) -> bool:
        return self.state == JobState.RUNNING

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data['state'] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: Any) -> JobStatus:
        if not isinstance(data, dict):
            msg = 'Status document must be an object'
            raise TypeError(msg)
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values['state'] = JobState(values.get('state', JobState.IDLE.value))
        return cls(**values)


class JobRegistry:
    """Потокобезопасный реестр единственного слота задания.

    Переходы проверяются: задание стартует, только если другое не выполняется,
    и завершается ровно один раз. Каждое изменение пишется в *status_file*,
    если он задан.
    """

    def __init__(self, status_file: Path | None = None) -> None:
        self._lock = threading.Lock()
        self._status_file = status_file
        self._last_flush = 0.0
        self._status = self._load()

    @property
    def status_file(self) -> Path | None:
        return self._status_file

    def _load(self) -> JobStatus:
        if self._status_file is None or not self._status_file.exists():
            return JobStatus()
        try:
            raw = json.loads(self._status_file.read_text(encoding='utf-8'))
            status = JobStatus.from_dict(raw)
        except (OSError, ValueError, TypeError) as e:
            logger.warning('Ignoring unreadable status file %s: %s', self._status_file, e)
            return JobStatus()
        if status.is_running and not is_process_alive(status.pid):
            logger.warning(
                'Previous job (pid=%s) ended without reporting; marking it failed', status.pid
            )
            status.state = JobState.FAILED
            status.error = 'Worker exited unexpectedly'
            status.finished_at = time.time()
        return status

    def _persist(self) -> None:
        if self._status_file is None:
            return
        payload = json.dumps(self._status.to_dict(), indent=2, ensure_ascii=False)
        try:
            write_atomic(self._status_file, payload.encode('utf-8'))
        except OSError as e:
            logger.warning('Failed to write status file %s: %s', self._status_file, e)
        self._last_flush = time.monotonic()

    def _check_transition(self, new_state: JobState) -> None:
        current = self._status.state
        if new_state not in _TRANSITIONS[current]:
            msg = f'Invalid job transition: {current.value} -> {new_state.value}'
            raise ValueError(msg)

    def snapshot(self) -> JobStatus:
        with self._lock:
            return replace(self._status, progress=dict(self._status.progress))

    def is_running(self) -> bool:
        with self._lock:
            return self._status.is_running

    def try_start(self, request: dict[str, Any] | None = None) -> bool:
        """Claim the slot. Returns False when a job is already running."""
        with self._lock:
            if self._status.is_running:
                return False
            self._check_transition(JobState.RUNNING)
            self._status = JobStatus(
                state=JobState.RUNNING,
                request=request,
                started_at=time.time(),
            )
            self._persist()
            return True

    def start(self, request: dict[str, Any] | None = None) -> None:
        """Like :meth:`try_start` but raises JobRejectedError when busy."""
        if not self.try_start(request):
            msg = 'A job is already running'
            raise JobRejectedError(msg)

    def set_pid(self, pid: int | None) -> None:
        with self._lock:
            self._status.pid = pid
            self._persist()

    def request_cancel(self) -> bool:
        with self._lock:
            if not self._status.is_running:
                return False
            self._status.cancel_requested = True
            self._persist()
            return True

    def update_progress(self, done: int, total: int, label: str) -> None:
        with self._lock:
            if not self._status.is_running:
                return
            self._status.progress = {'done': done, 'total': total, 'label': label}
            if time.monotonic() - self._last_flush >= JOB_STATUS_FLUSH_S:
                self._persist()

    def finish(
        self,
        state: JobState,
        error: str = '',
        report: dict[str, Any] | None = None,
    ) -> bool:
        """Record the final state. Returns False if the job already finished."""
        with self._lock:
            if not self._status.is_running:
                return False
            self._check_transition(state)
            self._status.state = state
            self._status.error = error
            self._status.report = report
            self._status.finished_at = time.time()
            self._persist()
            return True


class JobRunner:
    """Runs at most one task at a time in a child process."""

    def __init__(
        self,
        settings: AppSettings,
        registry: JobRegistry | None = None,
        *,
        cancel_grace: float = JOB_CANCEL_GRACE_S,
        target: Callable[..., None] = worker_process_main,
        mp_context: BaseContext | None = None,
    ) -> None:
        self._settings = settings
        self._registry = registry if registry is not None else JobRegistry(settings.status_file)
        self._cancel_grace = cancel_grace
        self._target = target
        self._ctx = mp_context or mp.get_context()
        self._start_lock = threading.Lock()

        self._process: mp.process.BaseProcess | None = None
        self._cancel_event: Any = None
        self._reader_thread: threading.Thread | None = None
        self._killer_thread: threading.Thread | None = None

    @property
    def registry(self) -> JobRegistry:
        return self._registry

    def start(self, request: TaskRequest) -> bool:
        """Launch *request* in a worker process. Returns False if busy."""
        with self._start_lock:
            if not self._registry.try_start(request.model_dump(mode='json')):
                logger.warning('Job rejected: another job is still running')
                return False

            mp_queue = self._ctx.Queue()
            cancel_event = self._ctx.Event()
            process = self._ctx.Process(
                target=self._target,
                args=(request, self._settings, mp_queue, cancel_event),
                daemon=True,
                name='tile-task',
            )
            try:
                process.start()
            except Exception as e:
                self._registry.finish(JobState.FAILED, f'Failed to start worker: {e}')
                raise

            self._process = process
            self._cancel_event = cancel_event
            self._registry.set_pid(process.pid)
            self._reader_thread = threading.Thread(
                target=self._reader_loop,
                args=(process, mp_queue),
                daemon=True,
                name='task-reader',
            )
            self._reader_thread.start()
            logger.info('Job started (pid=%s)', process.pid)
            return True

    def submit(self, request: TaskRequest) -> None:
        """Like :meth:`start` but raises JobRejectedError when busy."""
        if not self.start(request):
            msg = 'A job is already running'
            raise JobRejectedError(msg)

    def status(self) -> JobStatus:
        return self._registry.snapshot()

    def is_running(self) -> bool:
        return self._registry.is_running()

    def cancel(self) -> bool:
        """Ask the running job to stop; kill it after the grace period.

        Returns False when no job is running.
        """
        process = self._process
        if process is None or not self._registry.request_cancel():
            return False
        self._cancel_event.set()
        logger.info('Cancel requested (pid=%s)', process.pid)
        self._killer_thread = threading.Thread(
            target=self._kill_after_grace,
            args=(process,),
            daemon=True,
            name='task-killer',
        )
        self._killer_thread.start()
        return True

    def wait(self, timeout: float | None = None) -> JobStatus:
        """Block until the final state of the current job is recorded."""
        reader = self._reader_thread
        if reader is not None:
            reader.join(timeout)
        return self.status()

    def stop_and_join(self, timeout: float | None = None) -> JobStatus:
        """Cancel the running job, if any, and wait for it to go away."""
        grace = self._cancel_grace if timeout is None else timeout
        process = self._process
        if process is not None and process.is_alive():
            self._registry.request_cancel()
            self._cancel_event.set()
            process.join(timeout=grace)
            if process.is_alive():
                logger.warning('Worker did not terminate gracefully, killing')
                process.kill()
                process.join(timeout=JOB_READER_JOIN_S)
        return self.wait(JOB_READER_JOIN_S)

    def _kill_after_grace(self, process: mp.process.BaseProcess) -> None:
        process.join(timeout=self._cancel_grace)
        if process.is_alive():
            logger.warning(
                'Worker (pid=%s) still running %.1fs after cancel, killing',
                process.pid,
                self._cancel_grace,
            )
            process.kill()
            process.join(timeout=JOB_READER_JOIN_S)

    def _handle(self, msg: tuple) -> bool:
        """Apply one queue message. Returns True on the final message."""
        kind = msg[0]
        if kind == 'progress':
            _, done, total, label = msg
            self._registry.update_progress(done, total, label)
            return False
        if kind == 'finished':
            _, state, error, *rest = msg
            report = rest[0] if rest else None
            self._registry.finish(JobState(state), error, report)
            logger.info('Job finished: %s%s', state, f' ({error})' if error else '')
            return True
        logger.debug('Reader: unknown message %r', kind)
        return False

    def _reader_loop(self, process: mp.process.BaseProcess, mp_queue: mp.Queue) -> None:
        while True:
            try:
                msg = mp_queue.get(timeout=JOB_QUEUE_POLL_S)
            except _queue_mod.Empty:
                if process.is_alive():
                    continue
                # Процесс мог завершиться сразу после последней записи в очередь
                try:
                    msg = mp_queue.get(timeout=JOB_QUEUE_POLL_S)
                except _queue_mod.Empty:
                    self._record_exit(process)
                    return
            except (EOFError, OSError):
                logger.debug('Reader: queue.get failed', exc_info=True)
                self._record_exit(process)
                return
            if self._handle(msg):
                return

    def _record_exit(self, process: mp.process.BaseProcess) -> None:
        """The worker is gone without a final message."""
        process.join(timeout=JOB_READER_JOIN_S)
        if self._registry.snapshot().cancel_requested:
            self._registry.finish(JobState.CANCELLED, 'Operation cancelled')
            logger.info('Job cancelled (pid=%s killed)', process.pid)
            return
        error = f'Worker exited unexpectedly (exit code {process.exitcode})'
        self._registry.finish(JobState.FAILED, error)
        logger.error(error)
