"""Shared utilities and helpers."""
from shared.diagnostics import (
    log_memory_usage,
    log_thread_status,
)
from shared.progress import (
    CancelledError,
    EventCancelToken,
    ProgressReporter,
    check_cancelled,
)

__all__ = [
    'CancelledError',
    'EventCancelToken',
    'ProgressReporter',
    'check_cancelled',
    'log_memory_usage',
    'log_thread_status',
]
