"""Настройка логирования для CLI и рабочего процесса."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from shared.constants import LOG_FILE_NAME, LOG_FORMAT

logger = logging.getLogger(__name__)


def setup_logging(level: str = 'INFO', log_dir: Path | None = None) -> Path | None:
    """Log to stdout and, when *log_dir* is writable, to a file inside it.

    Returns:
        Path of the log file, or None if only stdout is used.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    log_file: Path | None = None
    if log_dir is not None:
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            log_file = log_dir / LOG_FILE_NAME
            handlers.append(logging.FileHandler(str(log_file), encoding='utf-8'))
        except OSError:
            log_file = None
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        # Дочерний процесс наследует обработчики родителя
        force=True,
    )
    if log_dir is not None and log_file is None:
        logger.warning('Failed to set up file logging in %s', log_dir)
    return log_file
