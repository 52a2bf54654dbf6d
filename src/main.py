"""Command line entry point: run a seed and/or cleanup task in the background worker."""

import argparse
import json
import logging
import sys
from pathlib import Path

from domain.models import TaskRequest
from domain.settings import AppSettings, load_settings
from infrastructure.locks import remove_stale_locks
from services.job_runner import JobRegistry, JobRunner
from shared.constants import JOB_QUEUE_POLL_S, JobState
from shared.diagnostics import log_memory_usage
from shared.logging_setup import setup_logging as _configure_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_REJECTED = 2
EXIT_CANCELLED = 130

_EXIT_CODES = {
    JobState.DONE: EXIT_OK,
    JobState.FAILED: EXIT_FAILED,
    JobState.CANCELLED: EXIT_CANCELLED,
}


def setup_logging(settings: AppSettings) -> Path | None:
    """Configure logging to stdout and ``{data_dir}/log``.

    Returns:
        Path of the log file, or None when the directory is not writable.
    """
    return _configure_logging(settings.log_level, settings.data_dir / 'log')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Seed and clean up map tile caches (MBTiles and XYZ)',
    )
    parser.add_argument('--seed', action='store_true', help='Download tiles listed in seed.toml/seed.json')
    parser.add_argument(
        '--cleanup', action='store_true', help='Delete tiles listed in cleanup.toml/cleanup.json'
    )
    parser.add_argument(
        '--remove-stale-locks',
        action='store_true',
        help='Delete leftover .lock files below the caches folder before anything else',
    )
    parser.add_argument(
        '--id',
        dest='ids',
        action='append',
        metavar='ID',
        help='Restrict the task to this target id (repeatable)',
    )
    parser.add_argument('--data-dir', help='Data directory (default: $DATA_DIR or ./data)')
    parser.add_argument(
        '--status', action='store_true', help='Print the state of the last task and exit'
    )
    return parser


def _print_status(settings: AppSettings) -> int:
    status = JobRegistry(settings.status_file).snapshot()
    sys.stdout.write(json.dumps(status.to_dict(), indent=2, ensure_ascii=False) + '\n')
    return EXIT_OK


def run(args: argparse.Namespace, settings: AppSettings) -> int:
    """Start the task, wait for it and map its final state to an exit code."""
    if args.status:
        return _print_status(settings)

    if not (args.seed or args.cleanup):
        if args.remove_stale_locks:
            removed = remove_stale_locks(settings.caches_dir)
            logger.info('Removed %d stale lock file(s)', removed)
            return EXIT_OK
        logger.error('Nothing to do: pass --seed, --cleanup or --remove-stale-locks')
        return EXIT_FAILED

    request = TaskRequest(
        seed=args.seed,
        cleanup=args.cleanup,
        remove_stale_locks=args.remove_stale_locks,
        ids=tuple(args.ids) if args.ids else None,
    )
    runner = JobRunner(settings)
    if not runner.start(request):
        logger.error('Another task is already running (see %s)', settings.status_file)
        return EXIT_REJECTED

    try:
        while runner.is_running():
            runner.wait(JOB_QUEUE_POLL_S * 10)
    except KeyboardInterrupt:
        logger.warning('Interrupted, cancelling the task')
        runner.stop_and_join()

    status = runner.status()
    if status.report is not None:
        sys.stdout.write(json.dumps(status.report, indent=2, ensure_ascii=False) + '\n')
    if status.error:
        logger.error('Task %s: %s', status.state.value, status.error)
    return _EXIT_CODES.get(status.state, EXIT_FAILED)


def main(argv: list[str] | None = None) -> int:
    """Main application entry point."""
    args = build_parser().parse_args(argv)
    settings = load_settings(args.data_dir)
    log_file = setup_logging(settings)
    logger.info('Data directory: %s', settings.data_dir.resolve())
    if log_file is not None:
        logger.debug('Logging to %s', log_file)
    log_memory_usage('startup')

    try:
        return run(args, settings)
    except Exception as e:
        logger.error('Failed to run task: %s', e, exc_info=True)
        return EXIT_FAILED


if __name__ == '__main__':
    sys.exit(main())
