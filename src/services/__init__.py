"""Services package - seeding, cleanup and background job execution."""

from services.assets import AssetKind, AssetResult, cleanup_asset, seed_asset
from services.cleanup import CleanupSummary, cleanup_tiles, run_cleanup_job
from services.job_runner import JobRegistry, JobRunner, JobStatus
from services.refresh import CleanupPolicy, RefreshMode, RefreshPolicy, needs_refresh
from services.seed import SeedSummary, TileOutcome, run_seed_job, seed_tiles
from services.tasks import TaskReport, run_tasks

__all__ = [
    'AssetKind',
    'AssetResult',
    'CleanupPolicy',
    'CleanupSummary',
    'JobRegistry',
    'JobRunner',
    'JobStatus',
    'RefreshMode',
    'RefreshPolicy',
    'SeedSummary',
    'TaskReport',
    'TileOutcome',
    'cleanup_asset',
    'cleanup_tiles',
    'needs_refresh',
    'run_cleanup_job',
    'run_seed_job',
    'run_tasks',
    'seed_asset',
    'seed_tiles',
]
