"""Domain layer - job models, settings and job document loading."""
from domain.config import ConfigError, load_cleanup_config, load_seed_config
from domain.models import (
    CleanupConfig,
    CleanupDirective,
    CleanupJob,
    RefreshDirective,
    SeedConfig,
    SeedJob,
    TaskRequest,
    TileMetadata,
)
from domain.settings import AppSettings, load_settings

__all__ = [
    'AppSettings',
    'CleanupConfig',
    'CleanupDirective',
    'CleanupJob',
    'ConfigError',
    'RefreshDirective',
    'SeedConfig',
    'SeedJob',
    'TaskRequest',
    'TileMetadata',
    'load_cleanup_config',
    'load_seed_config',
    'load_settings',
]
