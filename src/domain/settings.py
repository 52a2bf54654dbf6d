"""Process-wide settings taken from the environment."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, field_validator

from shared.constants import (
    CACHES_DIR_NAME,
    GEOJSONS_DIR_NAME,
    MBTILES_DIR_NAME,
    STYLES_DIR_NAME,
    TASK_STATUS_FILE_NAME,
    XYZ_DIR_NAME,
    StorageType,
)

logger = logging.getLogger(__name__)

# Environment variable names
ENV_DATA_DIR = 'DATA_DIR'
ENV_LOG_LEVEL = 'LOG_LEVEL'

# Default data directory, relative to the working directory
DEFAULT_DATA_DIR = 'data'

_LOG_LEVELS = ('CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG')


class AppSettings(BaseModel):
    """Data directory layout and logging level.

    Every cache lives under ``{data_dir}/caches``; the job documents
    (``seed.toml``/``cleanup.toml`` or their JSON variants) sit directly in
    ``data_dir``.
    """

    model_config = ConfigDict(frozen=True)

    data_dir: Path = Path(DEFAULT_DATA_DIR)
    log_level: str = 'INFO'

    @field_validator('log_level')
    @classmethod
    def _check_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in _LOG_LEVELS:
            msg = f'Unknown log level: {v}'
            raise ValueError(msg)
        return level

    @property
    def caches_dir(self) -> Path:
        return self.data_dir / CACHES_DIR_NAME

    def mbtiles_path(self, target_id: str) -> Path:
        return self.caches_dir / MBTILES_DIR_NAME / target_id / f'{target_id}.mbtiles'

    def xyz_dir(self, target_id: str) -> Path:
        return self.caches_dir / XYZ_DIR_NAME / target_id

    def tile_store_location(self, storage: StorageType, target_id: str) -> Path:
        """MBTiles file or XYZ folder of a tile target."""
        if storage == StorageType.XYZ:
            return self.xyz_dir(target_id)
        return self.mbtiles_path(target_id)

    def style_path(self, target_id: str) -> Path:
        return self.caches_dir / STYLES_DIR_NAME / target_id / 'style.json'

    def geojson_path(self, target_id: str) -> Path:
        return self.caches_dir / GEOJSONS_DIR_NAME / target_id / f'{target_id}.geojson'

    @property
    def status_file(self) -> Path:
        return self.data_dir / TASK_STATUS_FILE_NAME


def _dotenv_candidates(cwd: Path) -> list[Path]:
    repo_root = Path(__file__).resolve().parent.parent.parent
    return [
        cwd / '.secrets.env',
        cwd / '.env',
        repo_root / '.secrets.env',
        repo_root / '.env',
    ]


def load_settings(data_dir: str | Path | None = None) -> AppSettings:
    """Build settings from the first ``.env`` found and the process environment.

    An explicit *data_dir* wins over ``DATA_DIR``.
    """
    for p in _dotenv_candidates(Path.cwd()):
        if p.exists():
            load_dotenv(p)
            logger.debug('Loaded environment from %s', p)
            break

    resolved = data_dir or os.getenv(ENV_DATA_DIR) or DEFAULT_DATA_DIR
    return AppSettings(
        data_dir=Path(resolved),
        log_level=os.getenv(ENV_LOG_LEVEL, 'INFO'),
    )
