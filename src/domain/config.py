"""Loading of the seed and cleanup job documents.

Both documents may be TOML (preferred) or JSON and share one layout::

    [datas.<id>]      tile targets
    [styles.<id>]     style JSON files
    [geojsons.<id>]   GeoJSON files

A cleanup entry that omits ``bboxes``, ``zooms``, ``storage`` or ``format``
inherits them from the seed entry with the same id.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import tomlkit
from pydantic import ValidationError
from tomlkit.exceptions import ParseError

from domain.models import CleanupConfig, SeedConfig
from shared.constants import CLEANUP_FILE_NAMES, SEED_FILE_NAMES

logger = logging.getLogger(__name__)

# Keys a cleanup entry may borrow from the matching seed entry
_INHERITED_KEYS = ('bboxes', 'zooms', 'storage', 'format')
# Old spelling accepted in documents
_LEGACY_ALIASES = {'bboxes': 'bboxs'}


class ConfigError(ValueError):
    """A job document is missing, unreadable or invalid."""


def _find_document(data_dir: Path, names: tuple[str, ...]) -> Path | None:
    for name in names:
        path = data_dir / name
        if path.exists():
            return path
    return None


def read_document(path: Path) -> dict[str, Any]:
    """Parse a TOML or JSON document into plain Python containers."""
    text = path.read_text(encoding='utf-8')
    try:
        if path.suffix.lower() == '.toml':
            return tomlkit.parse(text).unwrap()
        data = json.loads(text)
    except (ParseError, json.JSONDecodeError) as e:
        msg = f'Cannot parse {path}: {e}'
        raise ConfigError(msg) from e
    if not isinstance(data, dict):
        msg = f'{path} must contain a table/object at top level'
        raise ConfigError(msg)
    return data


def _validate(model: type[SeedConfig] | type[CleanupConfig], data: dict, path: Path | None):
    try:
        return model.model_validate(data)
    except ValidationError as e:
        msg = f'Invalid job document {path or "<memory>"}: {e}'
        raise ConfigError(msg) from e


def load_seed_config(data_dir: str | Path) -> SeedConfig:
    """Load ``seed.toml`` (or ``seed.json``); an absent document means nothing to seed."""
    path = _find_document(Path(data_dir), SEED_FILE_NAMES)
    if path is None:
        logger.info('No seed document in %s', data_dir)
        return SeedConfig()
    logger.info('Loading seed document %s', path)
    return _validate(SeedConfig, read_document(path), path)


def merge_cleanup_with_seed(
    cleanup: dict[str, Any], seed: dict[str, Any]
) -> dict[str, Any]:
    """Fill cleanup tile entries with geometry and storage from the seed document."""
    merged = dict(cleanup)
    seed_datas = seed.get('datas') or {}
    datas = {}
    for target_id, entry in (cleanup.get('datas') or {}).items():
        entry = dict(entry or {})
        source = seed_datas.get(target_id) or {}
        for key in _INHERITED_KEYS:
            aliases = (key, _LEGACY_ALIASES[key]) if key in _LEGACY_ALIASES else (key,)
            if any(a in entry for a in aliases):
                continue
            for alias in aliases:
                if alias in source:
                    entry[key] = source[alias]
                    break
        datas[target_id] = entry
    merged['datas'] = datas
    return merged


def load_cleanup_config(data_dir: str | Path) -> CleanupConfig:
    """Load ``cleanup.toml`` (or ``cleanup.json``) merged with the seed document."""
    data_dir = Path(data_dir)
    path = _find_document(data_dir, CLEANUP_FILE_NAMES)
    if path is None:
        logger.info('No cleanup document in %s', data_dir)
        return CleanupConfig()
    logger.info('Loading cleanup document %s', path)
    raw = read_document(path)
    seed_path = _find_document(data_dir, SEED_FILE_NAMES)
    if seed_path is not None:
        raw = merge_cleanup_with_seed(raw, read_document(seed_path))
    return _validate(CleanupConfig, raw, path)
