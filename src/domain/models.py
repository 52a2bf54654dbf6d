from __future__ import annotations

import re
from datetime import datetime
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from shared.constants import (
    CLEANUP_CONCURRENCY,
    DOWNLOAD_CONCURRENCY,
    HTTP_BACKOFF_BASE_S,
    HTTP_RETRIES_DEFAULT,
    HTTP_TIMEOUT_DEFAULT,
    MAX_ZOOM,
    MIN_ZOOM,
    TILE_FORMATS,
    WORLD_LNG_HALF_SPAN_DEG,
    StorageType,
    TileScheme,
)

BBox = tuple[float, float, float, float]

ID_RE = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$')

_TILE_PLACEHOLDERS = ('{z}', '{x}', '{y}')
_ZXY_TEMPLATE = '{z}/{x}/{y}'


def validate_bbox(bbox: BBox) -> BBox:
    """Проверяет рамку [lon_min, lat_min, lon_max, lat_max]; переход через антимеридиан не поддерживается."""
    lon_min, lat_min, lon_max, lat_max = bbox
    for lon in (lon_min, lon_max):
        if not -WORLD_LNG_HALF_SPAN_DEG <= lon <= WORLD_LNG_HALF_SPAN_DEG:
            msg = f'Longitude {lon} out of range [-180, 180] in bbox {list(bbox)}'
            raise ValueError(msg)
    for lat in (lat_min, lat_max):
        if not -90.0 <= lat <= 90.0:
            msg = f'Latitude {lat} out of range [-90, 90] in bbox {list(bbox)}'
            raise ValueError(msg)
    if lon_min > lon_max:
        msg = f'lon_min > lon_max in bbox {list(bbox)} (antimeridian crossing is not supported)'
        raise ValueError(msg)
    if lat_min > lat_max:
        msg = f'lat_min > lat_max in bbox {list(bbox)}'
        raise ValueError(msg)
    return bbox


def validate_zoom(z: int) -> int:
    if not MIN_ZOOM <= z <= MAX_ZOOM:
        msg = f'Zoom level {z} out of range [{MIN_ZOOM}, {MAX_ZOOM}]'
        raise ValueError(msg)
    return z


def _validate_id(v: str) -> str:
    if v and not ID_RE.fullmatch(v):
        msg = f'Invalid target id: {v!r}'
        raise ValueError(msg)
    return v


def _inject_ids(data: Any, *sections: str) -> Any:
    """Копирует ключ каждой таблицы указанных секций в поле ``id`` записи."""
    if not isinstance(data, dict):
        return data
    out = dict(data)
    for section in sections:
        entries = out.get(section)
        if isinstance(entries, dict):
            out[section] = {
                key: {**value, 'id': key} if isinstance(value, dict) else value
                for key, value in entries.items()
            }
    return out


class RefreshDirective(BaseModel):
    """Когда сохранённый тайл нужно скачать заново.

    Задаётся ровно одно из: ``time`` (абсолютная граница), ``day`` (старше
    N дней) или ``md5`` (сравнение с хэшем содержимого у источника).
    """

    model_config = ConfigDict(frozen=True, extra='forbid')

    time: datetime | None = None
    day: int | None = Field(default=None, ge=0)
    md5: bool = False

    @model_validator(mode='after')
    def _exactly_one(self) -> RefreshDirective:
        given = [
            name
            for name, present in (
                ('time', self.time is not None),
                ('day', self.day is not None),
                ('md5', self.md5),
            )
            if present
        ]
        if len(given) != 1:
            msg = f'Refresh directive needs exactly one of time/day/md5, got {given or "none"}'
            raise ValueError(msg)
        return self


class CleanupDirective(BaseModel):
    """Удалять тайлы, созданные до заданного момента или старше N дней."""

    model_config = ConfigDict(frozen=True, extra='forbid')

    time: datetime | None = None
    day: int | None = Field(default=None, ge=0)

    @model_validator(mode='after')
    def _exactly_one(self) -> CleanupDirective:
        if (self.time is None) == (self.day is None):
            msg = 'Cleanup directive needs exactly one of time/day'
            raise ValueError(msg)
        return self


class VectorLayer(BaseModel):
    model_config = ConfigDict(extra='allow')

    id: str
    description: str | None = None
    minzoom: int | None = None
    maxzoom: int | None = None
    fields: dict[str, str] = Field(default_factory=dict)


class TileMetadata(BaseModel):
    """Метаданные хранилища.

    Известные ключи хранятся в типизированных полях, остальные в ``extra``,
    чтобы неизвестные ключи переживали чтение и запись.
    """

    name: str | None = None
    description: str | None = None
    attribution: str | None = None
    version: str | None = None
    type: str | None = None
    format: str | None = None
    minzoom: int | None = None
    maxzoom: int | None = None
    bounds: tuple[float, float, float, float] | None = None
    center: tuple[float, float, float] | None = None
    vector_layers: list[VectorLayer] | None = None
    extra: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode='before')
    @classmethod
    def _collect_extra(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        known = set(cls.model_fields)
        extra = dict(data.get('extra') or {})
        out = {}
        for key, value in data.items():
            if key in known:
                out[key] = value
            else:
                extra[key] = value
        out['extra'] = extra
        return out

    @field_validator('format')
    @classmethod
    def _check_format(cls, v: str | None) -> str | None:
        if v is not None and v not in TILE_FORMATS:
            msg = f'Unsupported tile format: {v}'
            raise ValueError(msg)
        return v

    def to_dict(self) -> dict[str, Any]:
        """Плоский словарь непустых полей вместе с ключами расширений."""
        data = self.model_dump(exclude_none=True, exclude={'extra'})
        if self.bounds is not None:
            data['bounds'] = list(self.bounds)
        if self.center is not None:
            data['center'] = list(self.center)
        data.update(self.extra)
        return data


class _TargetModel(BaseModel):
    """Базовая модель записи конфигурации с идентификатором цели."""

    model_config = ConfigDict(frozen=True, extra='forbid')

    id: str = ''

    @field_validator('id')
    @classmethod
    def _check_id(cls, v: str) -> str:
        return _validate_id(v)


class SeedJob(_TargetModel):
    """Описание одного задания заполнения кэша тайлов."""

    storage: StorageType = StorageType.MBTILES
    url: str
    md5_url: str | None = None
    scheme: TileScheme = TileScheme.XYZ
    format: str = 'png'
    bboxes: tuple[BBox, ...] = Field(
        min_length=1, validation_alias=AliasChoices('bboxes', 'bboxs')
    )
    zooms: tuple[int, ...] = Field(min_length=1)
    concurrency: int = Field(default=DOWNLOAD_CONCURRENCY, ge=1)
    max_try: int = Field(
        default=HTTP_RETRIES_DEFAULT,
        ge=1,
        validation_alias=AliasChoices('max_try', 'maxTry'),
    )
    timeout: float = Field(default=HTTP_TIMEOUT_DEFAULT, gt=0)
    retry_backoff: float = Field(default=HTTP_BACKOFF_BASE_S, ge=0)
    refresh_before: RefreshDirective | None = Field(
        default=None, validation_alias=AliasChoices('refresh_before', 'refreshBefore')
    )
    store_md5: bool = Field(
        default=False, validation_alias=AliasChoices('store_md5', 'storeMD5')
    )
    store_transparent: bool = Field(
        default=True,
        validation_alias=AliasChoices('store_transparent', 'storeTransparent'),
    )
    metadata: TileMetadata = Field(default_factory=TileMetadata)

    @field_validator('url')
    @classmethod
    def _check_url(cls, v: str) -> str:
        missing = [p for p in _TILE_PLACEHOLDERS if p not in v]
        if missing:
            msg = f'Tile URL must contain {", ".join(missing)}: {v}'
            raise ValueError(msg)
        return v

    @field_validator('bboxes')
    @classmethod
    def _check_bboxes(cls, v: tuple[BBox, ...]) -> tuple[BBox, ...]:
        return tuple(validate_bbox(b) for b in v)

    @field_validator('zooms')
    @classmethod
    def _check_zooms(cls, v: tuple[int, ...]) -> tuple[int, ...]:
        return tuple(validate_zoom(z) for z in v)

    @field_validator('format')
    @classmethod
    def _check_format(cls, v: str) -> str:
        if v not in TILE_FORMATS:
            msg = f'Unsupported tile format: {v}'
            raise ValueError(msg)
        return v

    @model_validator(mode='after')
    def _check_md5_source(self) -> SeedJob:
        if (
            self.refresh_before is not None
            and self.refresh_before.md5
            and self.md5_url is None
            and _ZXY_TEMPLATE not in self.url
        ):
            msg = f'Cannot derive the md5 URL from {self.url}; set md5_url explicitly'
            raise ValueError(msg)
        return self

    def _upstream_row(self, z: int, y: int) -> int:
        return (1 << z) - 1 - y if self.scheme == TileScheme.TMS else y

    def tile_url(self, z: int, x: int, y: int) -> str:
        """URL тайла XYZ (z, x, y) у источника с учётом его схемы нумерации."""
        return (
            self.url.replace('{z}', str(z))
            .replace('{x}', str(x))
            .replace('{y}', str(self._upstream_row(z, y)))
        )

    def hash_url(self, z: int, x: int, y: int) -> str:
        """URL соседнего адреса ``md5/{z}/{x}/{y}``, отдающего только хэш."""
        template = self.md5_url or self.url.replace(_ZXY_TEMPLATE, f'md5/{_ZXY_TEMPLATE}')
        # Строка по схеме источника, как в tile_url
        return (
            template.replace('{z}', str(z))
            .replace('{x}', str(x))
            .replace('{y}', str(self._upstream_row(z, y)))
        )

    def effective_metadata(self) -> TileMetadata:
        """Метаданные задания; формат берётся из задания, если не указан."""
        if self.metadata.format is not None:
            return self.metadata
        return self.metadata.model_copy(update={'format': self.format})


class CleanupJob(_TargetModel):
    """Описание одного задания очистки."""

    storage: StorageType = StorageType.MBTILES
    format: str = 'png'
    bboxes: tuple[BBox, ...] = Field(
        min_length=1, validation_alias=AliasChoices('bboxes', 'bboxs')
    )
    zooms: tuple[int, ...] = Field(min_length=1)
    concurrency: int = Field(default=CLEANUP_CONCURRENCY, ge=1)
    cleanup_before: CleanupDirective | None = Field(
        default=None, validation_alias=AliasChoices('cleanup_before', 'cleanUpBefore')
    )

    @field_validator('bboxes')
    @classmethod
    def _check_bboxes(cls, v: tuple[BBox, ...]) -> tuple[BBox, ...]:
        return tuple(validate_bbox(b) for b in v)

    @field_validator('zooms')
    @classmethod
    def _check_zooms(cls, v: tuple[int, ...]) -> tuple[int, ...]:
        return tuple(validate_zoom(z) for z in v)


class AssetSeedJob(_TargetModel):
    """Отдельный скачиваемый файл (JSON стиля или GeoJSON)."""

    url: str
    max_try: int = Field(
        default=HTTP_RETRIES_DEFAULT,
        ge=1,
        validation_alias=AliasChoices('max_try', 'maxTry'),
    )
    timeout: float = Field(default=HTTP_TIMEOUT_DEFAULT, gt=0)
    retry_backoff: float = Field(default=HTTP_BACKOFF_BASE_S, ge=0)
    refresh_before: RefreshDirective | None = Field(
        default=None, validation_alias=AliasChoices('refresh_before', 'refreshBefore')
    )


class AssetCleanupJob(_TargetModel):
    cleanup_before: CleanupDirective | None = Field(
        default=None, validation_alias=AliasChoices('cleanup_before', 'cleanUpBefore')
    )


class SeedConfig(BaseModel):
    """Разобранный документ заполнения: цели с тайлами и отдельные файлы."""

    model_config = ConfigDict(extra='ignore')

    datas: dict[str, SeedJob] = Field(default_factory=dict)
    styles: dict[str, AssetSeedJob] = Field(default_factory=dict)
    geojsons: dict[str, AssetSeedJob] = Field(default_factory=dict)

    @model_validator(mode='before')
    @classmethod
    def _ids_from_keys(cls, data: Any) -> Any:
        return _inject_ids(data, 'datas', 'styles', 'geojsons')

    @model_validator(mode='after')
    def _check_style_directives(self) -> SeedConfig:
        for sid, style in self.styles.items():
            if style.refresh_before is not None and style.refresh_before.md5:
                msg = f'Style "{sid}" does not support md5 refresh'
                raise ValueError(msg)
        return self


class CleanupConfig(BaseModel):
    """Разобранный документ очистки."""

    model_config = ConfigDict(extra='ignore')

    datas: dict[str, CleanupJob] = Field(default_factory=dict)
    styles: dict[str, AssetCleanupJob] = Field(default_factory=dict)
    geojsons: dict[str, AssetCleanupJob] = Field(default_factory=dict)

    @model_validator(mode='before')
    @classmethod
    def _ids_from_keys(cls, data: Any) -> Any:
        return _inject_ids(data, 'datas', 'styles', 'geojsons')


class TaskRequest(BaseModel):
    """Что должно сделать фоновое задание; принимается через канал управления."""

    model_config = ConfigDict(frozen=True)

    seed: bool = False
    cleanup: bool = False
    remove_stale_locks: bool = False
    ids: tuple[str, ...] | None = None

    def selects(self, target_id: str) -> bool:
        return self.ids is None or target_id in self.ids
