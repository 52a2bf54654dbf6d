"""Tests for style and GeoJSON assets."""

from __future__ import annotations

import hashlib
import json
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from domain.models import AssetCleanupJob, AssetSeedJob
from infrastructure.http import make_http_session
from services.assets import (
    AssetKind,
    asset_path,
    cleanup_asset,
    md5_url_for,
    seed_asset,
    validate_payload,
)

STYLE = json.dumps({'version': 8, 'sources': {}, 'layers': []}).encode()
GEOJSON = json.dumps({'type': 'FeatureCollection', 'features': []}).encode()
NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


class AssetServer:
    def __init__(self, *, geojson=GEOJSON, md5=None):
        self.geojson = geojson
        self.md5 = md5 if md5 is not None else hashlib.md5(geojson).hexdigest()
        self.hits: list[str] = []

    async def style(self, request):
        self.hits.append('style')
        return web.Response(body=STYLE, content_type='application/json')

    async def borders(self, request):
        self.hits.append('geojson')
        return web.Response(body=self.geojson, content_type='application/geo+json')

    async def borders_md5(self, request):
        self.hits.append('md5')
        return web.Response(text=self.md5, headers={'ETag': f'"{self.md5}"'})

    async def missing(self, request):
        self.hits.append('missing')
        return web.Response(status=404)


@asynccontextmanager
async def serve(assets: AssetServer):
    app = web.Application()
    app.router.add_get('/styles/basic/style.json', assets.style)
    app.router.add_get('/geo/borders.geojson', assets.borders)
    app.router.add_get('/geo/borders/md5', assets.borders_md5)
    app.router.add_get('/geo/gone.geojson', assets.missing)
    server = TestServer(app)
    await server.start_server()
    try:
        yield f'http://{server.host}:{server.port}'
    finally:
        await server.close()


def _seed_job(asset_id, url, **kwargs):
    return AssetSeedJob.model_validate(
        {'id': asset_id, 'url': url, 'max_try': 1, 'retry_backoff': 0, **kwargs}
    )


class TestValidatePayload:
    """Tests for validate_payload."""

    def test_accepts_documents(self):
        validate_payload(AssetKind.STYLE, STYLE)
        validate_payload(AssetKind.GEOJSON, GEOJSON)

    @pytest.mark.parametrize('data', [b'<html>', b'[]', b'\xff\xfe'])
    def test_rejects_non_objects(self, data):
        with pytest.raises(ValueError):
            validate_payload(AssetKind.STYLE, data)

    def test_geojson_needs_type(self):
        with pytest.raises(ValueError, match='type'):
            validate_payload(AssetKind.GEOJSON, b'{"features": []}')


def test_md5_url_for():
    job = _seed_job('borders', 'https://d.example.com/geo/borders.geojson')
    assert md5_url_for(job) == 'https://d.example.com/geo/borders/md5'


class TestSeedAsset:
    """Tests for seed_asset."""

    @pytest.mark.asyncio
    async def test_style_downloaded(self, settings):
        server = AssetServer()
        path = asset_path(settings, AssetKind.STYLE, 'basic')
        async with serve(server) as base, make_http_session() as session:
            result = await seed_asset(
                AssetKind.STYLE, _seed_job('basic', f'{base}/styles/basic/style.json'), path, session
            )
        assert result.outcome == 'downloaded'
        assert path.read_bytes() == STYLE
        assert not path.with_name(path.name + '.lock').exists()

    @pytest.mark.asyncio
    async def test_fresh_by_day(self, settings):
        """A recent file is not downloaded again."""
        server = AssetServer()
        path = asset_path(settings, AssetKind.STYLE, 'basic')
        path.parent.mkdir(parents=True)
        path.write_bytes(b'{"old": true}')
        async with serve(server) as base, make_http_session() as session:
            result = await seed_asset(
                AssetKind.STYLE,
                _seed_job('basic', f'{base}/styles/basic/style.json', refresh_before={'day': 1}),
                path,
                session,
            )
        assert result.outcome == 'fresh'
        assert server.hits == []

    @pytest.mark.asyncio
    async def test_stale_by_day(self, settings):
        server = AssetServer()
        path = asset_path(settings, AssetKind.STYLE, 'basic')
        path.parent.mkdir(parents=True)
        path.write_bytes(b'{"old": true}')
        old = NOW.timestamp() - 5 * 86400
        os.utime(path, (old, old))
        async with serve(server) as base, make_http_session() as session:
            result = await seed_asset(
                AssetKind.STYLE,
                _seed_job('basic', f'{base}/styles/basic/style.json', refresh_before={'day': 1}),
                path,
                session,
                now=NOW,
            )
        assert result.outcome == 'downloaded'
        assert path.read_bytes() == STYLE

    @pytest.mark.asyncio
    async def test_geojson_md5_equal(self, settings):
        """Matching md5 skips the download."""
        server = AssetServer()
        path = asset_path(settings, AssetKind.GEOJSON, 'borders')
        path.parent.mkdir(parents=True)
        path.write_bytes(GEOJSON)
        async with serve(server) as base, make_http_session() as session:
            result = await seed_asset(
                AssetKind.GEOJSON,
                _seed_job('borders', f'{base}/geo/borders.geojson', refresh_before={'md5': True}),
                path,
                session,
            )
        assert result.outcome == 'fresh'
        assert server.hits == ['md5']

    @pytest.mark.asyncio
    async def test_geojson_md5_differs(self, settings):
        server = AssetServer()
        path = asset_path(settings, AssetKind.GEOJSON, 'borders')
        path.parent.mkdir(parents=True)
        path.write_bytes(b'{"type": "Feature"}')
        async with serve(server) as base, make_http_session() as session:
            result = await seed_asset(
                AssetKind.GEOJSON,
                _seed_job('borders', f'{base}/geo/borders.geojson', refresh_before={'md5': True}),
                path,
                session,
            )
        assert result.outcome == 'downloaded'
        assert server.hits == ['md5', 'geojson']
        assert path.read_bytes() == GEOJSON

    @pytest.mark.asyncio
    async def test_absent(self, settings):
        path = asset_path(settings, AssetKind.GEOJSON, 'gone')
        async with serve(AssetServer()) as base, make_http_session() as session:
            result = await seed_asset(
                AssetKind.GEOJSON, _seed_job('gone', f'{base}/geo/gone.geojson'), path, session
            )
        assert result.outcome == 'absent'
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_invalid_payload_keeps_old_file(self, settings):
        """A broken download never replaces a good local copy."""
        server = AssetServer(geojson=b'<html>maintenance</html>')
        path = asset_path(settings, AssetKind.GEOJSON, 'borders')
        path.parent.mkdir(parents=True)
        path.write_bytes(GEOJSON)
        async with serve(server) as base, make_http_session() as session:
            result = await seed_asset(
                AssetKind.GEOJSON, _seed_job('borders', f'{base}/geo/borders.geojson'), path, session
            )
        assert result.outcome == 'failed'
        assert path.read_bytes() == GEOJSON


class TestCleanupAsset:
    """Tests for cleanup_asset."""

    @pytest.mark.asyncio
    async def test_missing(self, settings):
        path = asset_path(settings, AssetKind.STYLE, 'basic')
        result = await cleanup_asset(AssetKind.STYLE, AssetCleanupJob(id='basic'), path)
        assert result.outcome == 'missing'

    @pytest.mark.asyncio
    async def test_delete_all(self, settings):
        """Without a directive the file and its folder go away."""
        path = asset_path(settings, AssetKind.STYLE, 'basic')
        path.parent.mkdir(parents=True)
        path.write_bytes(STYLE)
        result = await cleanup_asset(AssetKind.STYLE, AssetCleanupJob(id='basic'), path)
        assert result.outcome == 'deleted'
        assert not path.parent.exists()

    @pytest.mark.asyncio
    async def test_kept_when_recent(self, settings):
        path = asset_path(settings, AssetKind.GEOJSON, 'borders')
        path.parent.mkdir(parents=True)
        path.write_bytes(GEOJSON)
        job = AssetCleanupJob.model_validate({'id': 'borders', 'cleanUpBefore': {'day': 30}})
        result = await cleanup_asset(AssetKind.GEOJSON, job, path)
        assert result.outcome == 'kept'
        assert path.exists()
