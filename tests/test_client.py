"""Tests for the catalog client against a local HTTP server"""

import pytest
from aiohttp import web

from conftest import track_data
from soundcloud_player.api.client import SoundCloudClient
from soundcloud_player.exceptions import MetadataUnavailable


@pytest.fixture
async def catalog(http_server):
    seen = []

    async def track(request):
        seen.append(dict(request.query))
        track_id = int(request.match_info["track_id"])
        if track_id == 404:
            raise web.HTTPNotFound()
        if track_id == 500:
            raise web.HTTPInternalServerError()
        if track_id == 666:
            return web.Response(text="{not json", content_type="application/json")
        if track_id == 777:
            return web.json_response({"title": "no id"})
        return web.json_response(track_data(track_id))

    async def tracks(request):
        ids = [int(i) for i in request.query["ids"].split(",")]
        return web.json_response([track_data(i) for i in ids if i != 3])

    async def stream(request):
        seen.append(dict(request.query))
        return web.json_response({"url": "https://cdn.example.test/playlist.m3u8"})

    app = web.Application()
    app.router.add_get("/tracks/{track_id}", track)
    app.router.add_get("/tracks", tracks)
    app.router.add_get("/media/{tail:.*}", stream)
    server = await http_server(app)
    server.seen = seen
    return server


@pytest.fixture
async def client(catalog):
    c = SoundCloudClient("test-client-id", base_url=str(catalog.make_url("/")))
    yield c
    await c.close()


class TestSoundCloudClient:
    """Test metadata and stream URL requests"""

    async def test_fetch_track(self, client, catalog):
        track = await client.fetch_track(101)
        assert track.id == 101
        assert track.artist == "Test Artist"
        assert len(track.variants) == 2
        assert catalog.seen[-1]["client_id"] == "test-client-id"

    async def test_not_found(self, client):
        with pytest.raises(MetadataUnavailable) as exc_info:
            await client.fetch_track(404)
        assert not exc_info.value.retryable

    async def test_server_error_is_retryable(self, client):
        with pytest.raises(MetadataUnavailable) as exc_info:
            await client.fetch_track(500)
        assert exc_info.value.retryable

    async def test_malformed_json(self, client):
        with pytest.raises(MetadataUnavailable):
            await client.fetch_track(666)

    async def test_invalid_track_shape(self, client):
        with pytest.raises(MetadataUnavailable):
            await client.fetch_track(777)

    async def test_fetch_tracks_skips_missing(self, client):
        tracks = await client.fetch_tracks([1, 2, 3])
        assert sorted(tracks) == [1, 2]

    async def test_resolve_stream_url(self, client, catalog):
        track = await client.fetch_track(101)
        variant = track.variants[0].model_copy(
            update={"url": str(catalog.make_url("/media/101/stream/hls"))}
        )
        url = await client.resolve_stream_url(track, variant)
        assert url == "https://cdn.example.test/playlist.m3u8"
        assert catalog.seen[-1]["track_authorization"] == "auth-token"
        assert catalog.seen[-1]["client_id"] == "test-client-id"

    async def test_unreachable_host_is_retryable(self):
        client = SoundCloudClient("id", timeout=2, base_url="http://127.0.0.1:9/")
        try:
            with pytest.raises(MetadataUnavailable) as exc_info:
                await client.fetch_track(1)
            assert exc_info.value.retryable
        finally:
            await client.close()
