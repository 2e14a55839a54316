"""Test configuration and fixtures"""

import io
import sys
import wave

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from soundcloud_player.models.track import Track

PASSTHROUGH_DECODER = [
    sys.executable,
    "-c",
    "import sys; sys.stdout.buffer.write(sys.stdin.buffer.read())",
]


def transcoding(protocol="progressive", mime_type="audio/mpeg", quality="sq", url=None):
    return {
        "url": url or f"https://api-v2.example.test/media/1/{protocol}/{quality}",
        "format": {"protocol": protocol, "mime_type": mime_type},
        "quality": quality,
        "snipped": False,
    }


def track_data(track_id=101, transcodings=None, **overrides):
    """Catalog JSON for a track, in the shape api-v2 returns it."""
    data = {
        "id": track_id,
        "title": f"Song {track_id}",
        "user": {"id": 7, "username": "Test Artist"},
        "duration": 180000,
        "permalink_url": f"https://soundcloud.com/test-artist/song-{track_id}",
        "track_authorization": "auth-token",
        "media": {
            "transcodings": transcodings
            if transcodings is not None
            else [transcoding("hls", "audio/mpeg"), transcoding("progressive")]
        },
    }
    data.update(overrides)
    return data


def make_track(track_id=101, transcodings=None, **overrides) -> Track:
    return Track.model_validate(track_data(track_id, transcodings, **overrides))


def make_wav(seconds=0.5, rate=8000) -> bytes:
    """A small silent WAV file that mutagen can identify."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as w:
        w.setnchannels(1)
        w.setsampwidth(2)
        w.setframerate(rate)
        w.writeframes(b"\x00\x00" * int(seconds * rate))
    return buf.getvalue()


@pytest.fixture
def sample_track_data():
    """Sample track data for testing"""
    return track_data()


@pytest.fixture
def sample_track():
    return make_track()


@pytest.fixture
def wav_bytes():
    return make_wav()


@pytest.fixture
async def http_server():
    """Returns a helper that serves an aiohttp app on a local port."""
    servers = []

    async def start(app: web.Application) -> TestServer:
        server = TestServer(app)
        await server.start_server()
        servers.append(server)
        return server

    yield start

    for server in servers:
        await server.close()
