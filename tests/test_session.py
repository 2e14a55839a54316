"""Tests for the playback state machine, driven with in-memory fakes"""

import asyncio
from collections import Counter

import pytest

from conftest import make_track, make_wav, transcoding
from soundcloud_player.core.session import (
    DirectSource,
    NeedsExtraction,
    PlaybackSession,
    Unplayable,
)
from soundcloud_player.exceptions import (
    DecodeError,
    ExtractionFailed,
    ExtractionUnsupported,
    MetadataUnavailable,
    NoPlayableVariant,
    OutputDeviceError,
    SeekUnsupported,
    SegmentFetchFailed,
    StreamOpenFailed,
)
from soundcloud_player.media.hls import parse_manifest
from soundcloud_player.media.progressive import BufferSource
from soundcloud_player.models.config import PlayerConfig
from soundcloud_player.models.playback import (
    CommandRejected,
    Enqueue,
    Next,
    Pause,
    PlaybackState,
    Play,
    Preload,
    PreloadComplete,
    Previous,
    Progress,
    QueueAdvanced,
    RepeatMode,
    Resume,
    Seek,
    SetRepeat,
    SetVolume,
    StateChanged,
    Stop,
    TrackFailed,
    TrackStarted,
)
from soundcloud_player.models.track import Track, VariantKind
from soundcloud_player.storage.cache import AudioCache
from soundcloud_player.utils.structured_logger import create_playback_logger

MEDIA_PLAYLIST = (
    "#EXTM3U\n#EXT-X-TARGETDURATION:10\n"
    "#EXTINF:10.0,\nseg0.mp3\n#EXTINF:10.0,\nseg1.mp3\n#EXT-X-ENDLIST\n"
)
PROTECTED_PLAYLIST = (
    "#EXTM3U\n#EXT-X-TARGETDURATION:10\n"
    '#EXT-X-KEY:METHOD=SAMPLE-AES,URI="skd://key",KEYFORMAT="com.apple.streamingkeydelivery"\n'
    "#EXTINF:10.0,\nseg0.m4s\n#EXT-X-ENDLIST\n"
)

S = PlaybackState


def progressive_track(track_id=1, **overrides) -> Track:
    return make_track(track_id, [transcoding("progressive")], **overrides)


def protected_track(track_id=5, **overrides) -> Track:
    return make_track(
        track_id,
        [
            transcoding(
                "ctr-encrypted-hls",
                'audio/mp4; codecs="mp4a.40.2"',
                url="https://api-v2.example.test/media/5/ctr-encrypted-hls/hq",
            )
        ],
        **overrides,
    )


class FakeClient:
    def __init__(self, tracks):
        self.tracks = {t.id: t for t in tracks}
        self.failures = {}
        self.fetch_calls = Counter()
        self.batch_calls = []
        self.batch_error = None
        self.resolved = []
        self.closed = False

    async def fetch_track(self, track_id):
        self.fetch_calls[track_id] += 1
        pending = self.failures.get(track_id)
        if pending:
            raise pending.pop(0)
        if track_id not in self.tracks:
            raise MetadataUnavailable(f"Catalog resource not found: tracks/{track_id}")
        return self.tracks[track_id]

    async def fetch_tracks(self, track_ids):
        self.batch_calls.append(list(track_ids))
        if self.batch_error is not None:
            raise self.batch_error
        return {i: self.tracks[i] for i in track_ids if i in self.tracks}

    async def resolve_stream_url(self, track, variant):
        self.resolved.append(track.id)
        if variant.kind == VariantKind.SEGMENTED:
            return f"https://cdn.example.test/{track.id}/playlist.m3u8"
        return f"https://cdn.example.test/{track.id}/audio.mp3"

    async def close(self):
        self.closed = True


class FakeAssembler:
    def __init__(self):
        self.manifests = {}
        self.data = b"assembled-audio"
        self.error = None
        self.gate = None
        self.cancelled = False

    async def fetch_manifest(self, url):
        return parse_manifest(self.manifests.get(url, MEDIA_PLAYLIST), url)

    async def assemble(self, manifest):
        try:
            if self.gate is not None:
                await self.gate.wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.error is not None:
            raise self.error
        return self.data


class FakeExtractor:
    def __init__(self):
        self.url = "https://cdn.example.test/extracted/audio.mp3"
        self.error = None
        self.calls = []

    async def extract(self, page_url):
        self.calls.append(page_url)
        if self.error is not None:
            raise self.error
        return self.url


class FakeDownloader:
    def __init__(self):
        self.data = make_wav()
        self.closed = False

    async def fetch_bytes(self, url, range_header=None):
        return self.data

    async def close(self):
        self.closed = True


class FakeStream:
    """A progressive stream from a server without range support."""

    def __init__(self, url):
        self.url = url
        self.closed = False

    def can_seek(self, duration):
        return False

    async def read(self, n=-1):
        return b""

    async def seek_time(self, offset, duration):
        raise SeekUnsupported("Server does not accept byte ranges.")

    async def close(self):
        self.closed = True


class FakeEngine:
    def __init__(self):
        self.started = []
        self.source = None
        self.position = 0.0
        self.duration = 0.0
        self.volume = 0.8
        self.paused = False
        self.start_error = None
        self.stops = 0
        self._done = None

    async def start(self, source, duration=0.0, start_at=0.0):
        if self.start_error is not None:
            await source.close()
            raise self.start_error
        self.source = source
        self.started.append(source)
        self.duration = duration
        self.position = 0.0
        self.paused = False
        self._done = asyncio.get_running_loop().create_future()

    def pause(self):
        self.paused = True

    def resume(self):
        self.paused = False

    def set_volume(self, level):
        self.volume = level

    async def seek(self, offset):
        if self.source is None or not self.source.can_seek(self.duration):
            raise SeekUnsupported("The current source cannot be repositioned.")
        self.position = offset

    async def wait_finished(self):
        await asyncio.shield(self._done)

    def finish(self, error=None):
        self.position = 42.0
        if error is None:
            self._done.set_result(None)
        else:
            self._done.set_exception(error)

    async def stop(self):
        self.stops += 1
        source, self.source = self.source, None
        if source is not None:
            await source.close()
        if self._done is not None and not self._done.done():
            self._done.cancel()


class Harness:
    def __init__(self, tracks, cache=None, **config):
        options = {"progress_interval": 0.01, "retry_base_delay": 0.0, "max_attempts": 2}
        options.update(config)
        self.config = PlayerConfig(**options)
        self.events = []
        self.client = FakeClient(tracks)
        self.assembler = FakeAssembler()
        self.extractor = FakeExtractor()
        self.downloader = FakeDownloader()
        self.engine = FakeEngine()
        self.opened = []
        self.open_error = None
        self.session = PlaybackSession(
            self.config,
            self.client,
            self.events.append,
            downloader=self.downloader,
            assembler=self.assembler,
            extractor=self.extractor,
            engine=self.engine,
            cache=cache,
            progressive_opener=self._open,
            playback_logger=create_playback_logger(),
        )

    async def _open(self, url):
        self.opened.append(url)
        if self.open_error is not None:
            raise self.open_error
        return FakeStream(url)

    def of_type(self, cls):
        return [e for e in self.events if isinstance(e, cls)]

    def states(self):
        return [e.state for e in self.of_type(StateChanged)]

    async def wait_for(self, predicate, timeout=2.0):
        async def poll():
            while not predicate():
                await asyncio.sleep(0.005)

        await asyncio.wait_for(poll(), timeout)

    async def wait_for_state(self, state, count=1):
        await self.wait_for(lambda: self.states().count(state) >= count)


@pytest.fixture
async def harness():
    created = []

    def build(tracks, **kwargs):
        h = Harness(tracks, **kwargs)
        created.append(h)
        return h

    yield build

    for h in created:
        await h.session.close()


class TestPlaybackScenarios:
    """End-to-end flows through the state machine"""

    async def test_progressive_track_plays_to_completion(self, harness):
        track = progressive_track()
        h = harness([track])
        await h.session.handle(Play(track))
        await h.wait_for_state(S.PLAYING)
        await h.wait_for(lambda: h.of_type(Progress))

        h.engine.finish()
        await h.wait_for_state(S.IDLE)

        assert h.states() == [S.RESOLVING, S.BUFFERING, S.PLAYING, S.COMPLETED, S.IDLE]
        assert h.opened == ["https://cdn.example.test/1/audio.mp3"]
        assert [e.track.id for e in h.of_type(TrackStarted)] == [1]
        assert h.of_type(Progress)[-1].position == 42.0
        assert not h.of_type(TrackFailed)

    async def test_protected_track_plays_extracted_url(self, harness):
        track = protected_track()
        h = harness([track])
        await h.session.handle(Play(track))
        await h.wait_for_state(S.PLAYING)

        assert h.extractor.calls == [track.permalink_url]
        assert h.opened == ["https://cdn.example.test/extracted/audio.mp3"]
        assert h.states() == [S.RESOLVING, S.BUFFERING, S.PLAYING]
        assert not h.of_type(TrackFailed)

    async def test_protected_track_fails_when_extractor_fails(self, harness):
        track = protected_track()
        h = harness([track])
        h.extractor.error = ExtractionFailed("yt-dlp exited with code 1")
        await h.session.handle(Play(track))
        await h.wait_for_state(S.FAILED)

        failure = h.of_type(TrackFailed)[0]
        assert failure.reason == "drm"
        assert failure.stage == "extraction"
        assert failure.page_url == track.permalink_url
        assert h.states()[-1] == S.FAILED
        assert h.of_type(StateChanged)[-1].reason == "drm"
        assert not h.engine.started

    async def test_queue_advances_without_idle(self, harness):
        first, second = progressive_track(1), progressive_track(2)
        h = harness([first, second])
        await h.session.handle(Play(first, queue=(first, second)))
        await h.wait_for_state(S.PLAYING)

        h.engine.finish()
        await h.wait_for_state(S.PLAYING, count=2)

        completed = next(
            i
            for i, e in enumerate(h.events)
            if isinstance(e, StateChanged) and e.state == S.COMPLETED
        )
        advanced, resolving = h.events[completed + 1], h.events[completed + 2]
        assert isinstance(advanced, QueueAdvanced)
        assert advanced.index == 1 and advanced.track.id == 2
        assert resolving == StateChanged(S.RESOLVING, resolving.track)
        assert resolving.track.id == 2
        assert S.IDLE not in h.states()

    async def test_segmented_track_is_assembled(self, harness, sample_track):
        h = harness([sample_track])
        await h.session.handle(Play(sample_track))
        await h.wait_for_state(S.PLAYING)

        source = h.engine.started[0]
        assert isinstance(source, BufferSource)
        assert source.data == b"assembled-audio"
        assert h.opened == []


class TestCancellation:
    """Stop and Play supersede in-flight work"""

    async def test_stop_during_buffering(self, harness, sample_track):
        h = harness([sample_track])
        h.assembler.gate = asyncio.Event()
        await h.session.handle(Play(sample_track))
        await h.wait_for_state(S.BUFFERING)

        await h.session.handle(Stop())
        h.assembler.gate.set()
        await asyncio.sleep(0.05)

        assert h.assembler.cancelled
        assert h.states() == [S.RESOLVING, S.BUFFERING, S.IDLE]
        assert not h.engine.started
        assert not h.of_type(TrackFailed)

    async def test_play_supersedes_pending_track(self, harness, sample_track):
        other = progressive_track(2)
        h = harness([sample_track, other])
        h.assembler.gate = asyncio.Event()
        await h.session.handle(Play(sample_track))
        await h.wait_for_state(S.BUFFERING)

        await h.session.handle(Play(other))
        await h.wait_for_state(S.PLAYING)
        h.assembler.gate.set()
        await asyncio.sleep(0.05)

        assert [e.track.id for e in h.of_type(TrackStarted)] == [2]
        assert h.states().count(S.PLAYING) == 1
        assert not h.of_type(TrackFailed)
        assert h.session.current_track.id == 2

    async def test_stop_while_playing_releases_source(self, harness):
        track = progressive_track()
        h = harness([track])
        await h.session.handle(Play(track))
        await h.wait_for_state(S.PLAYING)
        source = h.engine.started[0]

        await h.session.handle(Stop())

        assert source.closed
        assert h.states()[-1] == S.IDLE
        assert h.session.current_track is None

    async def test_stop_when_idle_reports_idle(self, harness):
        h = harness([])
        await h.session.handle(Stop())
        assert h.states() == [S.IDLE]


class TestFailures:
    """Failures are tagged with the stage they happened in"""

    async def _fail(self, h, track):
        await h.session.handle(Play(track))
        await h.wait_for_state(S.FAILED)
        return h.of_type(TrackFailed)[0]

    async def test_metadata_failure(self, harness):
        h = harness([])
        failure = await self._fail(h, Track.stub(999))
        assert failure.stage == "metadata"
        assert failure.reason == "metadata"
        assert failure.page_url is None
        assert h.client.fetch_calls[999] == 1

    async def test_transient_metadata_failure_is_retried(self, harness):
        track = progressive_track()
        h = harness([track])
        h.client.failures[1] = [MetadataUnavailable("HTTP 503", retryable=True)]
        await h.session.handle(Play(Track.stub(1)))
        await h.wait_for_state(S.PLAYING)

        assert h.client.fetch_calls[1] == 2
        assert h.session.queue.current.title == track.title

    async def test_no_playable_variant(self, harness):
        h = harness([])
        track = make_track(3, [transcoding("progressive", "video/mp4")])
        failure = await self._fail(h, track)
        assert failure.stage == "select"
        assert failure.reason == "no_variant"

    async def test_segment_failure(self, harness, sample_track):
        h = harness([sample_track])
        h.assembler.error = SegmentFetchFailed(index=2)
        failure = await self._fail(h, sample_track)
        assert failure.stage == "assembly"
        assert failure.reason == "segment"

    async def test_stream_open_failure_is_retried(self, harness):
        track = progressive_track()
        h = harness([track])
        h.open_error = StreamOpenFailed("HTTP 503", retryable=True)
        failure = await self._fail(h, track)
        assert failure.stage == "stream"
        assert len(h.opened) == 2

    async def test_decode_failure(self, harness, sample_track):
        h = harness([sample_track])
        h.engine.start_error = DecodeError("Decoder exited with code 1")
        failure = await self._fail(h, sample_track)
        assert failure.stage == "decode"
        assert failure.reason == "decode"

    async def test_unexpected_error_fails_track(self, harness, sample_track):
        h = harness([sample_track])
        h.engine.start_error = RuntimeError("device driver crashed")
        failure = await self._fail(h, sample_track)
        assert failure.reason == "error"
        assert failure.stage == "playback"
        assert "device driver crashed" in failure.message
        assert h.session.state == S.FAILED

        h.engine.start_error = None
        await h.session.handle(Play(sample_track))
        await h.wait_for_state(S.PLAYING)

    async def test_playback_failure_does_not_advance(self, harness):
        first, second = progressive_track(1), progressive_track(2)
        h = harness([first, second])
        await h.session.handle(Play(first, queue=(first, second)))
        await h.wait_for_state(S.PLAYING)

        h.engine.finish(OutputDeviceError("Writing to the output device failed"))
        await h.wait_for_state(S.FAILED)
        await asyncio.sleep(0.05)

        failure = h.of_type(TrackFailed)[0]
        assert failure.stage == "playback"
        assert failure.reason == "output"
        assert len(h.engine.started) == 1
        assert not h.of_type(QueueAdvanced)

    async def test_extracted_manifest_still_protected(self, harness):
        track = protected_track()
        h = harness([track])
        h.extractor.url = "https://cdn.example.test/extracted/playlist.m3u8"
        h.assembler.manifests[h.extractor.url] = PROTECTED_PLAYLIST
        failure = await self._fail(h, track)
        assert failure.reason == "drm"
        assert failure.page_url == track.permalink_url
        assert "still protected" in failure.message

    async def test_failed_track_can_be_replayed(self, harness):
        track = progressive_track()
        h = harness([track])
        h.open_error = StreamOpenFailed("HTTP 404")
        await self._fail(h, track)

        h.open_error = None
        await h.session.handle(Play(track))
        await h.wait_for_state(S.PLAYING)
        assert len(h.engine.started) == 1


class TestResolve:
    """Resolution outcomes, without playing anything"""

    async def test_progressive(self, harness):
        track = progressive_track()
        h = harness([track])
        outcome = await h.session.resolve(track)
        assert outcome == DirectSource(
            VariantKind.PROGRESSIVE, "https://cdn.example.test/1/audio.mp3"
        )

    async def test_segmented_carries_manifest(self, harness, sample_track):
        h = harness([sample_track])
        outcome = await h.session.resolve(sample_track)
        assert isinstance(outcome, DirectSource)
        assert outcome.kind == VariantKind.SEGMENTED
        assert len(outcome.manifest.segments) == 2

    async def test_declared_protection(self, harness):
        track = protected_track()
        h = harness([track])
        outcome = await h.session.resolve(track)
        assert outcome == NeedsExtraction(track.permalink_url, "ctr-encrypted-hls")
        assert h.client.resolved == []

    async def test_protection_found_in_manifest(self, harness, sample_track):
        h = harness([sample_track])
        h.assembler.manifests["https://cdn.example.test/101/playlist.m3u8"] = (
            PROTECTED_PLAYLIST
        )
        outcome = await h.session.resolve(sample_track)
        assert outcome == NeedsExtraction(sample_track.permalink_url, "fairplay")

    async def test_protected_without_page_is_unplayable(self, harness):
        track = protected_track(permalink_url=None)
        h = harness([track])
        outcome = await h.session.resolve(track)
        assert isinstance(outcome, Unplayable)
        assert isinstance(outcome.error, ExtractionFailed)

    async def test_no_variant_is_unplayable(self, harness):
        track = make_track(3, [])
        h = harness([track])
        outcome = await h.session.resolve(track)
        assert isinstance(outcome, Unplayable)
        assert isinstance(outcome.error, NoPlayableVariant)
        assert outcome.error.stage == "select"
        assert outcome.error.track_id == 3

    async def test_extractor_declines(self, harness):
        track = protected_track()
        h = harness([track])
        h.extractor.error = ExtractionUnsupported("This video is DRM protected")
        await h.session.handle(Play(track))
        await h.wait_for_state(S.FAILED)
        assert h.of_type(TrackFailed)[0].reason == "drm"


class TestCommands:
    """Transport commands and their rejections"""

    async def test_pause_and_resume(self, harness):
        track = progressive_track()
        h = harness([track])
        await h.session.handle(Play(track))
        await h.wait_for_state(S.PLAYING)

        await h.session.handle(Pause())
        assert h.engine.paused
        assert h.session.state == S.PAUSED

        await h.session.handle(Pause())
        assert h.of_type(CommandRejected)[-1].reason == "not_playing"

        await h.session.handle(Resume())
        assert not h.engine.paused
        assert h.states()[-2:] == [S.PAUSED, S.PLAYING]

    async def test_resume_when_idle_is_rejected(self, harness):
        h = harness([])
        await h.session.handle(Resume())
        assert h.of_type(CommandRejected)[0].reason == "not_paused"

    async def test_seek_unsupported_is_rejected(self, harness):
        track = progressive_track()
        h = harness([track])
        await h.session.handle(Play(track))
        await h.wait_for_state(S.PLAYING)

        await h.session.handle(Seek(30.0))

        assert h.of_type(CommandRejected)[0].reason == "seek"
        assert h.session.state == S.PLAYING

    async def test_rejected_seek_keeps_track_playing(self, harness):
        track = progressive_track()
        h = harness([track])
        await h.session.handle(Play(track))
        await h.wait_for_state(S.PLAYING)

        await h.session.handle(Seek(30.0))
        h.engine.finish()
        await h.wait_for_state(S.IDLE)

        assert h.of_type(CommandRejected)[0].reason == "seek"
        assert h.states() == [S.RESOLVING, S.BUFFERING, S.PLAYING, S.COMPLETED, S.IDLE]
        assert not h.of_type(TrackFailed)

    async def test_seek_in_buffer(self, harness, sample_track):
        h = harness([sample_track])
        await h.session.handle(Play(sample_track))
        await h.wait_for_state(S.PLAYING)
        h.events.clear()

        await h.session.handle(Seek(30.0))

        assert not h.of_type(CommandRejected)
        assert h.engine.position == 30.0
        assert h.of_type(Progress)[0].position == 30.0

    async def test_seek_when_idle_is_rejected(self, harness):
        h = harness([])
        await h.session.handle(Seek(10.0))
        assert h.of_type(CommandRejected)[0].reason == "not_playing"

    async def test_set_volume(self, harness):
        h = harness([])
        await h.session.handle(SetVolume(0.3))
        assert h.engine.volume == 0.3

    async def test_next_and_previous(self, harness):
        tracks = [progressive_track(i) for i in (1, 2, 3)]
        h = harness(tracks)
        await h.session.handle(Play(tracks[0], queue=tuple(tracks)))
        await h.wait_for_state(S.PLAYING)

        await h.session.handle(Next())
        await h.wait_for_state(S.PLAYING, count=2)
        await h.session.handle(Previous())
        await h.wait_for_state(S.PLAYING, count=3)

        assert [e.index for e in h.of_type(QueueAdvanced)] == [1, 0]
        assert [e.track.id for e in h.of_type(TrackStarted)] == [1, 2, 1]

    async def test_next_at_end_of_queue(self, harness):
        track = progressive_track()
        h = harness([track])
        await h.session.handle(Play(track))
        await h.session.handle(Next())
        assert h.of_type(CommandRejected)[0].reason == "end_of_queue"

    async def test_previous_on_empty_queue(self, harness):
        h = harness([])
        await h.session.handle(Previous())
        assert h.of_type(CommandRejected)[0].reason == "empty_queue"

    async def test_repeat_one_replays_track(self, harness):
        track = progressive_track()
        h = harness([track])
        await h.session.handle(SetRepeat(RepeatMode.ONE))
        await h.session.handle(Play(track))
        await h.wait_for_state(S.PLAYING)

        h.engine.finish()
        await h.wait_for_state(S.PLAYING, count=2)

        assert [e.track.id for e in h.of_type(TrackStarted)] == [1, 1]
        assert h.of_type(QueueAdvanced)[0].index == 0

    async def test_enqueued_track_plays_next(self, harness):
        first, second = progressive_track(1), progressive_track(2)
        h = harness([first, second])
        await h.session.handle(Play(first))
        await h.session.handle(Enqueue(second))
        await h.wait_for_state(S.PLAYING)

        h.engine.finish()
        await h.wait_for_state(S.PLAYING, count=2)
        assert [e.track.id for e in h.of_type(TrackStarted)] == [1, 2]

    async def test_unknown_command(self, harness):
        h = harness([])
        await h.session.handle(object())
        assert h.of_type(CommandRejected)[0].reason == "unknown_command"

    async def test_preload_without_cache(self, harness):
        h = harness([])
        await h.session.handle(Preload(progressive_track()))
        assert h.of_type(CommandRejected)[0].reason == "cache_disabled"

    async def test_close_releases_clients(self, harness):
        h = harness([])
        await h.session.close()
        assert h.client.closed
        assert h.downloader.closed


class TestCaching:
    """Preloaded audio skips the network"""

    async def test_cache_hit_skips_resolution(self, harness, sample_track, tmp_path):
        cache = AudioCache(tmp_path)
        wav = make_wav()
        await cache.write(sample_track.id, wav)
        h = harness([sample_track], cache=cache)

        await h.session.handle(Play(sample_track))
        await h.wait_for_state(S.PLAYING)

        assert h.client.fetch_calls[sample_track.id] == 0
        assert h.client.resolved == []
        assert h.engine.started[0].data == wav
        assert not cache.has(sample_track.id)

    async def test_preload_next_track(self, harness, tmp_path):
        first, second = progressive_track(1), progressive_track(2)
        cache = AudioCache(tmp_path)
        h = harness([first, second], cache=cache, preload_next=True)
        await h.session.handle(Play(first, queue=(first, second)))
        await h.wait_for(lambda: h.of_type(PreloadComplete))

        assert h.of_type(PreloadComplete)[0].track_id == 2
        assert cache.has(2)

        h.engine.finish()
        await h.wait_for_state(S.PLAYING, count=2)
        assert h.opened == ["https://cdn.example.test/1/audio.mp3"]
        assert isinstance(h.engine.started[1], BufferSource)

    async def test_preload_command(self, harness, sample_track, tmp_path):
        cache = AudioCache(tmp_path)
        h = harness([sample_track], cache=cache)
        h.assembler.data = make_wav()
        await h.session.handle(Preload(sample_track))
        await h.wait_for(lambda: h.of_type(PreloadComplete))
        assert cache.has(sample_track.id)

    async def test_failed_preload_is_silent(self, harness, sample_track, tmp_path):
        cache = AudioCache(tmp_path)
        h = harness([sample_track], cache=cache)
        h.assembler.error = SegmentFetchFailed(index=0)
        await h.session.handle(Preload(sample_track))
        await asyncio.sleep(0.05)
        assert not h.of_type(PreloadComplete)
        assert not h.of_type(TrackFailed)
        assert not cache.has(sample_track.id)


class TestStubResolution:
    """Queued stub tracks are resolved through the catalog"""

    def _stubs(self, *track_ids):
        return tuple(Track.stub(i) for i in track_ids)

    async def test_queue_of_stubs_is_fetched_in_one_batch(self, harness):
        tracks = [progressive_track(i) for i in (1, 2, 3)]
        h = harness(tracks)
        stubs = self._stubs(1, 2, 3)
        await h.session.handle(Play(stubs[0], queue=stubs))
        await h.wait_for_state(S.PLAYING)

        assert h.client.batch_calls == [[1, 2, 3]]
        assert not h.client.fetch_calls
        assert [t.title for t in h.session.queue] == [t.title for t in tracks]

        h.engine.finish()
        await h.wait_for_state(S.PLAYING, count=2)
        assert len(h.client.batch_calls) == 1
        assert not h.client.fetch_calls

    async def test_batch_failure_falls_back_to_single_fetch(self, harness):
        h = harness([progressive_track(1), progressive_track(2)])
        h.client.batch_error = MetadataUnavailable("HTTP 400")
        stubs = self._stubs(1, 2)
        await h.session.handle(Play(stubs[0], queue=stubs))
        await h.wait_for_state(S.PLAYING)

        assert h.client.batch_calls == [[1, 2]]
        assert h.client.fetch_calls[1] == 1
        assert not h.session.queue.tracks[1].is_complete()

    async def test_track_missing_from_batch_reports_metadata_failure(self, harness):
        h = harness([progressive_track(2)])
        stubs = self._stubs(999, 2)
        await h.session.handle(Play(stubs[0], queue=stubs))
        await h.wait_for_state(S.FAILED)

        failure = h.of_type(TrackFailed)[0]
        assert failure.stage == "metadata"
        assert h.client.fetch_calls[999] == 1
        assert h.session.queue.tracks[1].is_complete()
