"""
The playback state machine.

A `PlaybackSession` owns the queue, the current state and the audio engine.
Commands are handled one at a time by `handle`; the long-running work for a
track (resolution, buffering, playback) runs in a single asyncio task so that
a Stop or a new Play can cancel it. Every such task is tagged with a
generation number and events from a superseded generation are dropped.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import contextmanager, suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from soundcloud_player.api.client import SoundCloudClient
from soundcloud_player.exceptions import (
    ExtractionFailed,
    ExtractionUnsupported,
    PlayerError,
    SeekUnsupported,
)
from soundcloud_player.media.assembler import SegmentedStreamAssembler
from soundcloud_player.media.downloader import Downloader
from soundcloud_player.media.engine import AudioEngine, AudioSource
from soundcloud_player.media.extractor import FallbackExtractor
from soundcloud_player.media.hls import Manifest, looks_like_manifest_url
from soundcloud_player.media.integrity import AudioIntegrityChecker
from soundcloud_player.media.progressive import BufferSource, ProgressiveStream
from soundcloud_player.media.protection import EncryptionDetector
from soundcloud_player.models.config import PlayerConfig
from soundcloud_player.models.playback import (
    CommandRejected,
    Enqueue,
    Event,
    Next,
    Pause,
    PlaybackState,
    Play,
    Preload,
    PreloadComplete,
    Previous,
    Progress,
    QueueAdvanced,
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
from soundcloud_player.utils.retry import retry_async
from soundcloud_player.utils.structured_logger import (
    PlaybackLogger,
    create_playback_logger,
)

from .queue import PlaybackQueue
from .selector import select_variant

log = logging.getLogger(__name__)


# --- Resolution outcome ---


@dataclass(frozen=True)
class DirectSource:
    """A stream the player can fetch and decode itself."""

    kind: VariantKind
    url: str
    manifest: Optional[Manifest] = None
    extracted: bool = False


@dataclass(frozen=True)
class NeedsExtraction:
    """A protected stream; only the external extractor may help."""

    page_url: str
    drm_type: str


@dataclass(frozen=True)
class Unplayable:
    error: PlayerError


ResolutionOutcome = Union[DirectSource, NeedsExtraction, Unplayable]

ProgressiveOpener = Callable[[str], Awaitable[AudioSource]]


@contextmanager
def _stage(track_id: int, stage: str):
    """Tags errors raised inside the block with the track and stage."""
    try:
        yield
    except PlayerError as e:
        e.with_context(track_id, stage)
        raise


class PlaybackSession:
    """Single owner of playback state; see the module docstring."""

    def __init__(
        self,
        config: PlayerConfig,
        client: SoundCloudClient,
        emit: Callable[[Event], None],
        *,
        downloader: Optional[Downloader] = None,
        assembler: Optional[SegmentedStreamAssembler] = None,
        extractor: Optional[FallbackExtractor] = None,
        engine: Optional[AudioEngine] = None,
        cache: Optional[AudioCache] = None,
        progressive_opener: Optional[ProgressiveOpener] = None,
        playback_logger: Optional[PlaybackLogger] = None,
    ):
        self.config = config
        self.client = client
        self._emit_callback = emit
        self.downloader = downloader or Downloader(
            max_attempts=config.max_attempts,
            base_delay=config.retry_base_delay,
            timeout=config.request_timeout,
        )
        self.assembler = assembler or SegmentedStreamAssembler(self.downloader)
        self.extractor = extractor or FallbackExtractor(
            config.extractor_path, timeout=config.extractor_timeout
        )
        self.engine = engine or AudioEngine(
            sample_rate=config.sample_rate,
            volume=config.volume,
            device=config.output_device,
            ffmpeg_path=config.ffmpeg_path,
        )
        self.cache = cache
        self._open_progressive = progressive_opener or self._open_progressive_stream
        self.playback_log = playback_logger or create_playback_logger(
            Path(config.log_dir) if config.log_dir else None
        )

        self.state = PlaybackState.IDLE
        self.queue = PlaybackQueue()
        self.repeat = config.repeat_mode
        self.current_track: Optional[Track] = None
        self._generation = 0
        self._task: Optional[asyncio.Task] = None
        self._preloads: dict[int, asyncio.Task] = {}
        self._handlers = {
            Play: self._on_play,
            Enqueue: self._on_enqueue,
            Pause: self._on_pause,
            Resume: self._on_resume,
            Stop: self._on_stop,
            Next: self._on_next,
            Previous: self._on_previous,
            Seek: self._on_seek,
            SetVolume: self._on_set_volume,
            SetRepeat: self._on_set_repeat,
            Preload: self._on_preload,
        }

    # --- Event emission ---

    def _emit(self, event: Event, generation: Optional[int] = None) -> bool:
        """Delivers an event unless it belongs to a superseded track attempt."""
        if generation is not None and generation != self._generation:
            log.debug(f"Dropping stale event {type(event).__name__} (gen {generation})")
            return False
        self._emit_callback(event)
        return True

    def _set_state(
        self,
        state: PlaybackState,
        track: Optional[Track] = None,
        reason: Optional[str] = None,
        generation: Optional[int] = None,
    ) -> None:
        if generation is not None and generation != self._generation:
            return
        self.state = state
        self._emit(StateChanged(state, track, reason))

    # --- Command handling ---

    async def handle(self, command) -> None:
        handler = self._handlers.get(type(command))
        if handler is None:
            self._emit(CommandRejected(command, "unknown_command"))
            return
        await handler(command)

    async def _on_play(self, command: Play) -> None:
        track = command.track
        if command.queue is not None:
            self.queue.replace(command.queue)
        index = self.queue.index_of(track.id)
        if index is None:
            index = self.queue.append(track)
        await self._start_track(index)

    async def _on_enqueue(self, command: Enqueue) -> None:
        self.queue.append(command.track)

    async def _on_pause(self, command: Pause) -> None:
        if self.state != PlaybackState.PLAYING:
            self._emit(CommandRejected(command, "not_playing"))
            return
        self.engine.pause()
        self._set_state(PlaybackState.PAUSED, self.current_track)

    async def _on_resume(self, command: Resume) -> None:
        if self.state != PlaybackState.PAUSED:
            self._emit(CommandRejected(command, "not_paused"))
            return
        self.engine.resume()
        self._set_state(PlaybackState.PLAYING, self.current_track)

    async def _on_stop(self, command: Stop) -> None:
        await self._cancel_current()
        self._set_state(PlaybackState.IDLE)

    async def _on_next(self, command: Next) -> None:
        index = self.queue.skip_index(self.repeat)
        if index is None:
            self._emit(CommandRejected(command, "end_of_queue"))
            return
        await self._start_track(index, announce=True)

    async def _on_previous(self, command: Previous) -> None:
        index = self.queue.previous_index()
        if index is None:
            self._emit(CommandRejected(command, "empty_queue"))
            return
        await self._start_track(index, announce=True)

    async def _on_seek(self, command: Seek) -> None:
        if self.state not in (PlaybackState.PLAYING, PlaybackState.PAUSED):
            self._emit(CommandRejected(command, "not_playing"))
            return
        try:
            await self.engine.seek(command.offset)
        except SeekUnsupported as e:
            log.info(f"[yellow]Seek rejected: {e}[/yellow]")
            self._emit(CommandRejected(command, SeekUnsupported.reason))
            return
        except PlayerError as e:
            # The track task observes the failure through wait_finished.
            log.debug(f"Seek failed: {e}")
            return
        self._emit(Progress(self.engine.position, self._duration_for(self.current_track)))

    async def _on_set_volume(self, command: SetVolume) -> None:
        self.engine.set_volume(command.level)

    async def _on_set_repeat(self, command: SetRepeat) -> None:
        self.repeat = command.mode

    async def _on_preload(self, command: Preload) -> None:
        if self.cache is None:
            self._emit(CommandRejected(command, "cache_disabled"))
            return
        self._spawn_preload(command.track)

    # --- Track lifecycle ---

    async def _cancel_current(self) -> None:
        """Supersedes the running track attempt and releases the output."""
        self._generation += 1
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        await self.engine.stop()
        self.current_track = None

    async def _start_track(self, index: int, announce: bool = False) -> None:
        await self._cancel_current()
        track = self.queue.jump_to(index)
        if announce:
            self._emit(QueueAdvanced(index, track))
        self._launch(track)

    def _launch(self, track: Track) -> None:
        self.current_track = track
        self._task = asyncio.create_task(self._run_track(track, self._generation))

    def _advance(self, generation: int) -> None:
        """Moves to the next queue entry from inside the finishing track task."""
        if generation != self._generation:
            return
        index = self.queue.next_index(self.repeat)
        if index is None:
            self.current_track = None
            self._set_state(PlaybackState.IDLE)
            return
        self._generation += 1
        track = self.queue.jump_to(index)
        self._emit(QueueAdvanced(index, track))
        self._launch(track)

    def _duration_for(self, track: Optional[Track], probed: Optional[float] = None) -> float:
        if track is not None and track.duration:
            return track.duration_s
        return probed or 0.0

    async def _run_track(self, track: Track, generation: int) -> None:
        source: Optional[AudioSource] = None
        page_url = track.permalink_url
        try:
            self._set_state(PlaybackState.RESOLVING, track, generation=generation)

            cached = await self.cache.read(track.id) if self.cache else None
            if cached is not None:
                self.playback_log.track_resolving(track.id, from_cache=True)
                await self.cache.remove(track.id)
                self._set_state(PlaybackState.BUFFERING, track, generation=generation)
                source, source_kind = BufferSource(cached), "cache"
            else:
                self.playback_log.track_resolving(track.id)
                track = await self._ensure_metadata(track)
                page_url = track.permalink_url
                self.current_track = track
                outcome = await self.resolve(track)
                if isinstance(outcome, Unplayable):
                    raise outcome.error
                if isinstance(outcome, NeedsExtraction):
                    outcome = await self._extract(track, outcome)

                self._set_state(PlaybackState.BUFFERING, track, generation=generation)
                source, source_kind = await self._materialize(track, outcome)

            probed = None
            if isinstance(source, BufferSource) and not track.duration:
                probed = await asyncio.to_thread(
                    AudioIntegrityChecker.probe_duration, source.data
                )
            duration = self._duration_for(track, probed)

            owned, source = source, None
            with _stage(track.id, "decode"):
                await self.engine.start(owned, duration=duration)

            self._set_state(PlaybackState.PLAYING, track, generation=generation)
            self._emit(TrackStarted(track), generation)
            self.playback_log.track_started(
                track.id, source_kind, len(owned) if isinstance(owned, BufferSource) else None
            )
            if self.config.preload_next and self.cache is not None:
                self._preload_next(track)

            progress = asyncio.create_task(self._report_progress(generation, duration))
            try:
                with _stage(track.id, "playback"):
                    await self.engine.wait_finished()
            finally:
                progress.cancel()
                with suppress(asyncio.CancelledError):
                    await progress

            position = self.engine.position
            self._emit(Progress(position, duration), generation)
            self.playback_log.track_completed(track.id, position)
            self._set_state(PlaybackState.COMPLETED, track, generation=generation)
            await self.engine.stop()
            self._advance(generation)
        except PlayerError as e:
            await self._fail(track, e, generation, page_url)
        except Exception as e:
            log.exception(f"Unexpected error while playing track {track.id}")
            error = PlayerError(f"Unexpected error: {e!r}", stage="playback")
            await self._fail(track, error, generation, page_url)
        finally:
            if source is not None:
                await source.close()

    async def _fail(
        self, track: Track, error: PlayerError, generation: int, page_url: Optional[str]
    ) -> None:
        error.with_context(track.id)
        log.error(
            f"[red]Track {track.id} failed during {error.stage or 'playback'}: {error}[/red]"
        )
        self.playback_log.track_failed(track.id, error.stage, error.reason, str(error))
        if generation == self._generation:
            await self.engine.stop()
        self._emit(
            TrackFailed(
                track,
                error.reason,
                stage=error.stage,
                message=str(error),
                page_url=page_url if error.reason == "drm" else None,
            ),
            generation,
        )
        self._set_state(PlaybackState.FAILED, track, error.reason, generation)

    async def _report_progress(self, generation: int, duration: float) -> None:
        while True:
            await asyncio.sleep(self.config.progress_interval)
            if self.state == PlaybackState.PLAYING:
                self._emit(Progress(self.engine.position, duration), generation)

    # --- Resolution ---

    async def _ensure_metadata(self, track: Track) -> Track:
        """Fetches full metadata for stub tracks and tracks without transcodings."""
        if self._is_resolved(track):
            return track
        resolved = await self._resolve_queued_stubs(track)
        if resolved is not None:
            return resolved
        with _stage(track.id, "metadata"):
            resolved = await retry_async(
                lambda: self.client.fetch_track(track.id),
                max_attempts=self.config.max_attempts,
                base_delay=self.config.retry_base_delay,
                description=f"Metadata fetch for track {track.id}",
            )
        self.queue.update(resolved)
        return resolved

    @staticmethod
    def _is_resolved(track: Track) -> bool:
        return track.is_complete() and bool(track.variants)

    async def _resolve_queued_stubs(self, track: Track) -> Optional[Track]:
        """
        Resolves `track` together with every other unresolved queue entry in
        batched catalog requests. Returns None when the batch did not yield
        `track`, leaving it to the single-track fetch and its error reporting.
        """
        others = [
            t.id for t in self.queue if t.id != track.id and not self._is_resolved(t)
        ]
        if not others:
            return None
        track_ids = [track.id] + list(dict.fromkeys(others))
        try:
            found = await retry_async(
                lambda: self.client.fetch_tracks(track_ids),
                max_attempts=self.config.max_attempts,
                base_delay=self.config.retry_base_delay,
                description=f"Metadata fetch for {len(track_ids)} queued tracks",
            )
        except PlayerError as e:
            log.warning(f"[yellow]Batch metadata fetch failed: {e}[/yellow]")
            return None
        log.debug(f"Resolved {len(found)}/{len(track_ids)} queued tracks in batch")
        for resolved in found.values():
            self.queue.update(resolved)
        return found.get(track.id)

    async def resolve(self, track: Track) -> ResolutionOutcome:
        """
        Decides how `track` can be played. Network errors and unplayable
        tracks come back as `Unplayable`; only cancellation propagates.
        """
        try:
            with _stage(track.id, "select"):
                variant = select_variant(track.variants, self.config.quality_rank)
            self.playback_log.variant_selected(
                track.id, variant.format.protocol, variant.codec, variant.quality
            )
            if EncryptionDetector.is_protected(variant):
                return self._needs_extraction(
                    track, EncryptionDetector.drm_type(variant)
                )

            with _stage(track.id, "stream_url"):
                url = await retry_async(
                    lambda: self.client.resolve_stream_url(track, variant),
                    max_attempts=self.config.max_attempts,
                    base_delay=self.config.retry_base_delay,
                    description=f"Stream URL for track {track.id}",
                )
            if variant.kind != VariantKind.SEGMENTED:
                return DirectSource(variant.kind, url)

            with _stage(track.id, "manifest"):
                manifest = await self.assembler.fetch_manifest(url)
            if EncryptionDetector.is_protected(variant, manifest):
                return self._needs_extraction(
                    track, EncryptionDetector.drm_type(variant, manifest)
                )
            return DirectSource(variant.kind, url, manifest)
        except PlayerError as e:
            return Unplayable(e.with_context(track.id))

    def _needs_extraction(self, track: Track, drm_type: str) -> ResolutionOutcome:
        if not track.permalink_url:
            return Unplayable(
                ExtractionFailed(
                    "Protected track has no public page to extract from.",
                    track_id=track.id,
                    stage="extraction",
                )
            )
        return NeedsExtraction(track.permalink_url, drm_type)

    async def _extract(self, track: Track, outcome: NeedsExtraction) -> DirectSource:
        """
        Runs the fallback extractor once. Never retried.
        """
        self.playback_log.extraction_attempted(track.id, outcome.page_url, outcome.drm_type)
        with _stage(track.id, "extraction"):
            url = await self.extractor.extract(outcome.page_url)
            if not looks_like_manifest_url(url):
                return DirectSource(VariantKind.PROGRESSIVE, url, extracted=True)
            try:
                manifest = await self.assembler.fetch_manifest(url)
            except PlayerError as e:
                raise ExtractionFailed(f"Extracted manifest is unusable: {e}") from e
            if EncryptionDetector.manifest_is_protected(manifest):
                raise ExtractionUnsupported("Extracted stream is still protected.")
            return DirectSource(VariantKind.SEGMENTED, url, manifest, extracted=True)

    async def _materialize(
        self, track: Track, outcome: DirectSource
    ) -> tuple[AudioSource, str]:
        """Turns a resolved stream into a source for the engine."""
        if outcome.kind == VariantKind.SEGMENTED:
            with _stage(track.id, "assembly"):
                data = await self.assembler.assemble(outcome.manifest)
            return BufferSource(data), "segmented"

        with _stage(track.id, "stream"):
            stream = await retry_async(
                lambda: self._open_progressive(outcome.url),
                max_attempts=self.config.max_attempts,
                base_delay=self.config.retry_base_delay,
                description=f"Stream open for track {track.id}",
            )
        return stream, "extracted" if outcome.extracted else "progressive"

    async def _open_progressive_stream(self, url: str) -> ProgressiveStream:
        return await ProgressiveStream.open(
            self.downloader.session,
            url,
            read_ahead_bytes=self.config.read_ahead_bytes,
            max_attempts=self.config.max_attempts,
        )

    # --- Preloading ---

    def _preload_next(self, current: Track) -> None:
        upcoming = self.queue.peek_next(self.repeat)
        if upcoming is not None and upcoming.id != current.id:
            self._spawn_preload(upcoming)

    def _spawn_preload(self, track: Track) -> None:
        existing = self._preloads.get(track.id)
        if existing is not None and not existing.done():
            return
        task = asyncio.create_task(self._preload(track))
        self._preloads[track.id] = task
        task.add_done_callback(lambda _: self._preloads.pop(track.id, None))

    async def _preload(self, track: Track) -> None:
        if self.cache.has(track.id):
            self._emit(PreloadComplete(track.id))
            return
        try:
            track = await self._ensure_metadata(track)
            outcome = await self.resolve(track)
            if isinstance(outcome, Unplayable):
                raise outcome.error
            if isinstance(outcome, NeedsExtraction):
                outcome = await self._extract(track, outcome)
            if outcome.kind == VariantKind.SEGMENTED:
                data = await self.assembler.assemble(outcome.manifest)
            else:
                data = await self.downloader.fetch_bytes(outcome.url)
        except Exception as e:
            log.warning(f"[yellow]Preload of track {track.id} failed: {e}[/yellow]")
            return
        if await self.cache.write(track.id, data):
            self._emit(PreloadComplete(track.id))

    # --- Shutdown ---

    async def close(self) -> None:
        await self._cancel_current()
        for task in list(self._preloads.values()):
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        await self.downloader.close()
        await self.client.close()
        self.playback_log.logger.close()
