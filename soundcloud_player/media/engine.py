"""
Decode and output engine.

Compressed audio is piped through an ffmpeg subprocess that emits interleaved
signed 16-bit PCM; the PCM is volume-scaled with numpy and written to a
sounddevice output stream opened at the device's native rate.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from typing import Optional, Protocol

import numpy as np

from soundcloud_player.exceptions import (
    DecodeError,
    OutputDeviceError,
    PlayerError,
    SeekUnsupported,
)

try:
    import sounddevice as sd

    _sounddevice_import_error = None
except (ImportError, OSError) as e:
    sd = None
    _sounddevice_import_error = e

log = logging.getLogger(__name__)

SAMPLE_WIDTH = 2  # bytes per s16le sample


class AudioSource(Protocol):
    """What the engine needs from a buffer or a progressive stream."""

    def can_seek(self, duration: float) -> bool: ...

    async def read(self, n: int = -1) -> bytes: ...

    async def seek_time(self, offset: float, duration: float) -> float: ...

    async def close(self) -> None: ...


DecoderCommand = Callable[[float, int, int], list[str]]


def build_ffmpeg_command(
    ffmpeg_path: str, skip_seconds: float, sample_rate: int, channels: int
) -> list[str]:
    """ffmpeg reading any container on stdin and writing raw PCM on stdout."""
    cmd = [ffmpeg_path, "-hide_banner", "-loglevel", "error", "-nostdin"]
    if skip_seconds > 0:
        cmd += ["-ss", f"{skip_seconds:.3f}"]
    cmd += [
        "-i", "pipe:0",
        "-vn",
        "-f", "s16le",
        "-acodec", "pcm_s16le",
        "-ac", str(channels),
        "-ar", str(sample_rate),
        "pipe:1",
    ]
    return cmd


def list_output_devices() -> list[dict]:
    """Output-capable devices as reported by PortAudio."""
    if sd is None:
        raise OutputDeviceError(f"sounddevice not available: {_sounddevice_import_error}")
    devices = []
    for index, info in enumerate(sd.query_devices()):
        if info["max_output_channels"] > 0:
            devices.append(
                {
                    "index": index,
                    "name": info["name"],
                    "channels": info["max_output_channels"],
                    "sample_rate": int(info["default_samplerate"]),
                }
            )
    return devices


class AudioEngine:
    """
    Plays one source at a time.

    `start` returns once the first PCM block has been decoded and the output
    stream is open; from then on a background task feeds the device until the
    decoder is exhausted. `wait_finished` resolves at that point or raises the
    failure that ended playback.
    """

    READ_CHUNK = 32768
    BLOCK_FRAMES = 4096
    STDERR_LINES = 20

    def __init__(
        self,
        sample_rate: Optional[int] = None,
        channels: int = 2,
        volume: float = 0.8,
        device: Optional[str] = None,
        ffmpeg_path: str = "ffmpeg",
        decoder_command: Optional[DecoderCommand] = None,
    ):
        self.requested_rate = sample_rate
        self.requested_channels = channels
        self.device = device
        self.ffmpeg_path = ffmpeg_path
        self.decoder_command = decoder_command or (
            lambda skip, rate, ch: build_ffmpeg_command(ffmpeg_path, skip, rate, ch)
        )
        self._volume = volume

        self.sample_rate = 0
        self.channels = 0
        self._source: Optional[AudioSource] = None
        self._duration = 0.0
        self._stream = None
        self._process: Optional[asyncio.subprocess.Process] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._output_task: Optional[asyncio.Task] = None
        self._finished: Optional[asyncio.Future] = None
        self._stderr_tail: deque[str] = deque(maxlen=self.STDERR_LINES)
        self._source_error: Optional[PlayerError] = None
        self._running = asyncio.Event()
        self._base_position = 0.0
        self._frames_written = 0

    # --- Properties ---

    @property
    def volume(self) -> float:
        return self._volume

    def set_volume(self, level: float) -> None:
        self._volume = min(max(level, 0.0), 1.0)

    @property
    def position(self) -> float:
        """Seconds from track start of the audio handed to the device."""
        if not self.sample_rate:
            return self._base_position
        return self._base_position + self._frames_written / self.sample_rate

    @property
    def is_paused(self) -> bool:
        return not self._running.is_set()

    @property
    def _frame_bytes(self) -> int:
        return SAMPLE_WIDTH * self.channels

    # --- Output device ---

    def _negotiate_format(self) -> None:
        if sd is None:
            raise OutputDeviceError(
                f"sounddevice not available: {_sounddevice_import_error}"
            )
        try:
            info = sd.query_devices(self.device, "output")
        except (ValueError, sd.PortAudioError) as e:
            raise OutputDeviceError(f"No usable output device: {e}") from e
        max_channels = int(info["max_output_channels"])
        if max_channels < 1:
            raise OutputDeviceError(f"Device '{info['name']}' has no output channels.")
        self.channels = min(self.requested_channels, max_channels)
        self.sample_rate = self.requested_rate or int(info["default_samplerate"])
        log.debug(
            f"Output device '{info['name']}': {self.sample_rate} Hz, {self.channels} ch"
        )

    def _open_stream(self) -> None:
        try:
            self._stream = sd.RawOutputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype="int16",
                device=self.device,
                latency="high",
            )
            self._stream.start()
        except sd.PortAudioError as e:
            self._stream = None
            raise OutputDeviceError(f"Could not open output stream: {e}") from e

    def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.abort()
                stream.close()
            except sd.PortAudioError as e:
                log.debug(f"Error closing output stream: {e}")

    # --- Decoder ---

    async def _spawn_decoder(self, skip_seconds: float) -> None:
        command = self.decoder_command(skip_seconds, self.sample_rate, self.channels)
        self._stderr_tail.clear()
        self._source_error = None
        try:
            self._process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise DecodeError(f"Decoder '{command[0]}' could not be started: {e}") from e
        self._pump_task = asyncio.create_task(self._pump_input(self._process))
        self._stderr_task = asyncio.create_task(self._drain_stderr(self._process))

    async def _pump_input(self, process: asyncio.subprocess.Process) -> None:
        stdin = process.stdin
        try:
            while True:
                chunk = await self._source.read(self.READ_CHUNK)
                if not chunk:
                    break
                stdin.write(chunk)
                await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # Decoder exited early; its exit status tells the rest.
            return
        except PlayerError as e:
            self._source_error = e
        finally:
            if not stdin.is_closing():
                stdin.close()

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        async for line in process.stderr:
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self._stderr_tail.append(text)

    async def _read_block(self) -> bytes:
        try:
            data = await self._process.stdout.readexactly(
                self.BLOCK_FRAMES * self._frame_bytes
            )
        except asyncio.IncompleteReadError as e:
            data = e.partial
        usable = len(data) - len(data) % self._frame_bytes
        return data[:usable]

    async def _stop_decoder(self) -> None:
        for task in (self._pump_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
        process, self._process = self._process, None
        if process is not None and process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
        for task in (self._pump_task, self._stderr_task):
            if task is not None:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._pump_task = self._stderr_task = None

    async def _decoder_failure(self) -> PlayerError:
        """The error explaining why the decoder produced no more audio."""
        if self._stderr_task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self._stderr_task), timeout=1.0)
            except asyncio.TimeoutError:
                pass
        if self._source_error is not None:
            return self._source_error
        detail = self._stderr_tail[-1] if self._stderr_tail else "no diagnostic output"
        return DecodeError(
            f"Decoder exited with code {self._process.returncode}: {detail}"
        )

    # --- Output loop ---

    def _apply_volume(self, data: bytes) -> bytes:
        if self._volume >= 1.0:
            return data
        samples = np.frombuffer(data, dtype=np.int16).astype(np.float32)
        samples *= self._volume
        return np.clip(samples, -32768, 32767).astype(np.int16).tobytes()

    async def _write(self, data: bytes) -> None:
        try:
            await asyncio.to_thread(self._stream.write, self._apply_volume(data))
        except sd.PortAudioError as e:
            raise OutputDeviceError(f"Writing to the output device failed: {e}") from e
        self._frames_written += len(data) // self._frame_bytes

    async def _output_loop(self, first_block: bytes) -> None:
        try:
            block = first_block
            while block:
                await self._running.wait()
                await self._write(block)
                block = await self._read_block()

            await self._process.wait()
            if self._process.returncode == 0 and self._pump_task is not None:
                await self._pump_task
            if self._process.returncode != 0 or self._source_error is not None:
                raise await self._decoder_failure()
            # Let the device play out what it has buffered.
            latency = getattr(self._stream, "latency", 0.0) or 0.0
            await asyncio.sleep(latency)
        except PlayerError as e:
            if not self._finished.done():
                self._finished.set_exception(e)
            return
        except Exception as e:
            log.exception("Output loop failed")
            if not self._finished.done():
                self._finished.set_exception(
                    OutputDeviceError(f"Unexpected output failure: {e!r}")
                )
            return
        if not self._finished.done():
            self._finished.set_result(None)

    async def _begin(self, skip_seconds: float) -> None:
        await self._spawn_decoder(skip_seconds)
        first_block = await self._read_block()
        if not first_block:
            await self._process.wait()
            if self._process.returncode == 0 and self._pump_task is not None:
                await self._pump_task
            raise await self._decoder_failure()
        if self._stream is None:
            self._open_stream()
        self._output_task = asyncio.create_task(self._output_loop(first_block))

    # --- Public control ---

    async def start(
        self, source: AudioSource, duration: float = 0.0, start_at: float = 0.0
    ) -> None:
        """
        Starts decoding `source` and returns once the first PCM block is ready
        and the output stream is open.

        Raises:
            DecodeError: If the decoder cannot start or yields no audio.
            OutputDeviceError: If no output stream can be opened.
            StreamOpenFailed: If the source fails before any audio is decoded.
        """
        await self.stop()
        self._source = source
        self._duration = duration
        self._finished = asyncio.get_running_loop().create_future()
        self._base_position = 0.0
        self._frames_written = 0
        self._running.set()
        try:
            self._negotiate_format()
            skip = 0.0
            if start_at > 0:
                skip = await source.seek_time(start_at, duration)
                self._base_position = start_at
            await self._begin(skip)
        except BaseException:
            await self.stop()
            raise

    def pause(self) -> None:
        self._running.clear()

    def resume(self) -> None:
        self._running.set()

    async def seek(self, offset: float) -> None:
        """
        Restarts decoding at `offset` seconds.

        Raises:
            SeekUnsupported: If the source cannot be repositioned. Playback
                continues untouched.
        """
        if self._source is None or not self._source.can_seek(self._duration):
            raise SeekUnsupported("The current source cannot be repositioned.")
        if self._duration > 0:
            offset = min(max(offset, 0.0), self._duration)
        else:
            offset = max(offset, 0.0)

        await self._cancel_output()
        await self._stop_decoder()
        self._base_position = offset
        self._frames_written = 0
        try:
            skip = await self._source.seek_time(offset, self._duration)
            await self._begin(skip)
        except PlayerError as e:
            # The old decoder is gone, so the track cannot continue.
            if not self._finished.done():
                self._finished.set_exception(e)
            raise
        log.debug(f"Seeked to {offset:.1f}s")

    async def _cancel_output(self) -> None:
        task, self._output_task = self._output_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def wait_finished(self) -> None:
        """
        Waits until the source has been played to the end.

        Raises:
            DecodeError, OutputDeviceError, StreamOpenFailed: If playback ended
                because of a failure.
        """
        if self._finished is None:
            return
        await asyncio.shield(self._finished)

    async def stop(self) -> None:
        """Stops playback and releases the decoder, the output stream and the source."""
        await self._cancel_output()
        await self._stop_decoder()
        self._close_stream()
        source, self._source = self._source, None
        if source is not None:
            await source.close()
        if self._finished is not None and not self._finished.done():
            self._finished.cancel()
