"""
Runs a PlaybackSession on a dedicated thread with its own event loop.
"""

import asyncio
import logging
import queue
import threading
from collections.abc import Callable
from typing import Optional

from soundcloud_player.exceptions import PlayerError
from soundcloud_player.models.playback import Command, CommandRejected, Event

from .session import PlaybackSession

log = logging.getLogger(__name__)

_SHUTDOWN = object()

SessionFactory = Callable[[Callable[[Event], None]], PlaybackSession]


class PlayerThread:
    """
    Bridge between a front end and the player.

    `send` may be called from any thread and never blocks; commands are
    processed strictly in arrival order on the player's loop. Events are put
    on an unbounded queue that the front end drains with `get_event`,
    `events()` or `await next_event()`.
    """

    def __init__(self, session_factory: SessionFactory, name: str = "player"):
        """
        Args:
            session_factory: Builds the session inside the player thread; it
                receives the callback the session emits events through.
            name: Thread name, visible in debuggers and logs.
        """
        self._session_factory = session_factory
        self._events: "queue.Queue[Event]" = queue.Queue()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._ready = threading.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._commands: Optional[asyncio.Queue] = None
        self._startup_error: Optional[BaseException] = None
        self.session: Optional[PlaybackSession] = None

    # --- Front-end side ---

    def start(self, timeout: float = 10.0) -> None:
        self._thread.start()
        if not self._ready.wait(timeout):
            raise RuntimeError("Player thread did not start in time.")
        if self._startup_error is not None:
            raise self._startup_error

    @property
    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def send(self, command: Command) -> None:
        """Enqueues a command; safe to call from any thread."""
        if self._loop is None or self._loop.is_closed():
            raise RuntimeError("Player thread is not running.")
        self._loop.call_soon_threadsafe(self._commands.put_nowait, command)

    def get_event(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Returns the next event, or None if none arrives within `timeout`."""
        try:
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    def events(self):
        """Drains the events that are already queued, without waiting."""
        while True:
            try:
                yield self._events.get_nowait()
            except queue.Empty:
                return

    async def next_event(self) -> Event:
        """Awaits the next event from a front end running its own event loop."""
        return await asyncio.to_thread(self._events.get)

    def shutdown(self, timeout: float = 10.0) -> None:
        """Stops playback, closes the session and joins the thread."""
        if self._loop is not None and not self._loop.is_closed() and self.is_alive:
            self._loop.call_soon_threadsafe(self._commands.put_nowait, _SHUTDOWN)
        self._thread.join(timeout)
        if self._thread.is_alive():
            log.warning("[yellow]Player thread did not exit in time.[/yellow]")

    # --- Player side ---

    def _run(self) -> None:
        try:
            asyncio.run(self._main())
        except Exception:
            log.exception("Player thread crashed")

    async def _main(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._commands = asyncio.Queue()
        try:
            self.session = self._session_factory(self._events.put_nowait)
        except Exception as e:
            self._startup_error = e
            self._ready.set()
            return
        self._ready.set()
        log.debug("Player thread started.")

        try:
            while True:
                command = await self._commands.get()
                if command is _SHUTDOWN:
                    break
                await self._dispatch(command)
        finally:
            await self.session.close()
            log.debug("Player thread stopped.")

    async def _dispatch(self, command: Command) -> None:
        try:
            await self.session.handle(command)
        except PlayerError as e:
            log.error(f"[red]Command {type(command).__name__} failed: {e}[/red]")
            self._events.put_nowait(CommandRejected(command, e.reason))
        except Exception as e:
            log.exception(f"Unexpected error handling {type(command).__name__}")
            self._events.put_nowait(CommandRejected(command, f"internal: {e!r}"))
