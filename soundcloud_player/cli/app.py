"""
Defines the command-line interface for the player using Typer.
"""

import asyncio
import logging
import os
import shutil
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler

from soundcloud_player import __version__
from soundcloud_player.api.client import SoundCloudClient
from soundcloud_player.core.player_thread import PlayerThread
from soundcloud_player.core.session import PlaybackSession
from soundcloud_player.exceptions import PlayerError
from soundcloud_player.media.engine import list_output_devices
from soundcloud_player.media.extractor import FallbackExtractor
from soundcloud_player.models.config import PlayerConfig
from soundcloud_player.models.playback import (
    Next,
    PlaybackState,
    Play,
    Progress,
    QueueAdvanced,
    RepeatMode,
    StateChanged,
    Stop,
    TrackFailed,
)
from soundcloud_player.models.track import Track
from soundcloud_player.storage.cache import AudioCache
from soundcloud_player.storage.config_manager import ConfigManager

from .formatters import (
    format_progress,
    print_config,
    print_devices_table,
    render_event,
)

console = Console()

logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[
        RichHandler(
            console=console,
            rich_tracebacks=True,
            show_path=False,
            show_level=False,
            markup=True,
        )
    ],
)
log = logging.getLogger("soundcloud_player")

app = typer.Typer(
    name="soundcloud-player",
    help="Play SoundCloud tracks from the terminal.",
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)


def get_config_dir() -> Path:
    if os.name == "nt":
        base_dir = Path(os.getenv("APPDATA", "~\\AppData\\Roaming"))
    else:
        base_dir = Path(os.getenv("XDG_CONFIG_HOME", "~/.config"))
    return base_dir.expanduser() / "soundcloud-player"


CONFIG_DIR = get_config_dir()
CONFIG_FILE = CONFIG_DIR / "config.ini"


def _cache_for(config: PlayerConfig) -> AudioCache:
    cache_dir = Path(config.cache_dir).expanduser() if config.cache_dir else CONFIG_DIR / "cache"
    return AudioCache(cache_dir, config.cache_max_age_hours)


def build_session_factory(config: PlayerConfig):
    """Returns a factory that builds a session inside the player thread."""

    def factory(emit) -> PlaybackSession:
        client = SoundCloudClient(
            config.client_id, config.oauth_token, timeout=config.request_timeout
        )
        return PlaybackSession(config, client, emit, cache=_cache_for(config))

    return factory


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase logging verbosity (-vv for debug).",
    ),
    version: bool = typer.Option(
        False, "--version", help="Show version and exit.", is_eager=True
    ),
    show_config: bool = typer.Option(
        False, "--show-config", help="Display the effective configuration."
    ),
    clear_cache: bool = typer.Option(
        False, "--clear-cache", help="Delete preloaded audio and exit."
    ),
):
    """SoundCloud terminal player"""
    if version:
        console.print(f"[bold]soundcloud-player[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()

    log_level = "INFO"
    if verbose >= 2:
        log_level = "DEBUG"
    elif verbose == 0:
        log_level = "WARNING"
    logging.getLogger("soundcloud_player").setLevel(log_level)

    if show_config or clear_cache:
        config = ConfigManager(CONFIG_FILE).load_config()
        if show_config:
            print_config(CONFIG_FILE, config)
        if clear_cache:
            removed = _cache_for(config).clear()
            console.print(f"[green]✓ Cache cleared ({removed} entries removed).[/green]")
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@app.command()
def play(
    track_ids: list[int] = typer.Argument(  # noqa: B008
        ..., help="One or more numeric track ids, played in order."
    ),
    volume: float | None = typer.Option(
        None, "--volume", min=0.0, max=1.0, help="Volume from 0.0 to 1.0."
    ),
    repeat: RepeatMode | None = typer.Option(  # noqa: B008
        None, "--repeat", case_sensitive=False, help="Repeat mode."
    ),
    preload_next: bool | None = typer.Option(
        None,
        "--preload-next/--no-preload-next",
        help="Download the next track while the current one plays.",
    ),
    open_browser: bool = typer.Option(
        False,
        "--open-browser",
        help="Open the track page in a browser when it is DRM protected.",
    ),
):
    """Play one or more tracks."""
    cli_options = {
        "volume": volume,
        "repeat_mode": repeat,
        "preload_next": preload_next,
    }
    config = ConfigManager(CONFIG_FILE).load_config(cli_options)
    tracks = tuple(Track.stub(track_id) for track_id in track_ids)

    player = PlayerThread(build_session_factory(config))
    player.start()
    current_index = 0
    try:
        player.send(Play(tracks[0], queue=tracks))
        with console.status("Starting...") as status:
            while True:
                event = player.get_event(timeout=0.5)
                if event is None:
                    if not player.is_alive:
                        break
                    continue
                if isinstance(event, Progress):
                    status.update(format_progress(event))
                    continue
                line = render_event(event)
                if line:
                    console.print(line)
                if isinstance(event, QueueAdvanced):
                    current_index = event.index
                elif isinstance(event, TrackFailed):
                    if event.reason == "drm" and event.page_url:
                        if open_browser:
                            typer.launch(event.page_url)
                        else:
                            console.print(
                                f"[dim]Listen in a browser: {event.page_url}[/dim]"
                            )
                elif isinstance(event, StateChanged):
                    if event.state == PlaybackState.FAILED:
                        if current_index + 1 < len(tracks):
                            player.send(Next())
                        else:
                            break
                    elif event.state == PlaybackState.IDLE:
                        break
    except KeyboardInterrupt:
        player.send(Stop())
        console.print("\n[yellow]Stopped.[/yellow]")
    finally:
        player.shutdown()


@app.command()
def diagnose():
    """Check the decoder, extractor, audio devices and catalog connectivity."""
    console.print("\n[bold cyan]Running diagnostics...[/bold cyan]\n")
    issues_found = False
    try:
        config = ConfigManager(CONFIG_FILE).load_config()
        console.print("[green]✓[/] Configuration can be loaded.")
    except PlayerError as e:
        console.print(f"[red]✗ Configuration validation failed: {e}[/red]")
        raise typer.Exit(code=1) from e

    if shutil.which(config.ffmpeg_path):
        console.print(f"[green]✓[/] Decoder found: [dim]{config.ffmpeg_path}[/dim]")
    else:
        console.print(f"[red]✗ Decoder '{config.ffmpeg_path}' not found.[/red]")
        issues_found = True

    if FallbackExtractor(config.extractor_path).is_available():
        console.print(f"[green]✓[/] Extractor found: [dim]{config.extractor_path}[/dim]")
    else:
        console.print(
            f"[yellow]! Extractor '{config.extractor_path}' not found; "
            "protected tracks cannot be played.[/yellow]"
        )

    try:
        devices = list_output_devices()
    except PlayerError as e:
        console.print(f"[red]✗ {e}[/red]")
        issues_found = True
    else:
        if devices:
            print_devices_table(devices)
        else:
            console.print("[red]✗ No audio output devices found.[/red]")
            issues_found = True

    console.print("\n[dim]Testing connectivity to the catalog...[/dim]")

    async def test_connection():
        client = SoundCloudClient(config.client_id, config.oauth_token, timeout=10)
        try:
            await client.api_call("search/tracks", q="test", limit=1)
            console.print("[green]✓[/] Successfully queried the catalog.")
            return True
        except PlayerError as e:
            console.print(f"[red]✗ Catalog query failed: {e}[/red]")
            return False
        finally:
            await client.close()

    if not asyncio.run(test_connection()):
        issues_found = True
    console.print()
    if not issues_found:
        console.print("[bold green]✓ All checks passed! Your setup looks good.[/bold green]\n")
    else:
        console.print(
            "[bold red]✗ Some issues were found. "
            "Please review the messages above.[/bold red]\n"
        )
        raise typer.Exit(code=1)
