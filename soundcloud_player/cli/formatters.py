"""
Functions for formatting and displaying player output in the console using Rich.
"""

from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from soundcloud_player.models.config import PlayerConfig
from soundcloud_player.models.playback import (
    CommandRejected,
    Event,
    PlaybackState,
    PreloadComplete,
    Progress,
    QueueAdvanced,
    StateChanged,
    TrackFailed,
    TrackStarted,
)
from soundcloud_player.utils.formatting import format_clock

_STATE_STYLES = {
    PlaybackState.RESOLVING: "dim",
    PlaybackState.BUFFERING: "cyan",
    PlaybackState.PLAYING: "green",
    PlaybackState.PAUSED: "yellow",
    PlaybackState.FAILED: "red",
    PlaybackState.COMPLETED: "green",
    PlaybackState.IDLE: "dim",
}


def format_error_with_suggestions(
    error: Exception, context: dict | None = None
) -> Panel:
    """Formats an error with actionable suggestions into a Rich Panel."""
    error_type = type(error).__name__
    error_msg = str(error)

    suggestions_map = {
        "ConfigurationError": [
            "• Check the values in your config.ini.",
            "• Run `soundcloud-player --show-config` to see the effective settings.",
        ],
        "MetadataUnavailable": [
            "• Check that the track id exists and is public.",
            "• The public client id may have been rotated; set `client_id` in config.ini.",
            "• Check your internet connection.",
        ],
        "NoPlayableVariant": [
            "• The track offers no stream format this player can decode.",
            "• It may be a preview-only or region-restricted track.",
        ],
        "ExtractionFailed": [
            "• Install or update yt-dlp (`pip install -U yt-dlp`).",
            "• Set `extractor_path` if yt-dlp is not on your PATH.",
            "• Open the track page in a browser instead.",
        ],
        "ExtractionUnsupported": [
            "• This track is DRM protected and can only be played in a browser.",
        ],
        "DecodeError": [
            "• Make sure ffmpeg is installed and on your PATH.",
            "• Set `ffmpeg_path` in config.ini to point at it.",
        ],
        "OutputDeviceError": [
            "• Run `soundcloud-player diagnose` to list output devices.",
            "• Set `output_device` in config.ini.",
        ],
        "CircuitBreakerError": [
            "• Too many catalog failures in a row; requests are paused briefly.",
            "• Check your internet connection.",
        ],
    }

    suggestions = suggestions_map.get(
        error_type, ["• Run the command with -vv for detailed logs."]
    )

    error_text = Text()
    error_text.append(f"{error_type}: ", style="bold red")
    error_text.append(error_msg)

    content = Table.grid(padding=(1, 0))
    content.add_row(error_text)
    content.add_row()
    content.add_row(Text("Suggestions", style="bold yellow"))
    content.add_row(Text("\n".join(suggestions)))

    if context:
        content.add_row()
        content.add_row(Text(f"Context: {context}", style="dim"))

    return Panel(
        content,
        title="[bold red]An Error Occurred[/bold red]",
        border_style="red",
        expand=False,
    )


def render_event(event: Event) -> Optional[str]:
    """
    A one-line markup rendering of an event, or None for events that are
    shown elsewhere (progress) or not at all.
    """
    if isinstance(event, StateChanged):
        if event.state in (PlaybackState.PLAYING, PlaybackState.FAILED):
            return None
        style = _STATE_STYLES[event.state]
        label = event.track.display_title() if event.track else ""
        return f"[{style}]{event.state.value.capitalize()}[/{style}] {label}".rstrip()
    if isinstance(event, TrackStarted):
        duration = format_clock(event.track.duration_s) if event.track.duration else "?"
        return f"[bold green]▶ {event.track.display_title()}[/bold green] [dim]({duration})[/dim]"
    if isinstance(event, TrackFailed):
        where = f" during {event.stage}" if event.stage else ""
        return f"[red]✗ {event.track.display_title()} failed{where}:[/red] {event.message}"
    if isinstance(event, QueueAdvanced):
        return f"[dim]Queue position {event.index + 1}[/dim]"
    if isinstance(event, PreloadComplete):
        return f"[dim]Preloaded track {event.track_id}[/dim]"
    if isinstance(event, CommandRejected):
        return f"[yellow]{type(event.command).__name__} ignored ({event.reason})[/yellow]"
    return None


def format_progress(event: Progress) -> str:
    if event.duration > 0:
        return f"{format_clock(event.position)} / {format_clock(event.duration)}"
    return format_clock(event.position)


def print_config(config_path: Path, config: PlayerConfig):
    """Displays the effective configuration, hiding the OAuth token."""
    console = Console()
    content = ""
    for key, value in config.model_dump(mode="json").items():
        if key == "oauth_token" and value:
            value = "[hidden]"
        elif isinstance(value, dict):
            value = ", ".join(f"{k}:{v}" for k, v in value.items())
        content += f"{key} = {value}\n"

    console.print(
        Panel(
            content.strip(),
            title=f"Configuration ([dim]{config_path}[/dim])",
            border_style="cyan",
        )
    )


def print_devices_table(devices: list[dict]):
    """Displays the available audio output devices."""
    console = Console()
    table = Table(title="Output Devices")
    table.add_column("#", style="dim", justify="right")
    table.add_column("Name", style="cyan")
    table.add_column("Channels", justify="right")
    table.add_column("Rate", justify="right", style="green")
    for device in devices:
        table.add_row(
            str(device["index"]),
            device["name"],
            str(device["channels"]),
            f"{device['sample_rate']} Hz",
        )
    console.print(table)
