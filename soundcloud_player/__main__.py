"""
Entry point for `python -m soundcloud_player` and the console script.
Errors that escape the CLI are shown as a panel with suggestions.
"""

import logging
import sys
from typing import Optional

import typer
from rich.console import Console

from soundcloud_player.cli.app import CONFIG_FILE, app
from soundcloud_player.cli.formatters import format_error_with_suggestions
from soundcloud_player.exceptions import ConfigurationError, PlayerError

log = logging.getLogger("soundcloud_player")


def _error_context(error: PlayerError) -> Optional[dict]:
    if isinstance(error, ConfigurationError):
        return {"config_file": str(CONFIG_FILE)}
    context = {}
    if error.track_id is not None:
        context["track"] = error.track_id
    if error.stage:
        context["stage"] = error.stage
    return context or None


def main() -> None:
    console = Console(stderr=True)
    try:
        app()
    except (typer.Exit, typer.Abort):
        pass
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped.[/yellow]")
        sys.exit(130)
    except PlayerError as e:
        console.print(format_error_with_suggestions(e, _error_context(e)))
        sys.exit(1)
    except Exception as e:
        log.debug("Unhandled error", exc_info=True)
        console.print(format_error_with_suggestions(e, {"type": "Unexpected"}))
        sys.exit(1)


if __name__ == "__main__":
    main()
