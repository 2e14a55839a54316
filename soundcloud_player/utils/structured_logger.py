"""
Structured logging for playback sessions.
Writes human-readable lines through the standard logger and, optionally,
JSON lines to a file for later analysis.
"""

import json
import logging
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Optional


class StructuredLogger:
    """
    Logger that emits `event key=value ...` lines and mirrors them as JSON.

    Usage:
        logger = StructuredLogger("soundcloud_player.session")
        logger.info("track_started", track_id=123, source="segmented")
    """

    def __init__(self, name: str, log_dir: Optional[Path] = None):
        self.name = name
        self._logger = logging.getLogger(name)
        self._json_file = None
        if log_dir is not None:
            log_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            self._json_file = open(  # noqa: SIM115
                log_dir / f"playback_{timestamp}.jsonl", "a", encoding="utf-8"
            )

        self._session_context: dict[str, Any] = {
            "session_id": f"{int(time.time())}_{id(self)}",
        }

    def _format_message(self, event: str, **context) -> str:
        parts = [f"[{event}]"]
        parts.extend(f"{key}={value}" for key, value in context.items())
        return " ".join(parts)

    def _write_json(self, level: str, event: str, **context) -> None:
        if not self._json_file or self._json_file.closed:
            return
        entry = {
            "timestamp": datetime.now().isoformat(),
            "level": level,
            "event": event,
            **self._session_context,
            **context,
        }
        try:
            self._json_file.write(json.dumps(entry, default=str) + "\n")
            self._json_file.flush()
        except OSError as e:
            print(f"JSON logging failed: {e}", file=sys.stderr)

    def _log(self, level: int, event: str, **context) -> None:
        self._logger.log(level, self._format_message(event, **context))
        self._write_json(logging.getLevelName(level), event, **context)

    def debug(self, event: str, **context) -> None:
        self._log(logging.DEBUG, event, **context)

    def info(self, event: str, **context) -> None:
        self._log(logging.INFO, event, **context)

    def warning(self, event: str, **context) -> None:
        self._log(logging.WARNING, event, **context)

    def error(self, event: str, **context) -> None:
        self._log(logging.ERROR, event, **context)

    def close(self) -> None:
        if self._json_file and not self._json_file.closed:
            self._json_file.close()


class PlaybackLogger:
    """Per-track playback events."""

    def __init__(self, logger: StructuredLogger):
        self.logger = logger

    def track_resolving(self, track_id: int, from_cache: bool = False):
        self.logger.debug("track_resolving", track_id=track_id, from_cache=from_cache)

    def variant_selected(self, track_id: int, protocol: str, mime_type: str, quality):
        self.logger.debug(
            "variant_selected",
            track_id=track_id,
            protocol=protocol,
            mime_type=mime_type,
            quality=quality,
        )

    def extraction_attempted(self, track_id: int, page_url: str, drm_type: str):
        self.logger.info(
            "extraction_attempted",
            track_id=track_id,
            page_url=page_url,
            drm_type=drm_type,
        )

    def track_started(self, track_id: int, source: str, buffered_bytes: int | None):
        self.logger.info(
            "track_started",
            track_id=track_id,
            source=source,
            buffered_bytes=buffered_bytes,
        )

    def track_completed(self, track_id: int, position_s: float):
        self.logger.info(
            "track_completed", track_id=track_id, position_s=round(position_s, 2)
        )

    def track_failed(self, track_id: int, stage: str | None, reason: str, error: str):
        self.logger.error(
            "track_failed",
            track_id=track_id,
            stage=stage,
            reason=reason,
            error=error,
        )


def create_playback_logger(log_dir: Optional[Path] = None) -> PlaybackLogger:
    return PlaybackLogger(StructuredLogger("soundcloud_player.session", log_dir))
