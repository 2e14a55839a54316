"""
Fallback stream extraction through an external tool (yt-dlp).
"""

import asyncio
import json
import logging
import re
import shutil
from typing import Optional

from soundcloud_player.exceptions import ExtractionFailed, ExtractionUnsupported
from soundcloud_player.utils.formatting import shorten_url

log = logging.getLogger(__name__)

_DRM_MESSAGE_RE = re.compile(r"\bDRM\b|protected", re.IGNORECASE)


class FallbackExtractor:
    """
    Asks an external extractor for a directly playable audio URL of a public
    track page. Used only for variants the player cannot decrypt itself.
    """

    def __init__(self, tool_path: str = "yt-dlp", timeout: float = 60.0):
        self.tool_path = tool_path
        self.timeout = timeout

    def is_available(self) -> bool:
        return shutil.which(self.tool_path) is not None

    def build_command(self, page_url: str) -> list[str]:
        return [self.tool_path, "-f", "bestaudio", "--get-url", "--no-warnings", page_url]

    @staticmethod
    def parse_output(output: str) -> Optional[str]:
        """
        Accepts either a plain URL line or a JSON object with a 'url' field.
        """
        for line in output.splitlines():
            line = line.strip()
            if not line:
                continue
            if line.startswith("{"):
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    continue
                url = data.get("url") if isinstance(data, dict) else None
                if isinstance(url, str) and url.startswith("http"):
                    return url
            elif line.startswith("http"):
                return line
        return None

    async def extract(self, page_url: str) -> str:
        """
        Runs the extractor and returns the first URL it prints.

        Raises:
            ExtractionFailed: The tool is missing, times out, exits non-zero or
                prints nothing usable.
            ExtractionUnsupported: The tool reports the content as DRM protected.
        """
        command = self.build_command(page_url)
        log.debug(f"Running extractor: {' '.join(command[:-1])} {shorten_url(page_url)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise ExtractionFailed(
                f"Extractor '{self.tool_path}' could not be started: {e}"
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            await self._kill(process)
            raise ExtractionFailed(
                f"Extractor timed out after {self.timeout:.0f}s."
            ) from e
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        err_text = stderr.decode("utf-8", errors="replace").strip()
        if process.returncode != 0:
            last_line = err_text.splitlines()[-1] if err_text else "no output"
            if _DRM_MESSAGE_RE.search(err_text):
                raise ExtractionUnsupported(f"Extractor reports DRM: {last_line}")
            raise ExtractionFailed(
                f"Extractor exited with code {process.returncode}: {last_line}"
            )

        url = self.parse_output(stdout.decode("utf-8", errors="replace"))
        if url is None:
            raise ExtractionFailed("Extractor did not print a stream URL.")
        log.debug(f"Extractor returned {shorten_url(url)}")
        return url

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
