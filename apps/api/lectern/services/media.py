"""Audio extraction for video uploads."""

from __future__ import annotations

import asyncio
from contextlib import suppress
import logging
from pathlib import Path

from lectern.core.logging_safety import safe_log_path

logger = logging.getLogger(__name__)


class AudioExtractionError(Exception):
    """ffmpeg could not produce an audio track from the upload."""


class AudioExtractor:
    """Converts a video into mono 128k MP3 next to it, using the ffmpeg CLI."""

    def __init__(self, ffmpeg_binary: str = "ffmpeg") -> None:
        self._ffmpeg = ffmpeg_binary

    def command(self, source: Path, target: Path) -> list[str]:
        return [
            self._ffmpeg,
            "-hide_banner",
            "-loglevel",
            "error",
            "-y",
            "-i",
            str(source),
            "-vn",
            "-acodec",
            "libmp3lame",
            "-b:a",
            "128k",
            "-ac",
            "1",
            "-f",
            "mp3",
            str(target),
        ]

    @staticmethod
    def target_for(source: Path) -> Path:
        return source.with_name(f"{source.stem}-audio.mp3")

    async def extract(self, source: Path, target: Path) -> Path:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command(source, target),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise AudioExtractionError(f"ffmpeg could not be started: {type(exc).__name__}") from exc

        try:
            _, stderr = await process.communicate()
        except BaseException:
            # ffmpeg must be gone before the staging directory is reaped.
            if process.returncode is None:
                with suppress(ProcessLookupError):
                    process.kill()
                await process.wait()
            logger.info("media.extract_interrupted file=%s", safe_log_path(source))
            raise
        if process.returncode != 0 or not target.is_file():
            logger.warning(
                "media.extract_failed file=%s returncode=%s stderr=%s",
                safe_log_path(source),
                process.returncode,
                stderr.decode("utf-8", errors="replace")[-300:],
            )
            raise AudioExtractionError("Audio extraction failed")

        logger.info("media.extracted file=%s", safe_log_path(target))
        return target


__all__ = ["AudioExtractionError", "AudioExtractor"]
