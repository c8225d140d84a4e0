"""Thin wrappers around ffmpeg-python that never let a child process hang."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

import ffmpeg

from ..config import settings
from ..errors import TranscodeError

logger = logging.getLogger(__name__)


def run_stream(stream, timeout: float | None = None) -> tuple[bytes, bytes]:
    """Run an ffmpeg-python output stream as a child process.

    The process is killed when it outlives ``timeout`` seconds and a
    :class:`TranscodeError` is raised. A non-zero exit status raises
    ``ffmpeg.Error`` carrying the captured stderr, like ``ffmpeg.run`` does.
    """

    if timeout is None:
        timeout = settings.TRANSCODE_TIMEOUT_SECONDS
    stream = stream.global_args("-hide_banner", "-loglevel", "error")
    process = ffmpeg.run_async(
        stream,
        cmd=settings.FFMPEG_PATH,
        pipe_stdout=True,
        pipe_stderr=True,
        overwrite_output=True,
    )
    try:
        out, err = process.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        process.kill()
        process.communicate()
        logger.error("ffmpeg exceeded %.0fs and was killed", timeout)
        raise TranscodeError(f"ffmpeg timed out after {timeout:.0f}s")
    if process.returncode:
        raise ffmpeg.Error(settings.FFMPEG_PATH, out, err)
    return out, err


def describe_error(exc: ffmpeg.Error) -> str:
    return exc.stderr.decode("utf8", errors="replace").strip() if exc.stderr else str(exc)


def probe_duration(path: Path) -> float:
    """Return the media duration in seconds as reported by ffprobe."""

    info = ffmpeg.probe(str(path), cmd=settings.FFPROBE_PATH)
    duration = info.get("format", {}).get("duration")
    if duration is None:
        durations = [float(s["duration"]) for s in info.get("streams", []) if s.get("duration")]
        duration = max(durations) if durations else 0.0
    return float(duration)
