"""Split a source video into fixed-length mono WAV chunks."""

from __future__ import annotations

import logging
import math
import time
from dataclasses import replace
from pathlib import Path
from typing import Callable, List, Optional

import ffmpeg

from app.config import settings
from app.errors import MediaValidationError, TranscodeError
from app.schemas import AudioChunk, SegmentationResult
from app.utils.ffmpeg import describe_error, probe_duration, run_stream
from app.utils.storage import ensure_dir_exists, remove_files

logger = logging.getLogger(__name__)

MIN_CHUNK_SECONDS = 10
MAX_CHUNK_SECONDS = 300

# Speech backends expect mono 16 kHz signed 16-bit PCM.
AUDIO_OUTPUT_ARGS = {"acodec": "pcm_s16le", "ac": 1, "ar": 16000}


def plan_chunks(total_duration: float, chunk_duration: float) -> List[AudioChunk]:
    """Partition ``[0, total_duration)`` into consecutive chunks.

    ``ceil(total / chunk)`` chunks are produced; every chunk but the last is
    exactly ``chunk_duration`` long and the last one ends at ``total_duration``.
    """
    if total_duration <= 0:
        return []
    chunk_duration = max(MIN_CHUNK_SECONDS, min(MAX_CHUNK_SECONDS, chunk_duration))
    count = math.ceil(total_duration / chunk_duration)
    return [
        AudioChunk(
            index=i,
            start_time=i * chunk_duration,
            end_time=min(i * chunk_duration + chunk_duration, total_duration),
        )
        for i in range(count)
    ]


class MediaSegmenter:
    """Extracts the audio track of a video and cuts it into chunks.

    All ffmpeg work runs through :func:`app.utils.ffmpeg.run_stream`, so a
    stuck transcoder is killed after ``timeout`` seconds. Any failure removes
    whatever this call wrote before the exception propagates.
    """

    def __init__(
        self,
        chunk_duration: Optional[float] = None,
        timeout: Optional[float] = None,
        pause: Optional[float] = None,
        max_source_bytes: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        chunk = chunk_duration if chunk_duration is not None else settings.CHUNK_DURATION_SECONDS
        self.chunk_duration = max(MIN_CHUNK_SECONDS, min(MAX_CHUNK_SECONDS, chunk))
        self.timeout = timeout if timeout is not None else settings.TRANSCODE_TIMEOUT_SECONDS
        self.pause = pause if pause is not None else settings.CHUNK_PAUSE_SECONDS
        self.max_source_bytes = max_source_bytes or settings.MAX_SOURCE_SIZE_BYTES
        self._sleep = sleep

    def segment(self, video_path: Path, output_dir: Path) -> SegmentationResult:
        self._validate_source(video_path)
        ensure_dir_exists(output_dir)
        audio_path = output_dir / f"{video_path.stem}_audio.wav"
        written: List[Path] = [audio_path]

        try:
            self.extract_audio(video_path, audio_path)
            total_duration = probe_duration(audio_path)
            if total_duration <= 0:
                raise MediaValidationError(
                    f"Source has no playable duration: {video_path.name}", phase="chunking"
                )

            planned = plan_chunks(total_duration, self.chunk_duration)
            logger.info(
                "Cutting %.2fs of audio into %d chunks of %ss",
                total_duration, len(planned), self.chunk_duration,
            )
            chunks: List[AudioChunk] = []
            for chunk in planned:
                chunk_path = output_dir / f"chunk_{chunk.index:04d}.wav"
                written.append(chunk_path)
                self._cut(audio_path, chunk, chunk_path)
                chunks.append(replace(chunk, path=chunk_path, size=chunk_path.stat().st_size))
                if self.pause and chunk.index < len(planned) - 1:
                    self._sleep(self.pause)
        except ffmpeg.Error as exc:
            remove_files(written)
            message = describe_error(exc)
            logger.error("FFmpeg error while segmenting %s: %s", video_path, message)
            raise TranscodeError(f"Audio extraction failed: {message}", phase="chunking") from exc
        except Exception:
            remove_files(written)
            raise

        return SegmentationResult(audio_path=audio_path, chunks=chunks, total_duration=total_duration)

    def extract_audio(self, video_path: Path, audio_path: Path) -> Path:
        stream = ffmpeg.input(str(video_path)).output(str(audio_path), vn=None, **AUDIO_OUTPUT_ARGS)
        run_stream(stream, timeout=self.timeout)
        if not audio_path.exists() or audio_path.stat().st_size == 0:
            raise TranscodeError(f"No audio track produced for {video_path.name}", phase="chunking")
        return audio_path

    def _cut(self, audio_path: Path, chunk: AudioChunk, chunk_path: Path) -> None:
        stream = ffmpeg.input(str(audio_path), ss=chunk.start_time, t=chunk.duration).output(
            str(chunk_path), **AUDIO_OUTPUT_ARGS
        )
        run_stream(stream, timeout=self.timeout)
        if not chunk_path.exists():
            raise TranscodeError(
                f"ffmpeg produced no output for chunk {chunk.index}",
                phase="chunking",
                chunk_index=chunk.index,
            )

    def _validate_source(self, video_path: Path) -> None:
        if not video_path.exists():
            raise MediaValidationError(f"Source video not found: {video_path}", phase="chunking")
        size = video_path.stat().st_size
        if size == 0:
            raise MediaValidationError(f"Source video is empty: {video_path.name}", phase="chunking")
        if size > self.max_source_bytes:
            raise MediaValidationError(
                f"Source video is {size} bytes, limit is {self.max_source_bytes}", phase="chunking"
            )

    @staticmethod
    def cleanup(result: Optional[SegmentationResult]) -> int:
        if result is None:
            return 0
        return remove_files([result.audio_path, *(c.path for c in result.chunks)])
