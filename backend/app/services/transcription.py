"""Chunk-level transcription with local validation, retries and bounded fan-out."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Iterable, Optional

from app.config import settings
from app.errors import AudioValidationError, is_transient
from app.schemas import AudioChunk, ChunkTranscription, TranscriptionBatch
from app.services.stt_backends import build_backend
from app.utils.retry import RetryPolicy, retry_with_backoff

# Get a logger for this module
logger = logging.getLogger(__name__)

ALLOWED_AUDIO_EXTENSIONS = frozenset({".wav", ".mp3", ".m4a", ".flac"})

ProgressCallback = Callable[[int, int], None]


def language_code(language: Optional[str], default: Optional[str] = None) -> str:
    """Map a human language name ("english") to a backend code ("en").

    Codes that are already supported pass through unchanged; anything unknown
    falls back to ``default`` instead of failing.
    """
    default = default or settings.DEFAULT_LANGUAGE_CODE
    if not language:
        return default
    key = language.strip().lower()
    if key in settings.SUPPORTED_LANGUAGES:
        return settings.SUPPORTED_LANGUAGES[key]
    if key in settings.SUPPORTED_LANGUAGES.values():
        return key
    logger.warning("Unsupported language '%s', falling back to '%s'", language, default)
    return default


def failure_placeholder(chunk: AudioChunk, reason: str) -> str:
    return (
        f"[Audio segment {chunk.start_time:.0f}s-{chunk.end_time:.0f}s "
        f"could not be transcribed: {reason}]"
    )


class TranscriptionClient:
    """
    Turns audio chunks into text through a speech backend.

    usage:
        client = TranscriptionClient(backend=HuggingFaceBackend())
        batch = client.transcribe_chunks(chunks, "english")
        batch.summary()  # {"total": 3, "successful": 3, ...}
    """

    def __init__(
        self,
        backend=None,
        policy: Optional[RetryPolicy] = None,
        max_chunk_bytes: Optional[int] = None,
        concurrency: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.backend = backend or build_backend()
        self.policy = policy or RetryPolicy(
            max_attempts=settings.STT_MAX_RETRIES,
            base_delay=settings.STT_RETRY_BASE_DELAY_SECONDS,
            max_delay=settings.STT_RETRY_MAX_DELAY_SECONDS,
        )
        self.max_chunk_bytes = max_chunk_bytes or settings.MAX_CHUNK_SIZE_BYTES
        self.concurrency = max(1, concurrency or settings.TRANSCRIPTION_CONCURRENCY)
        self._sleep = sleep

    def validate_audio(self, path: Optional[Path]) -> None:
        if path is None or not Path(path).exists():
            raise AudioValidationError(f"Audio file not found: {path}", phase="transcribing")
        path = Path(path)
        if path.suffix.lower() not in ALLOWED_AUDIO_EXTENSIONS:
            raise AudioValidationError(f"Unsupported audio format: {path.suffix}", phase="transcribing")
        size = path.stat().st_size
        if size == 0:
            raise AudioValidationError(f"Audio file is empty: {path.name}", phase="transcribing")
        if size > self.max_chunk_bytes:
            raise AudioValidationError(
                f"Audio file too large: {size} bytes (max {self.max_chunk_bytes})", phase="transcribing"
            )

    def transcribe(self, path: Path, language: Optional[str] = None) -> str:
        """Transcribe one audio file, retrying transient backend failures."""
        self.validate_audio(path)
        path = Path(path)
        code = language_code(language)
        return retry_with_backoff(
            lambda: self.backend.transcribe(path, code),
            self.policy,
            retry_on=is_transient,
            sleep=self._sleep,
            description=f"Transcription of {path.name}",
        )

    def transcribe_chunks(
        self,
        chunks: Iterable[AudioChunk],
        language: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> TranscriptionBatch:
        """Transcribe every chunk; failed chunks keep their slot as a placeholder.

        ``on_progress(done, total)`` is called from the calling thread each
        time a chunk finishes, in completion order.
        """
        chunks = sorted(chunks, key=lambda c: c.index)
        total = len(chunks)
        results = {}

        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="stt") as pool:
            futures = [pool.submit(self._transcribe_chunk, chunk, language) for chunk in chunks]
            try:
                for done, future in enumerate(as_completed(futures), start=1):
                    result = future.result()
                    results[result.index] = result
                    if on_progress:
                        on_progress(done, total)
            except BaseException:
                for future in futures:
                    future.cancel()
                raise

        batch = TranscriptionBatch([results[chunk.index] for chunk in chunks])
        logger.info(
            "Transcribed %d chunks: %d successful, %d failed (%.1f%%)",
            batch.total, batch.successful, batch.failed, batch.success_rate,
        )
        return batch

    def _transcribe_chunk(self, chunk: AudioChunk, language: Optional[str]) -> ChunkTranscription:
        try:
            text = self.transcribe(chunk.path, language)
        except Exception as exc:
            reason = str(exc) or exc.__class__.__name__
            logger.warning("Chunk %d failed transcription: %s", chunk.index, reason)
            return ChunkTranscription(
                index=chunk.index,
                start_time=chunk.start_time,
                end_time=chunk.end_time,
                text=failure_placeholder(chunk, reason),
                error=True,
                error_message=reason,
            )
        return ChunkTranscription(
            index=chunk.index,
            start_time=chunk.start_time,
            end_time=chunk.end_time,
            text=text,
        )
