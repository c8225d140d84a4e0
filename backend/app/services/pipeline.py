"""Drive one job attempt through download, segmentation, transcription and enrichment.

The pipeline is the only place that turns errors into job and video status.
Lower layers raise :mod:`app.errors` exceptions; ``VideoPipeline`` decides
whether the queue retries the job and what the video record says.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional
from urllib.parse import urlparse

from app.config import settings
from app.errors import (
    DuplicateJobError,
    LeaseLostError,
    PipelineError,
    StorageError,
    TranscodeError,
    TranscriptionError,
    is_retryable,
    truncate_error,
)
from app.models.job import JobPhase
from app.services.assembler import assemble
from app.services.downloader import download_source
from app.services.enrichment import EnrichmentClient
from app.services.job_queue import JobLease, JobQueue, StalledJob
from app.services.notifier import Notifier
from app.services.segmenter import MediaSegmenter
from app.services.transcription import TranscriptionClient
from app.services.video_records import BeginOutcome, VideoRecords
from app.utils.retry import RetryPolicy, retry_with_backoff
from app.utils.storage import attempt_workspace

logger = logging.getLogger(__name__)

PHASE_PROGRESS = {
    JobPhase.STARTED: 5,
    JobPhase.DOWNLOADING: 10,
    JobPhase.CHUNKING: 30,
    JobPhase.TRANSCRIBING: 40,
    JobPhase.SUMMARIZING: 70,
    JobPhase.EMBEDDING: 90,
    JobPhase.COMPLETED: 100,
}
TRANSCRIBING_END = 70
SUMMARIZED = 80

VIDEO_EXTENSIONS = {".mp4", ".mov", ".mkv", ".webm", ".avi", ".m4v", ".mpeg", ".mpg"}


@dataclass(frozen=True)
class AttemptOutcome:
    """What happened to one delivery of a job."""

    status: str  # completed | already_completed | retry | failed | skipped | lease_lost
    job_id: str
    attempt: int = 0
    retry_in: Optional[float] = None
    error: Optional[str] = None


class _Heartbeat(threading.Thread):
    """Keeps the lease of a running attempt fresh."""

    def __init__(self, queue: JobQueue, lease: JobLease, interval: float) -> None:
        super().__init__(name=f"heartbeat-{lease.job_id}", daemon=True)
        self.queue = queue
        self.lease = lease
        self.interval = interval
        self._halt = threading.Event()

    def run(self) -> None:
        while not self._halt.wait(self.interval):
            try:
                self.queue.heartbeat(self.lease.job_id, self.lease.token)
            except LeaseLostError:
                logger.warning("Heartbeat for job %s lost its lease", self.lease.job_id)
                return
            except StorageError as exc:
                logger.warning("Heartbeat for job %s failed: %s", self.lease.job_id, exc)

    def stop(self) -> None:
        self._halt.set()
        if self.is_alive():
            self.join(timeout=5)


def _source_filename(url: str) -> str:
    suffix = Path(urlparse(url).path).suffix.lower()
    return f"source{suffix if suffix in VIDEO_EXTENSIONS else '.mp4'}"


class VideoPipeline:
    def __init__(
        self,
        queue: Optional[JobQueue] = None,
        records: Optional[VideoRecords] = None,
        segmenter: Optional[MediaSegmenter] = None,
        transcriber: Optional[TranscriptionClient] = None,
        enrichment: Optional[EnrichmentClient] = None,
        notifier: Optional[Notifier] = None,
        downloader: Callable[[str, Path], Path] = download_source,
        workspace_root: Optional[Path] = None,
        heartbeat_interval: Optional[float] = None,
        segment_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.queue = queue or JobQueue()
        self.records = records or VideoRecords()
        self.segmenter = segmenter or MediaSegmenter()
        self.transcriber = transcriber or TranscriptionClient()
        self.enrichment = enrichment or EnrichmentClient()
        self.notifier = notifier or Notifier()
        self.downloader = downloader
        self.workspace_root = workspace_root
        self.heartbeat_interval = heartbeat_interval or settings.HEARTBEAT_INTERVAL_SECONDS
        self.segment_policy = segment_policy or RetryPolicy(
            max_attempts=settings.SEGMENT_MAX_ATTEMPTS,
            base_delay=settings.SEGMENT_RETRY_DELAY_SECONDS,
        )
        self._sleep = sleep

    def process(self, job_id: str, worker_id: str, now: Optional[datetime] = None) -> AttemptOutcome:
        """Claim ``job_id`` and run one attempt of it to a terminal outcome."""
        lease = self.queue.claim(job_id, worker_id, now=now)
        if lease is None:
            logger.info("Job %s not claimable by %s, skipping delivery", job_id, worker_id)
            return AttemptOutcome(status="skipped", job_id=job_id)

        heartbeat = _Heartbeat(self.queue, lease, self.heartbeat_interval)
        heartbeat.start()
        try:
            return self._run_attempt(lease)
        finally:
            heartbeat.stop()

    def _run_attempt(self, lease: JobLease) -> AttemptOutcome:
        started = time.monotonic()
        try:
            self._report(lease, JobPhase.STARTED)
            if self.records.begin_processing(lease.job_id, lease.token) is BeginOutcome.ALREADY_COMPLETED:
                return self._replay(lease)

            with attempt_workspace(lease.job_id, lease.attempt, root=self.workspace_root) as workspace:
                transcript_text, summary = self._execute(lease, workspace)

            self.queue.complete(lease.job_id, lease.token)
        except LeaseLostError as exc:
            logger.warning("Job %s attempt %d abandoned: %s", lease.job_id, lease.attempt, exc)
            return AttemptOutcome(status="lease_lost", job_id=lease.job_id, attempt=lease.attempt, error=str(exc))
        except Exception as exc:
            return self._handle_failure(lease, exc)

        self.notifier.progress(lease.job_id, JobPhase.COMPLETED.value, PHASE_PROGRESS[JobPhase.COMPLETED])
        self.notifier.completed(lease.job_id, transcript_text, summary)
        logger.info(
            "Job %s completed on attempt %d in %.1fs",
            lease.job_id, lease.attempt, time.monotonic() - started,
        )
        return AttemptOutcome(status="completed", job_id=lease.job_id, attempt=lease.attempt)

    def _execute(self, lease: JobLease, workspace: Path) -> tuple[str, str]:
        self._report(lease, JobPhase.DOWNLOADING)
        source = self.downloader(lease.source_url, workspace / _source_filename(lease.source_url))

        self._report(lease, JobPhase.CHUNKING)
        segmentation = retry_with_backoff(
            lambda: self.segmenter.segment(source, workspace / "chunks"),
            self.segment_policy,
            retry_on=lambda exc: isinstance(exc, TranscodeError),
            sleep=self._sleep,
            description=f"Segmentation of job {lease.job_id}",
        )

        try:
            self._report(lease, JobPhase.TRANSCRIBING)
            batch = self.transcriber.transcribe_chunks(
                segmentation.chunks,
                lease.language,
                on_progress=lambda done, total: self._report_transcription(lease, done, total),
            )
        finally:
            self.segmenter.cleanup(segmentation)

        if batch.total and not batch.successful:
            raise TranscriptionError(
                f"All {batch.total} audio chunks failed transcription",
                phase=JobPhase.TRANSCRIBING.value,
                attempt=lease.attempt,
            )

        transcript = assemble(batch.transcriptions)

        self._report(lease, JobPhase.SUMMARIZING)
        summary = self.enrichment.summarize(transcript.text, lease.language)
        self._report(lease, JobPhase.SUMMARIZING, SUMMARIZED)

        self._report(lease, JobPhase.EMBEDDING)
        embeddings = self._embed(lease, transcript.text)

        self.records.mark_completed(
            lease.job_id,
            transcript=transcript.text,
            summary=summary,
            embeddings=embeddings,
            duration=segmentation.total_duration,
            word_count=transcript.word_count,
            lease_token=lease.token,
        )
        return transcript.text, summary

    def _embed(self, lease: JobLease, text: str) -> Optional[List[float]]:
        try:
            return self.enrichment.embed(text)
        except Exception as exc:
            logger.warning("Embedding for job %s failed, storing none: %s", lease.job_id, exc)
            return None

    def _replay(self, lease: JobLease) -> AttemptOutcome:
        video = self.records.get(lease.job_id)
        self.queue.complete(lease.job_id, lease.token)
        self.notifier.completed(lease.job_id, video.transcript or "", video.summary)
        return AttemptOutcome(status="already_completed", job_id=lease.job_id, attempt=lease.attempt)

    def _report(self, lease: JobLease, phase: JobPhase, progress: Optional[int] = None) -> None:
        progress = PHASE_PROGRESS[phase] if progress is None else progress
        if self.queue.update_progress(lease.job_id, lease.token, phase, progress):
            self.notifier.progress(lease.job_id, phase.value, progress)

    def _report_transcription(self, lease: JobLease, done: int, total: int) -> None:
        start = PHASE_PROGRESS[JobPhase.TRANSCRIBING]
        progress = start + int((TRANSCRIBING_END - start) * done / max(total, 1))
        self._report(lease, JobPhase.TRANSCRIBING, progress)

    def _handle_failure(self, lease: JobLease, exc: Exception) -> AttemptOutcome:
        message = truncate_error(exc)
        logger.error(
            "Job %s attempt %d/%d failed: %s",
            lease.job_id, lease.attempt, lease.max_attempts, message,
            exc_info=not isinstance(exc, PipelineError),
        )

        # Only the lease holder may write the video record.
        try:
            decision = self.queue.fail(lease.job_id, lease.token, message, retryable=is_retryable(exc))
        except LeaseLostError as lost:
            logger.warning("Job %s lease lost while recording failure: %s", lease.job_id, lost)
            return AttemptOutcome(status="lease_lost", job_id=lease.job_id, attempt=lease.attempt, error=message)

        if not isinstance(exc, DuplicateJobError):
            try:
                recorded = self.records.mark_failed(lease.job_id, message, lease.token)
            except StorageError as store_exc:
                logger.error("Could not record failure of video %s: %s", lease.job_id, store_exc)
            else:
                if recorded:
                    self.notifier.failed(lease.job_id, message)

        if decision.will_retry:
            return AttemptOutcome(
                status="retry", job_id=lease.job_id, attempt=lease.attempt, retry_in=decision.delay, error=message
            )
        return AttemptOutcome(status="failed", job_id=lease.job_id, attempt=lease.attempt, error=message)


def recover_stalled_jobs(
    queue: JobQueue,
    records: VideoRecords,
    notifier: Notifier,
    now: Optional[datetime] = None,
) -> List[StalledJob]:
    """Reclaim stalled jobs and bring their video records in line."""
    stalled = queue.reclaim_stalled(now=now)
    for item in stalled:
        if item.requeued:
            records.release(item.job_id, item.lease_token, now=now)
            continue
        message = f"Processing stalled and exhausted all {item.attempt} attempts"
        if records.mark_failed(item.job_id, message, item.lease_token, now=now):
            notifier.failed(item.job_id, message)
    return stalled
