r"""Durable job queue backed by the ``processing_jobs`` table.

Celery only transports job ids; the row decides whether a delivery may run.
Every state change is a single conditional UPDATE so two workers can never
both move the same job to ACTIVE, and a worker whose lease was taken away
cannot write progress or a result any more.

Lifecycle::

    QUEUED --claim--> ACTIVE --complete--> COMPLETED
                        |  \--fail(retryable, attempts left)--> QUEUED
                        |   \-fail(otherwise)--> FAILED
                        \--reclaim_stalled--> QUEUED | FAILED
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterator, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.config import settings
from app.db.database import SessionLocal
from app.errors import LeaseLostError, StorageError, truncate_error
from app.models.job import JobPhase, JobStatus, ProcessingJob, _utcnow

logger = logging.getLogger(__name__)

ENQUEUE_POLICIES = ("ignore", "supersede")


@dataclass(frozen=True)
class JobLease:
    """Proof that one worker owns one attempt of a job."""

    job_id: str
    token: str
    attempt: int
    max_attempts: int
    source_url: str
    language: str
    worker_id: str


@dataclass(frozen=True)
class EnqueueResult:
    job: ProcessingJob
    created: bool
    action: str  # created | ignored | superseded | restarted


@dataclass(frozen=True)
class FailureDecision:
    will_retry: bool
    delay: Optional[float]
    attempt: int


@dataclass(frozen=True)
class StalledJob:
    job_id: str
    requeued: bool
    attempt: int
    lease_token: Optional[str] = None


class JobQueue:
    def __init__(
        self,
        session_factory=None,
        *,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        backoff_max_seconds: Optional[float] = None,
        lock_duration: Optional[float] = None,
        policy: Optional[str] = None,
    ) -> None:
        self.session_factory = session_factory or SessionLocal
        self.max_attempts = max(1, max_attempts or settings.JOB_MAX_ATTEMPTS)
        self.backoff_seconds = backoff_seconds if backoff_seconds is not None else settings.JOB_BACKOFF_SECONDS
        self.backoff_max_seconds = backoff_max_seconds or settings.JOB_BACKOFF_MAX_SECONDS
        self.lock_duration = lock_duration or settings.WORKER_LOCK_DURATION_SECONDS
        self.policy = self._check_policy(policy or settings.ENQUEUE_POLICY)

    @staticmethod
    def _check_policy(policy: str) -> str:
        if policy not in ENQUEUE_POLICIES:
            raise ValueError(f"Unknown enqueue policy '{policy}' (expected one of {ENQUEUE_POLICIES})")
        return policy

    @contextmanager
    def _session(self) -> Iterator:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageError(f"Job queue storage error: {exc}") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait before the attempt that follows failed ``attempt``."""
        return min(self.backoff_seconds * (2 ** (max(attempt, 1) - 1)), self.backoff_max_seconds)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def enqueue(
        self,
        job_id: str,
        source_url: str,
        language: str,
        *,
        policy: Optional[str] = None,
        delay: float = 0,
        now: Optional[datetime] = None,
    ) -> EnqueueResult:
        """Create or refresh the job for ``job_id``; at most one live job per id.

        * no row: a QUEUED job is created.
        * QUEUED: ``ignore`` leaves it alone, ``supersede`` replaces its inputs.
        * ACTIVE: always left alone, whatever the policy.
        * COMPLETED / FAILED: a fresh attempt cycle starts from attempt 0.

        New and refreshed jobs become claimable ``delay`` seconds from now.
        """
        policy = self._check_policy(policy or self.policy)
        now = now or _utcnow()
        available_at = now + timedelta(seconds=delay)

        with self._session() as session:
            job = session.get(ProcessingJob, job_id, with_for_update=True)
            if job is None:
                job = ProcessingJob(
                    id=job_id,
                    status=JobStatus.QUEUED,
                    progress=0,
                    attempt=0,
                    max_attempts=self.max_attempts,
                    source_url=source_url,
                    language=language,
                    available_at=available_at,
                    created_at=now,
                    updated_at=now,
                )
                session.add(job)
                try:
                    session.flush()
                except IntegrityError:
                    # Lost an insert race for the same id; the winner's job stands.
                    session.rollback()
                    job = session.get(ProcessingJob, job_id)
                    logger.info("Job %s was enqueued concurrently, ignoring duplicate", job_id)
                    return EnqueueResult(job=job, created=False, action="ignored")
                logger.info("Job %s enqueued", job_id)
                return EnqueueResult(job=job, created=True, action="created")

            if job.status == JobStatus.ACTIVE:
                logger.info("Job %s is active, ignoring re-enqueue", job_id)
                return EnqueueResult(job=job, created=False, action="ignored")

            if job.status == JobStatus.QUEUED:
                if policy == "ignore":
                    logger.info("Job %s already queued, ignoring re-enqueue", job_id)
                    return EnqueueResult(job=job, created=False, action="ignored")
                job.source_url = source_url
                job.language = language
                job.available_at = available_at
                job.updated_at = now
                logger.info("Job %s superseded with new inputs", job_id)
                return EnqueueResult(job=job, created=False, action="superseded")

            job.status = JobStatus.QUEUED
            job.attempt = 0
            job.max_attempts = self.max_attempts
            job.progress = 0
            job.phase = None
            job.source_url = source_url
            job.language = language
            job.error_message = None
            job.lock_token = None
            job.locked_by = None
            job.heartbeat_at = None
            job.started_at = None
            job.finished_at = None
            job.available_at = available_at
            job.updated_at = now
            logger.info("Job %s restarted for a new attempt cycle", job_id)
            return EnqueueResult(job=job, created=False, action="restarted")

    # ------------------------------------------------------------------
    # Attempt lifecycle
    # ------------------------------------------------------------------

    def claim(self, job_id: str, worker_id: str, now: Optional[datetime] = None) -> Optional[JobLease]:
        """Atomically move a due QUEUED job to ACTIVE and hand out a lease.

        Returns None when the job is missing, not queued, not yet due, or
        another worker claimed it first.
        """
        now = now or _utcnow()
        token = uuid.uuid4().hex

        with self._session() as session:
            result = session.execute(
                update(ProcessingJob)
                .where(
                    ProcessingJob.id == job_id,
                    ProcessingJob.status == JobStatus.QUEUED,
                    ProcessingJob.available_at <= now,
                    ProcessingJob.attempt < ProcessingJob.max_attempts,
                )
                .values(
                    status=JobStatus.ACTIVE,
                    attempt=ProcessingJob.attempt + 1,
                    lock_token=token,
                    locked_by=worker_id,
                    heartbeat_at=now,
                    started_at=now,
                    finished_at=None,
                    progress=0,
                    phase=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            job = session.get(ProcessingJob, job_id, populate_existing=True)
            lease = JobLease(
                job_id=job.id,
                token=token,
                attempt=job.attempt,
                max_attempts=job.max_attempts,
                source_url=job.source_url,
                language=job.language,
                worker_id=worker_id,
            )
        logger.info("Job %s claimed by %s (attempt %d/%d)", job_id, worker_id, lease.attempt, lease.max_attempts)
        return lease

    def _owned(self, job_id: str, token: str):
        return (
            ProcessingJob.id == job_id,
            ProcessingJob.lock_token == token,
            ProcessingJob.status == JobStatus.ACTIVE,
        )

    def heartbeat(self, job_id: str, token: str, now: Optional[datetime] = None) -> None:
        now = now or _utcnow()
        with self._session() as session:
            result = session.execute(
                update(ProcessingJob)
                .where(*self._owned(job_id, token))
                .values(heartbeat_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise LeaseLostError(f"Lease on job {job_id} is no longer held")

    def update_progress(
        self,
        job_id: str,
        token: str,
        phase: JobPhase,
        progress: int,
        now: Optional[datetime] = None,
    ) -> bool:
        """Record phase and progress; progress never moves backwards within an attempt.

        Returns False when the update was dropped as a regression and raises
        :class:`LeaseLostError` when the caller no longer owns the job.
        """
        now = now or _utcnow()
        progress = max(0, min(100, int(progress)))
        phase_value = phase.value if isinstance(phase, JobPhase) else str(phase)
        with self._session() as session:
            result = session.execute(
                update(ProcessingJob)
                .where(*self._owned(job_id, token), ProcessingJob.progress <= progress)
                .values(progress=progress, phase=phase_value, heartbeat_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return True
            owner = session.execute(
                select(ProcessingJob.id).where(*self._owned(job_id, token))
            ).scalar_one_or_none()
        if owner is None:
            raise LeaseLostError(f"Lease on job {job_id} is no longer held")
        return False

    def complete(self, job_id: str, token: str, now: Optional[datetime] = None) -> None:
        now = now or _utcnow()
        with self._session() as session:
            result = session.execute(
                update(ProcessingJob)
                .where(*self._owned(job_id, token))
                .values(
                    status=JobStatus.COMPLETED,
                    progress=100,
                    phase=JobPhase.COMPLETED.value,
                    lock_token=None,
                    locked_by=None,
                    heartbeat_at=None,
                    error_message=None,
                    finished_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise LeaseLostError(f"Lease on job {job_id} is no longer held")
        logger.info("Job %s completed", job_id)

    def fail(
        self,
        job_id: str,
        token: str,
        error,
        *,
        retryable: bool = True,
        now: Optional[datetime] = None,
    ) -> FailureDecision:
        """End the current attempt with an error and schedule the next one if allowed."""
        now = now or _utcnow()
        message = truncate_error(error)
        with self._session() as session:
            job = session.execute(
                select(ProcessingJob).where(*self._owned(job_id, token)).with_for_update()
            ).scalar_one_or_none()
            if job is None:
                raise LeaseLostError(f"Lease on job {job_id} is no longer held")

            will_retry = retryable and job.attempt < job.max_attempts
            delay = self.backoff_delay(job.attempt) if will_retry else None
            if will_retry:
                job.status = JobStatus.QUEUED
                job.available_at = now + timedelta(seconds=delay)
            else:
                job.status = JobStatus.FAILED
                job.finished_at = now
            job.error_message = message
            job.lock_token = None
            job.locked_by = None
            job.heartbeat_at = None
            job.updated_at = now
            decision = FailureDecision(will_retry=will_retry, delay=delay, attempt=job.attempt)

        if decision.will_retry:
            logger.warning(
                "Job %s attempt %d failed, retrying in %.1fs: %s", job_id, decision.attempt, delay, message
            )
        else:
            logger.error("Job %s failed permanently after attempt %d: %s", job_id, decision.attempt, message)
        return decision

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def reclaim_stalled(self, now: Optional[datetime] = None) -> List[StalledJob]:
        """Return ACTIVE jobs without a heartbeat inside the lock window to the queue."""
        now = now or _utcnow()
        cutoff = now - timedelta(seconds=self.lock_duration)
        reclaimed: List[StalledJob] = []

        with self._session() as session:
            stalled = session.execute(
                select(ProcessingJob)
                .where(
                    ProcessingJob.status == JobStatus.ACTIVE,
                    or_(
                        ProcessingJob.heartbeat_at < cutoff,
                        ProcessingJob.heartbeat_at.is_(None) & (ProcessingJob.started_at < cutoff),
                    ),
                )
                .with_for_update(skip_locked=True)
            ).scalars().all()

            for job in stalled:
                token = job.lock_token
                requeued = job.attempt < job.max_attempts
                if requeued:
                    job.status = JobStatus.QUEUED
                    job.available_at = now
                    job.error_message = f"Job stalled during attempt {job.attempt}"
                else:
                    job.status = JobStatus.FAILED
                    job.finished_at = now
                    job.error_message = f"Job stalled and exhausted {job.max_attempts} attempts"
                job.lock_token = None
                job.locked_by = None
                job.heartbeat_at = None
                job.updated_at = now
                reclaimed.append(
                    StalledJob(job_id=job.id, requeued=requeued, attempt=job.attempt, lease_token=token)
                )

        for item in reclaimed:
            logger.warning(
                "Stalled job %s after attempt %d %s",
                item.job_id, item.attempt, "re-queued" if item.requeued else "marked failed",
            )
        return reclaimed

    def due_jobs(self, now: Optional[datetime] = None, limit: int = 100) -> List[str]:
        """Ids of QUEUED jobs whose backoff has elapsed, oldest first."""
        now = now or _utcnow()
        with self._session() as session:
            return list(
                session.execute(
                    select(ProcessingJob.id)
                    .where(ProcessingJob.status == JobStatus.QUEUED, ProcessingJob.available_at <= now)
                    .order_by(ProcessingJob.available_at)
                    .limit(limit)
                    .with_for_update(skip_locked=True)
                ).scalars()
            )

    def get(self, job_id: str) -> Optional[ProcessingJob]:
        with self._session() as session:
            return session.get(ProcessingJob, job_id)
