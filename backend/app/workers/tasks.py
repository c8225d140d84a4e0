"""Celery task definitions."""

from celery import Celery, Task # Import Task for custom base class
from dataclasses import asdict
from functools import lru_cache
from typing import Optional
import logging # Python's standard logging
import os
import socket

import pydantic

# Import settings and services
from app.config import settings
from app.db.database import init_db
from app.errors import JobValidationError
from app.schemas import JobSubmission
from ..services.job_queue import EnqueueResult, JobQueue
from ..services.notifier import Notifier
from ..services.pipeline import VideoPipeline, recover_stalled_jobs
from ..services.video_records import VideoRecords
from ..logging_config import setup_logging as setup_app_logging

# Ensure DB schema exists when the worker process starts.  This way we do not
# depend on the FastAPI container running first (handy during local dev)
init_db()

# --- Logger Setup ---
# Ensure app-level logging is configured when a worker starts.
setup_app_logging()
logger = logging.getLogger(__name__) # Logger for this module (tasks.py)


# --- Celery Application Setup ---
celery_app = Celery(
    "tasks",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=['app.workers.tasks'] # Ensures tasks are discoverable
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # At-least-once delivery: a message is acknowledged only after the task
    # returned, and redelivered if the worker process dies mid-task.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.WORKER_CONCURRENCY,
    # Must outlive the longest countdown and the lease window, otherwise Redis
    # redelivers messages that are still scheduled or running.
    broker_transport_options={"visibility_timeout": int(settings.WORKER_LOCK_DURATION_SECONDS) + 60},
    beat_schedule={
        "reap-stalled-jobs": {
            "task": "reap_stalled_jobs",
            "schedule": settings.WORKER_STALLED_INTERVAL_SECONDS,
        },
    },
)


class BaseVideoTask(Task):
    """Base Celery Task with call/result logging.

    Job and video status are owned by the pipeline; an exception that reaches
    Celery is infrastructure trouble and the job stays in the queue table for
    the reaper to pick up again.
    """
    abstract = True # Means this class won't be registered as a task itself

    def __call__(self, *args, **kwargs):
        logger.info(f"Task {self.name} [{self.request.id}] called with args: {args}, kwargs: {kwargs}")
        return super().__call__(*args, **kwargs)

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        logger.error(f"Task {self.name} [{task_id}] failed: {exc}", exc_info=einfo)
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_success(self, retval, task_id, args, kwargs):
        logger.info(f"Task {self.name} [{task_id}] completed successfully. Result: {retval}")
        super().on_success(retval, task_id, args, kwargs)


@lru_cache(maxsize=1)
def build_pipeline() -> VideoPipeline:
    """One pipeline per worker process, so backend state such as a loaded model is reused."""
    return VideoPipeline()


def worker_identity(hostname: Optional[str] = None) -> str:
    return f"{hostname or socket.gethostname()}:{os.getpid()}"


def dispatch_job(job_id: str, countdown: Optional[float] = None):
    """Send a processing message for ``job_id``; the queue table decides if it runs."""
    return process_video_task.apply_async(args=[job_id], countdown=countdown)


def submit_job(
    video_id: str,
    source_url: str,
    language: Optional[str] = "english",
    title: Optional[str] = None,
    *,
    queue: Optional[JobQueue] = None,
    records: Optional[VideoRecords] = None,
) -> EnqueueResult:
    """Validate a submission, enqueue it and prepare its video record."""
    try:
        submission = JobSubmission(video_id=video_id, source_url=source_url, language=language, title=title)
    except pydantic.ValidationError as exc:
        messages = "; ".join(err["msg"] for err in exc.errors())
        raise JobValidationError(f"Invalid job submission: {messages}") from exc

    queue = queue or JobQueue()
    records = records or VideoRecords()

    result = queue.enqueue(
        submission.video_id,
        submission.source_url,
        submission.language,
        delay=settings.JOB_START_DELAY_SECONDS,
    )
    if result.action == "ignored":
        return result

    records.prepare(submission.video_id, submission.source_url, submission.language, submission.title)
    dispatch_job(submission.video_id, countdown=settings.JOB_START_DELAY_SECONDS)
    logger.info("Video %s submitted (%s)", submission.video_id, result.action)
    return result


# --- Video Processing Task ---
@celery_app.task(name="process_video_task", base=BaseVideoTask, bind=True)
def process_video_task(self, job_id: str):
    outcome = build_pipeline().process(job_id, worker_identity(self.request.hostname))
    if outcome.status == "retry":
        dispatch_job(job_id, countdown=outcome.retry_in)
    return asdict(outcome)


# --- Stalled Job Reaper ---
@celery_app.task(name="reap_stalled_jobs", base=BaseVideoTask)
def reap_stalled_jobs():
    pipeline = build_pipeline()
    stalled = recover_stalled_jobs(pipeline.queue, pipeline.records, pipeline.notifier)
    # Queued jobs whose message was lost with a crashed worker get a new one.
    due = pipeline.queue.due_jobs()
    for job_id in due:
        dispatch_job(job_id)
    if stalled or due:
        logger.info("Reaper recovered %d stalled jobs and dispatched %d queued jobs", len(stalled), len(due))
    return {"stalled": len(stalled), "dispatched": len(due)}
