from __future__ import annotations

import logging
from typing import List
from datetime import datetime

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel

from ..db.database import SessionLocal
from ..errors import AppBaseException, JobValidationError, StorageError
from ..models.job import ProcessingJob
from ..schemas import JobSubmission
from ..workers.tasks import submit_job

router = APIRouter()
logger = logging.getLogger(__name__)


class JobInfo(BaseModel):
    id: str
    status: str
    phase: str | None = None
    progress: int
    attempt: int
    max_attempts: int
    attempts_left: int
    language: str
    error_message: str | None = None
    available_at: datetime | None = None
    created_at: datetime
    finished_at: datetime | None = None


class SubmissionResult(BaseModel):
    job_id: str
    action: str
    status: str


def _job_info(job: ProcessingJob) -> JobInfo:
    return JobInfo(
        id=job.id,
        status=job.status_str,
        phase=job.phase,
        progress=job.progress or 0,
        attempt=job.attempt or 0,
        max_attempts=job.max_attempts,
        attempts_left=job.attempts_left,
        language=job.language,
        error_message=job.error_message,
        available_at=job.available_at,
        created_at=job.created_at,
        finished_at=job.finished_at,
    )


@router.post("", response_model=SubmissionResult, status_code=status.HTTP_202_ACCEPTED)
def create_job(payload: JobSubmission) -> SubmissionResult:
    """Enqueue a video for processing; re-submitting a live video is a no-op."""
    try:
        result = submit_job(payload.video_id, payload.source_url, payload.language, payload.title)
    except JobValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except StorageError as exc:
        logger.error("Failed to enqueue video %s: %s", payload.video_id, exc, exc_info=True)
        raise AppBaseException(status.HTTP_503_SERVICE_UNAVAILABLE, "Job queue unavailable")
    return SubmissionResult(job_id=result.job.id, action=result.action, status=result.job.status_str)


@router.get("", response_model=List[JobInfo])
async def list_jobs() -> List[JobInfo]:
    """Return all processing jobs."""
    db = SessionLocal()
    try:
        jobs = db.query(ProcessingJob).order_by(ProcessingJob.created_at.desc()).all()
        return [_job_info(j) for j in jobs]
    except Exception as exc:
        logger.error("Failed to list jobs: %s", exc, exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Error listing jobs")
    finally:
        db.close()


@router.get("/{job_id}", response_model=JobInfo)
async def get_job(job_id: str) -> JobInfo:
    """Return a single processing job by ID."""
    db = SessionLocal()
    try:
        job = db.query(ProcessingJob).filter(ProcessingJob.id == job_id).first()
        if not job:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
        return _job_info(job)
    except HTTPException:
        raise
    except Exception as exc:
        logger.error("Failed to fetch job %s: %s", job_id, exc, exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Error fetching job")
    finally:
        db.close()
