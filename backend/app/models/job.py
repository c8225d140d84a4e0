"""SQLAlchemy model & helpers for processing jobs.

A row per video id is the durable queue entry. Celery only carries the job id;
status, lease, attempt counter and schedule all live here.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import Column, DateTime, Enum as SAEnum, Integer, String, Text

from app.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobStatus(str, Enum):
    """Enum representing the lifecycle of a background processing job."""

    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobPhase(str, Enum):
    STARTED = "started"
    DOWNLOADING = "downloading"
    CHUNKING = "chunking"
    TRANSCRIBING = "transcribing"
    SUMMARIZING = "summarizing"
    EMBEDDING = "embedding"
    COMPLETED = "completed"


class ProcessingJob(Base):
    """Persistent representation of a background processing job."""

    __tablename__ = "processing_jobs"

    id: str = Column(String(64), primary_key=True)
    status: JobStatus = Column(SAEnum(JobStatus), nullable=False, default=JobStatus.QUEUED, index=True)
    phase: Optional[str] = Column(String(32), nullable=True)
    progress: int = Column(Integer, nullable=False, default=0)
    attempt: int = Column(Integer, nullable=False, default=0)
    max_attempts: int = Column(Integer, nullable=False, default=5)
    source_url: str = Column(Text, nullable=False)
    language: str = Column(String(32), nullable=False, default="english")
    lock_token: Optional[str] = Column(String(64), nullable=True)
    locked_by: Optional[str] = Column(String(255), nullable=True)
    heartbeat_at: Optional[datetime] = Column(DateTime, nullable=True)
    available_at: datetime = Column(DateTime, nullable=False, default=_utcnow, index=True)
    started_at: Optional[datetime] = Column(DateTime, nullable=True)
    finished_at: Optional[datetime] = Column(DateTime, nullable=True)
    error_message: Optional[str] = Column(Text, nullable=True)
    created_at: datetime = Column(DateTime, nullable=False, default=_utcnow)
    updated_at: datetime = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    # Helper to convert enum to plain string for JSON responses
    @property
    def status_str(self) -> str:
        return self.status.value if isinstance(self.status, JobStatus) else str(self.status)

    @property
    def attempts_left(self) -> int:
        return max(0, (self.max_attempts or 0) - (self.attempt or 0))

    def __repr__(self) -> str:
        return f"<ProcessingJob {self.id} {self.status_str} attempt={self.attempt}/{self.max_attempts}>"
