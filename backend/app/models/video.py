"""The persisted outcome of processing one video."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Column, DateTime, Enum as SAEnum, Float, Integer, String, Text

from app.db.base import Base
from app.models.job import _utcnow


class VideoStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Video(Base):
    __tablename__ = "videos"

    id: str = Column(String(64), primary_key=True)
    title: Optional[str] = Column(String(255), nullable=True)
    source_url: Optional[str] = Column(Text, nullable=True)
    language: str = Column(String(32), nullable=False, default="english")
    status: VideoStatus = Column(SAEnum(VideoStatus), nullable=False, default=VideoStatus.QUEUED)
    transcript: Optional[str] = Column(Text, nullable=True)
    summary: Optional[str] = Column(Text, nullable=True)
    embeddings: Optional[list] = Column(JSON, nullable=True)
    duration: Optional[float] = Column(Float, nullable=True)
    word_count: Optional[int] = Column(Integer, nullable=True)
    error: Optional[str] = Column(String(500), nullable=True)
    # Lease token of the attempt allowed to write the processing result
    lease_token: Optional[str] = Column(String(64), nullable=True)
    processing_started_at: Optional[datetime] = Column(DateTime, nullable=True)
    processed_at: Optional[datetime] = Column(DateTime, nullable=True)
    created_at: datetime = Column(DateTime, nullable=False, default=_utcnow)
    updated_at: datetime = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    @property
    def status_str(self) -> str:
        return self.status.value if isinstance(self.status, VideoStatus) else str(self.status)

    def __repr__(self) -> str:
        return f"<Video {self.id} {self.status_str}>"
