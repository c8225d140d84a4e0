"""Value types passed between pipeline stages, plus the job submission payload."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, field_validator

VIDEO_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def is_valid_video_id(value) -> bool:
    return isinstance(value, str) and bool(VIDEO_ID_PATTERN.match(value))


class JobSubmission(BaseModel):
    """Enqueue payload: ``{video_id, source_url, language}``."""

    video_id: str
    source_url: str
    language: str = "english"
    title: Optional[str] = None

    @field_validator("video_id")
    @classmethod
    def _check_video_id(cls, value: str) -> str:
        value = value.strip()
        if not is_valid_video_id(value):
            raise ValueError("Invalid or missing video_id")
        return value

    @field_validator("source_url")
    @classmethod
    def _check_source_url(cls, value: str) -> str:
        value = value.strip()
        parsed = urlparse(value)
        if parsed.scheme != "https" or not parsed.netloc:
            raise ValueError("source_url must be an https URL")
        return value

    @field_validator("language", mode="before")
    @classmethod
    def _default_language(cls, value) -> str:
        if value is None:
            return "english"
        if not isinstance(value, str):
            raise ValueError("Invalid language format")
        return value.strip().lower() or "english"


@dataclass(frozen=True)
class AudioChunk:
    """A time slice of the extracted audio track, owned by one job attempt."""

    index: int
    start_time: float
    end_time: float
    path: Optional[Path] = None
    size: int = 0

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


@dataclass
class SegmentationResult:
    audio_path: Path
    chunks: List[AudioChunk]
    total_duration: float


@dataclass(frozen=True)
class ChunkTranscription:
    index: int
    start_time: float
    end_time: float
    text: str
    error: bool = False
    error_message: Optional[str] = None

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


@dataclass
class TranscriptionBatch:
    """Ordered chunk transcriptions plus the success summary of the batch."""

    transcriptions: List[ChunkTranscription] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.transcriptions)

    @property
    def successful(self) -> int:
        return sum(1 for t in self.transcriptions if not t.error)

    @property
    def failed(self) -> int:
        return self.total - self.successful

    @property
    def success_rate(self) -> float:
        if not self.transcriptions:
            return 0.0
        return self.successful / self.total * 100

    def summary(self) -> dict:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "success_rate": self.success_rate,
        }


@dataclass(frozen=True)
class Transcript:
    text: str
    segment_count: int = 0

    @property
    def word_count(self) -> int:
        return len(self.text.split())

    @property
    def char_count(self) -> int:
        return len(self.text)
