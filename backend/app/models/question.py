"""A question asked about a processed video, with the answer given."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text

from app.db.base import Base
from app.models.job import _utcnow


class Question(Base):
    __tablename__ = "questions"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    video_id: str = Column(String(64), ForeignKey("videos.id"), nullable=False, index=True)
    question: str = Column(String(1000), nullable=False)
    answer: str = Column(Text, nullable=False)
    language: str = Column(String(32), nullable=False, default="english")
    asked_at: datetime = Column(DateTime, nullable=False, default=_utcnow, index=True)

    def __repr__(self) -> str:
        return f"<Question {self.id} on {self.video_id}>"
