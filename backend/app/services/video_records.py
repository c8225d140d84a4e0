"""Single-row atomic updates of the ``videos`` table.

Every status transition is a conditional UPDATE so concurrent attempts and
status-polling readers never observe a record moving backwards.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterator, List, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError

from app.config import settings
from app.db.database import SessionLocal
from app.errors import DuplicateJobError, LeaseLostError, RecordNotFoundError, StorageError, truncate_error
from app.models.job import _utcnow
from app.models.video import Video, VideoStatus

logger = logging.getLogger(__name__)


class BeginOutcome(str, Enum):
    PROCEED = "proceed"
    ALREADY_COMPLETED = "already_completed"


class VideoRecords:
    def __init__(self, session_factory=None, stale_after: Optional[float] = None) -> None:
        self.session_factory = session_factory or SessionLocal
        self.stale_after = stale_after or settings.PROCESSING_STALE_AFTER_SECONDS

    @contextmanager
    def _session(self) -> Iterator:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageError(f"Video record storage error: {exc}") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def get(self, video_id: str) -> Optional[Video]:
        with self._session() as session:
            return session.get(Video, video_id)

    def prepare(
        self,
        video_id: str,
        source_url: str,
        language: str,
        title: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Video:
        """Create the record, or reset it to ``queued`` for a new attempt cycle."""
        now = now or _utcnow()
        with self._session() as session:
            video = session.get(Video, video_id, with_for_update=True)
            if video is None:
                video = Video(id=video_id, created_at=now)
                session.add(video)
            video.source_url = source_url
            video.language = language
            if title:
                video.title = title
            video.status = VideoStatus.QUEUED
            video.transcript = None
            video.summary = None
            video.embeddings = None
            video.duration = None
            video.word_count = None
            video.error = None
            video.processing_started_at = None
            video.lease_token = None
            video.processed_at = None
            video.updated_at = now
            return video

    def begin_processing(
        self,
        video_id: str,
        lease_token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BeginOutcome:
        """Move the record to ``processing`` unless another attempt owns it.

        ``lease_token`` binds the record to the calling attempt; later writes
        that pass a different token are refused.

        * completed: nothing to do, the caller replays the stored result.
        * processing and started within ``stale_after``: :class:`DuplicateJobError`.
        * processing but stale: the crashed attempt is taken over.
        """
        now = now or _utcnow()
        cutoff = now - timedelta(seconds=self.stale_after)
        with self._session() as session:
            result = session.execute(
                update(Video)
                .where(
                    Video.id == video_id,
                    Video.status != VideoStatus.COMPLETED,
                    or_(
                        Video.status != VideoStatus.PROCESSING,
                        Video.processing_started_at.is_(None),
                        Video.processing_started_at < cutoff,
                    ),
                )
                .values(
                    status=VideoStatus.PROCESSING,
                    processing_started_at=now,
                    lease_token=lease_token,
                    error=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return BeginOutcome.PROCEED
            video = session.get(Video, video_id)

        if video is None:
            raise RecordNotFoundError(f"Video {video_id} not found", phase="started")
        if video.status == VideoStatus.COMPLETED:
            logger.info("Video %s already completed, replaying stored result", video_id)
            return BeginOutcome.ALREADY_COMPLETED
        raise DuplicateJobError(
            f"Video {video_id} is already being processed since {video.processing_started_at}",
            phase="started",
        )

    @staticmethod
    def _owned_by(video_id: str, lease_token: Optional[str]) -> list:
        clauses = [Video.id == video_id]
        if lease_token is not None:
            clauses.append(Video.lease_token == lease_token)
        return clauses

    def mark_completed(
        self,
        video_id: str,
        *,
        transcript: str,
        summary: str,
        embeddings: Optional[List[float]],
        duration: float,
        word_count: int,
        lease_token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Persist the result of the attempt holding ``lease_token``.

        Raises :class:`LeaseLostError` when another attempt took the record
        over, :class:`StorageError` when it is not processing at all.
        """
        now = now or _utcnow()
        with self._session() as session:
            result = session.execute(
                update(Video)
                .where(*self._owned_by(video_id, lease_token), Video.status == VideoStatus.PROCESSING)
                .values(
                    status=VideoStatus.COMPLETED,
                    transcript=transcript,
                    summary=summary,
                    embeddings=embeddings,
                    duration=duration,
                    word_count=word_count,
                    error=None,
                    lease_token=None,
                    processing_started_at=None,
                    processed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                if lease_token is not None:
                    raise LeaseLostError(f"Video {video_id} is no longer owned by this attempt", phase="completed")
                raise StorageError(f"Video {video_id} is no longer in processing state", phase="completed")
        logger.info("Video %s marked completed (%d words)", video_id, word_count)

    def mark_failed(
        self,
        video_id: str,
        error,
        lease_token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Record a failure; a completed record is never overwritten.

        With ``lease_token`` a record that another attempt is processing is
        left alone.
        """
        now = now or _utcnow()
        clauses = [Video.id == video_id, Video.status != VideoStatus.COMPLETED]
        if lease_token is not None:
            clauses.append(or_(Video.lease_token == lease_token, Video.status != VideoStatus.PROCESSING))
        with self._session() as session:
            result = session.execute(
                update(Video)
                .where(*clauses)
                .values(
                    status=VideoStatus.FAILED,
                    error=truncate_error(error),
                    lease_token=None,
                    processing_started_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def release(
        self,
        video_id: str,
        lease_token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Hand a record held by a stalled attempt back to the queue."""
        now = now or _utcnow()
        with self._session() as session:
            result = session.execute(
                update(Video)
                .where(*self._owned_by(video_id, lease_token), Video.status == VideoStatus.PROCESSING)
                .values(status=VideoStatus.QUEUED, lease_token=None, processing_started_at=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1
