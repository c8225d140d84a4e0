from __future__ import annotations

import logging
from contextlib import aclosing
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, Field

from ..db.database import SessionLocal
from ..errors import AppBaseException
from ..models.question import Question
from ..models.video import Video, VideoStatus
from ..schemas import is_valid_video_id
from ..services.enrichment import EnrichmentClient
from ..services.notifier import Notifier

router = APIRouter()
logger = logging.getLogger(__name__)


class VideoInfo(BaseModel):
    id: str
    title: str | None = None
    status: str
    language: str
    transcript: str | None = None
    summary: str | None = None
    has_embeddings: bool = False
    duration: float | None = None
    word_count: int | None = None
    error: str | None = None
    processed_at: datetime | None = None
    created_at: datetime


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class VideoPage(BaseModel):
    videos: List[VideoInfo]
    pagination: Pagination


class QuestionRequest(BaseModel):
    question: str = Field(min_length=1, max_length=1000)


class AnswerResponse(BaseModel):
    id: int | None = None
    video_id: str
    question: str
    answer: str
    language: str | None = None
    asked_at: datetime | None = None


class QuestionPage(BaseModel):
    questions: List[AnswerResponse]
    pagination: Pagination


DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


def get_enrichment_client() -> EnrichmentClient:
    return EnrichmentClient()


def get_notifier() -> Notifier:
    return Notifier()


def _load_video(video_id: str) -> Video:
    db = SessionLocal()
    try:
        video = db.query(Video).filter(Video.id == video_id).first()
        if not video:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Video not found")
        return video
    finally:
        db.close()


def _pagination(page: int, limit: int, total: int) -> Pagination:
    return Pagination(page=page, limit=limit, total=total, pages=-(-total // limit))


def _clamp_page(page: int, limit: int) -> tuple[int, int]:
    return max(1, page), max(1, min(MAX_PAGE_SIZE, limit))


def _video_info(video: Video) -> VideoInfo:
    return VideoInfo(
        id=video.id,
        title=video.title,
        status=video.status_str,
        language=video.language,
        transcript=video.transcript,
        summary=video.summary,
        has_embeddings=bool(video.embeddings),
        duration=video.duration,
        word_count=video.word_count,
        error=video.error,
        processed_at=video.processed_at,
        created_at=video.created_at,
    )


def _answer(question: Question) -> AnswerResponse:
    return AnswerResponse(
        id=question.id,
        video_id=question.video_id,
        question=question.question,
        answer=question.answer,
        language=question.language,
        asked_at=question.asked_at,
    )


@router.get("", response_model=VideoPage)
def list_videos(
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    status_filter: Optional[VideoStatus] = Query(None, alias="status"),
    search: Optional[str] = Query(None, max_length=200),
) -> VideoPage:
    """Return video records newest first, optionally filtered by status or title."""
    page, limit = _clamp_page(page, limit)
    db = SessionLocal()
    try:
        query = db.query(Video)
        if status_filter is not None:
            query = query.filter(Video.status == status_filter)
        if search:
            query = query.filter(Video.title.ilike(f"%{search}%"))
        total = query.count()
        videos = query.order_by(Video.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    finally:
        db.close()
    return VideoPage(videos=[_video_info(v) for v in videos], pagination=_pagination(page, limit, total))


@router.get("/{video_id}", response_model=VideoInfo)
async def get_video(video_id: str) -> VideoInfo:
    """Return the processing record of a video (embeddings omitted)."""
    return _video_info(_load_video(video_id))


@router.get("/{video_id}/questions", response_model=QuestionPage)
def list_questions(video_id: str, page: int = 1, limit: int = DEFAULT_PAGE_SIZE) -> QuestionPage:
    """Return the questions asked about a video, most recent first."""
    _load_video(video_id)
    page, limit = _clamp_page(page, limit)
    db = SessionLocal()
    try:
        query = db.query(Question).filter(Question.video_id == video_id)
        total = query.count()
        questions = (
            query.order_by(Question.asked_at.desc(), Question.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
    finally:
        db.close()
    return QuestionPage(questions=[_answer(q) for q in questions], pagination=_pagination(page, limit, total))


@router.post("/{video_id}/questions", response_model=AnswerResponse)
def ask_question(
    video_id: str,
    payload: QuestionRequest,
    enrichment: EnrichmentClient = Depends(get_enrichment_client),
) -> AnswerResponse:
    """Answer a natural-language question from the video's transcript."""
    video = _load_video(video_id)
    if video.status != VideoStatus.COMPLETED or not video.transcript:
        raise AppBaseException(status.HTTP_409_CONFLICT, "Video has not finished processing")
    question_text = payload.question.strip()
    if not question_text:
        raise AppBaseException(status.HTTP_422_UNPROCESSABLE_ENTITY, "Question is required")
    answer = enrichment.answer_question(video.transcript, question_text, video.language)

    db = SessionLocal()
    try:
        question = Question(video_id=video_id, question=question_text, answer=answer, language=video.language)
        db.add(question)
        db.commit()
        db.refresh(question)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
    logger.info("Answered question %s on video %s", question.id, video_id)
    return _answer(question)


@router.websocket("/{video_id}/events")
async def video_events(websocket: WebSocket, video_id: str, notifier: Notifier = Depends(get_notifier)):
    """Relay live processing events of one video to the client."""
    if not is_valid_video_id(video_id):
        await websocket.close(code=1008)
        return

    await websocket.accept()
    await websocket.send_json({"event": "connected", "video_id": video_id})
    try:
        async with aclosing(notifier.subscribe(video_id)) as events:
            async for event in events:
                await websocket.send_json(event)
                if event.get("event") == "completed":
                    break
    except WebSocketDisconnect:
        logger.info("Client disconnected from events of video %s", video_id)
        return
    await websocket.close()
