from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.api.routes_video import get_enrichment_client, get_notifier
from app.main import app
from app.models.question import Question
from app.models.video import Video, VideoStatus

client = TestClient(app)


def _video(status=VideoStatus.COMPLETED, **kwargs):
    values = dict(
        id="v1",
        title="Demo",
        source_url="https://cdn.test/v1.mp4",
        language="english",
        status=status,
        created_at=datetime.utcnow(),
    )
    values.update(kwargs)
    return Video(**values)


@pytest.fixture
def mock_db():
    with patch("app.api.routes_video.SessionLocal") as mock_session_local:
        db = MagicMock()
        mock_session_local.return_value = db
        yield db


@pytest.fixture
def enrichment():
    enrichment = MagicMock()
    app.dependency_overrides[get_enrichment_client] = lambda: enrichment
    yield enrichment
    app.dependency_overrides.pop(get_enrichment_client, None)


def test_get_video(mock_db):
    mock_db.query.return_value.filter.return_value.first.return_value = _video(
        transcript="[00:00] hello", summary="s", embeddings=[0.1], word_count=2
    )

    response = client.get("/api/videos/v1")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "completed"
    assert data["transcript"] == "[00:00] hello"
    assert data["has_embeddings"] is True
    assert "embeddings" not in data


def test_get_video_not_found(mock_db):
    mock_db.query.return_value.filter.return_value.first.return_value = None

    response = client.get("/api/videos/missing")

    assert response.status_code == 404


def test_ask_question(mock_db, enrichment):
    mock_db.query.return_value.filter.return_value.first.return_value = _video(transcript="[00:00] cats")
    enrichment.answer_question.return_value = "Cats."

    response = client.post("/api/videos/v1/questions", json={"question": "What is it about?"})

    assert response.status_code == 200
    data = response.json()
    assert data["video_id"] == "v1"
    assert data["question"] == "What is it about?"
    assert data["answer"] == "Cats."
    assert data["language"] == "english"
    enrichment.answer_question.assert_called_once_with("[00:00] cats", "What is it about?", "english")
    saved = mock_db.add.call_args.args[0]
    assert isinstance(saved, Question)
    assert (saved.video_id, saved.answer) == ("v1", "Cats.")
    mock_db.commit.assert_called_once()


def test_ask_question_before_completion(mock_db, enrichment):
    mock_db.query.return_value.filter.return_value.first.return_value = _video(VideoStatus.PROCESSING)

    response = client.post("/api/videos/v1/questions", json={"question": "What is it about?"})

    assert response.status_code == 409
    enrichment.answer_question.assert_not_called()


def test_ask_empty_question(mock_db, enrichment):
    response = client.post("/api/videos/v1/questions", json={"question": ""})

    assert response.status_code == 422


def test_events_are_relayed_until_completed():
    async def subscribe(video_id):
        yield {"event": "progress", "phase": "chunking", "progress": 30}
        yield {"event": "completed", "transcript": "[00:00] hi", "summary": "s"}
        yield {"event": "progress", "progress": 999}

    notifier = MagicMock()
    notifier.subscribe = subscribe
    app.dependency_overrides[get_notifier] = lambda: notifier
    try:
        with client.websocket_connect("/api/videos/v1/events") as ws:
            assert ws.receive_json() == {"event": "connected", "video_id": "v1"}
            assert ws.receive_json()["progress"] == 30
            assert ws.receive_json()["event"] == "completed"
            with pytest.raises(WebSocketDisconnect):
                ws.receive_json()
    finally:
        app.dependency_overrides.pop(get_notifier, None)


def test_events_reject_invalid_video_id():
    app.dependency_overrides[get_notifier] = lambda: MagicMock()
    try:
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/api/videos/bad!id/events") as ws:
                ws.receive_json()
    finally:
        app.dependency_overrides.pop(get_notifier, None)


T0 = datetime(2024, 1, 1, 12, 0, 0)


@pytest.fixture
def stored(session_factory, records):
    with patch("app.api.routes_video.SessionLocal", session_factory):
        yield records


def test_ask_blank_question(mock_db, enrichment):
    mock_db.query.return_value.filter.return_value.first.return_value = _video(transcript="[00:00] cats")

    response = client.post("/api/videos/v1/questions", json={"question": "   "})

    assert response.status_code == 422
    enrichment.answer_question.assert_not_called()


def test_questions_are_stored_and_listed(stored, enrichment):
    stored.prepare("v1", "https://cdn.test/v1.mp4", "english", now=T0)
    stored.begin_processing("v1", now=T0)
    stored.mark_completed("v1", transcript="[00:00] cats", summary="s", embeddings=None, duration=5.0, word_count=2)
    enrichment.answer_question.side_effect = ["Cats.", "Two."]

    first = client.post("/api/videos/v1/questions", json={"question": "What is it about?"}).json()
    second = client.post("/api/videos/v1/questions", json={"question": "How many cats?"}).json()
    assert first["id"] is not None
    assert first["asked_at"] is not None

    response = client.get("/api/videos/v1/questions", params={"limit": 1})

    assert response.status_code == 200
    data = response.json()
    assert data["pagination"] == {"page": 1, "limit": 1, "total": 2, "pages": 2}
    assert [q["id"] for q in data["questions"]] == [second["id"]]

    older = client.get("/api/videos/v1/questions", params={"page": 2, "limit": 1}).json()
    assert older["questions"][0]["answer"] == "Cats."


def test_questions_of_unknown_video(stored):
    assert client.get("/api/videos/ghost/questions").status_code == 404


def test_list_videos_newest_first_with_filters(stored):
    for minute, video_id in enumerate(["a1", "b2", "c3"]):
        stored.prepare(video_id, f"https://cdn.test/{video_id}.mp4", "english", title=f"Talk {video_id}",
                       now=T0 + timedelta(minutes=minute))
    stored.begin_processing("b2", now=T0)

    response = client.get("/api/videos", params={"limit": 500})

    assert response.status_code == 200
    data = response.json()
    assert [v["id"] for v in data["videos"]] == ["c3", "b2", "a1"]
    assert data["pagination"] == {"page": 1, "limit": 100, "total": 3, "pages": 1}
    assert all("embeddings" not in v for v in data["videos"])

    processing = client.get("/api/videos", params={"status": "processing"}).json()
    assert [v["id"] for v in processing["videos"]] == ["b2"]

    searched = client.get("/api/videos", params={"search": "talk a1"}).json()
    assert [v["id"] for v in searched["videos"]] == ["a1"]


def test_list_videos_rejects_unknown_status(stored):
    assert client.get("/api/videos", params={"status": "paused"}).status_code == 422
