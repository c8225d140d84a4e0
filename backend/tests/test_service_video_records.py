from datetime import datetime, timedelta

import pytest

from app.errors import DuplicateJobError, LeaseLostError, RecordNotFoundError, StorageError
from app.models.video import VideoStatus
from app.services.video_records import BeginOutcome

T0 = datetime(2024, 1, 1, 12, 0, 0)
URL = "https://cdn.test/v1.mp4"


def _complete(records, video_id="v1"):
    records.mark_completed(
        video_id, transcript="[00:00] hi", summary="s", embeddings=[0.1], duration=5.0, word_count=2, now=T0
    )


def test_prepare_creates_queued_record(records):
    video = records.prepare("v1", URL, "english", title="Demo", now=T0)

    assert video.status == VideoStatus.QUEUED
    assert records.get("v1").title == "Demo"


def test_begin_processing_moves_record_to_processing(records):
    records.prepare("v1", URL, "english", now=T0)

    assert records.begin_processing("v1", now=T0) is BeginOutcome.PROCEED

    video = records.get("v1")
    assert video.status == VideoStatus.PROCESSING
    assert video.processing_started_at == T0


def test_begin_processing_replays_completed_record(records):
    records.prepare("v1", URL, "english", now=T0)
    records.begin_processing("v1", now=T0)
    _complete(records)

    assert records.begin_processing("v1", now=T0 + timedelta(minutes=5)) is BeginOutcome.ALREADY_COMPLETED
    assert records.get("v1").status == VideoStatus.COMPLETED


def test_begin_processing_rejects_fresh_duplicate(records):
    records.prepare("v1", URL, "english", now=T0)
    records.begin_processing("v1", now=T0)

    with pytest.raises(DuplicateJobError):
        records.begin_processing("v1", now=T0 + timedelta(minutes=29))


def test_begin_processing_takes_over_stale_attempt(records):
    records.prepare("v1", URL, "english", now=T0)
    records.begin_processing("v1", now=T0)
    later = T0 + timedelta(minutes=31)

    assert records.begin_processing("v1", now=later) is BeginOutcome.PROCEED
    assert records.get("v1").processing_started_at == later


def test_begin_processing_unknown_video(records):
    with pytest.raises(RecordNotFoundError):
        records.begin_processing("ghost", now=T0)


def test_mark_completed_requires_processing_state(records):
    records.prepare("v1", URL, "english", now=T0)

    with pytest.raises(StorageError):
        _complete(records)


def test_mark_completed_persists_result(records):
    records.prepare("v1", URL, "english", now=T0)
    records.begin_processing("v1", now=T0)
    _complete(records)

    video = records.get("v1")
    assert video.status == VideoStatus.COMPLETED
    assert video.transcript == "[00:00] hi"
    assert video.embeddings == [0.1]
    assert video.word_count == 2
    assert video.processed_at == T0
    assert video.processing_started_at is None


def test_mark_failed_never_overwrites_completed(records):
    records.prepare("v1", URL, "english", now=T0)
    records.begin_processing("v1", now=T0)
    _complete(records)

    assert records.mark_failed("v1", "late failure") is False
    assert records.get("v1").status == VideoStatus.COMPLETED


def test_mark_failed_truncates_error(records):
    records.prepare("v1", URL, "english", now=T0)
    records.begin_processing("v1", now=T0)

    assert records.mark_failed("v1", "x" * 2000) is True

    video = records.get("v1")
    assert video.status == VideoStatus.FAILED
    assert len(video.error) == 500


def test_release_returns_record_to_queue(records):
    records.prepare("v1", URL, "english", now=T0)
    records.begin_processing("v1", now=T0)

    assert records.release("v1") is True
    assert records.get("v1").status == VideoStatus.QUEUED
    assert records.begin_processing("v1", now=T0 + timedelta(minutes=1)) is BeginOutcome.PROCEED


def test_prepare_resets_completed_record_for_new_cycle(records):
    records.prepare("v1", URL, "english", now=T0)
    records.begin_processing("v1", now=T0)
    _complete(records)

    video = records.prepare("v1", URL, "spanish", now=T0 + timedelta(days=1))

    assert video.status == VideoStatus.QUEUED
    assert video.transcript is None
    assert video.language == "spanish"


def test_other_attempt_cannot_complete_or_fail_owned_record(records):
    records.prepare("v1", URL, "english", now=T0)
    records.begin_processing("v1", "token-a", now=T0)
    later = T0 + timedelta(minutes=31)
    records.begin_processing("v1", "token-b", now=later)

    assert records.mark_failed("v1", "late failure", "token-a") is False
    with pytest.raises(LeaseLostError):
        records.mark_completed(
            "v1", transcript="x", summary="s", embeddings=None, duration=1.0, word_count=1,
            lease_token="token-a", now=later,
        )
    assert records.get("v1").status == VideoStatus.PROCESSING

    records.mark_completed(
        "v1", transcript="x", summary="s", embeddings=None, duration=1.0, word_count=1,
        lease_token="token-b", now=later,
    )
    assert records.get("v1").status == VideoStatus.COMPLETED


def test_failure_before_processing_still_recorded(records):
    records.prepare("v1", URL, "english", now=T0)

    assert records.mark_failed("v1", "unsupported source", "token-a") is True
    assert records.get("v1").status == VideoStatus.FAILED


def test_release_only_for_the_stalled_attempt(records):
    records.prepare("v1", URL, "english", now=T0)
    records.begin_processing("v1", "token-b", now=T0)

    assert records.release("v1", "token-a") is False
    assert records.get("v1").status == VideoStatus.PROCESSING
    assert records.release("v1", "token-b") is True
