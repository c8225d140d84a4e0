import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.base import Base
from app.db.database import init_db
from app.services.job_queue import JobQueue
from app.services.video_records import VideoRecords


@pytest.fixture
def engine():
    # One shared connection so every session and thread sees the same in-memory DB
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def queue(session_factory) -> JobQueue:
    return JobQueue(
        session_factory,
        max_attempts=3,
        backoff_seconds=5,
        backoff_max_seconds=600,
        lock_duration=1800,
        policy="ignore",
    )


@pytest.fixture
def records(session_factory) -> VideoRecords:
    return VideoRecords(session_factory, stale_after=1800)
