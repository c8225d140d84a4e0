"""Database engine & session utilities.

Sync engine + classic session maker. Sessions keep loaded attributes after
commit so ORM rows can be handed back to callers once the session is closed.
"""

import logging
from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.config import settings
from app.db.base import Base

# ---------------------------------------------------------------------------
# Engine & session factory
# ---------------------------------------------------------------------------

logger = logging.getLogger(__name__)
logger.info("Creating database engine for %s", settings.DATABASE_URL.split('@')[-1])
engine = create_engine(settings.DATABASE_URL, echo=settings.DB_ECHO, future=True)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine,
)


def init_db(bind=None) -> None:
    """Create all tables if they do not yet exist. Harmless when they do."""

    import app.models  # noqa: F401 - registers every mapped class on Base

    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables ensured")



def check_database(bind=None) -> bool:
    """Return True when a trivial query succeeds on the database."""
    try:
        with (bind or engine).connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.critical("Database is not reachable: %s", exc)
        return False
    return True
