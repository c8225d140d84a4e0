"""Declarative base shared by the ``processing_jobs`` and ``videos`` tables.

Models import :data:`Base` from here; :func:`app.db.database.init_db` imports
``app.models`` first so ``Base.metadata`` knows every table before
``create_all`` runs.
"""

from sqlalchemy.orm import declarative_base

Base = declarative_base()

__all__ = ["Base"]
