# Make `backend` importable as the root of the `app` package during tests
from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT_DIR))

# In-memory SQLite and a throwaway log/data root unless overridden
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("DB_ECHO", "0")
_scratch = tempfile.mkdtemp(prefix="video-transcriber-tests-")
os.environ.setdefault("LOG_DIR", os.path.join(_scratch, "logs"))
os.environ.setdefault("DATA_ROOT", os.path.join(_scratch, "data"))
