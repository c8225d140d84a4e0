"""Filesystem helpers for per-attempt working directories."""

import logging
import os
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, Optional

logger = logging.getLogger(__name__)

# Determine base data directory:
# 1. Use DATA_ROOT env var if set.
# 2. Else, if /data exists, assume Docker environment and use /data.
# 3. Otherwise, use project_root/data (development environment).
_PROJECT_ROOT = Path(__file__).resolve().parents[3]
_ENV_DATA_ROOT = os.getenv("DATA_ROOT")
if _ENV_DATA_ROOT:
    DATA_ROOT = Path(_ENV_DATA_ROOT)
elif Path("/data").exists():
    DATA_ROOT = Path("/data")
else:
    DATA_ROOT = _PROJECT_ROOT / "data"

# Scratch space: one subdirectory per job attempt
WORK_DIR = DATA_ROOT / "work"


def ensure_dir_exists(path: Path) -> Path:
    """Ensure that the given directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def remove_files(paths: Iterable[Optional[Path]]) -> int:
    """Delete every existing file in ``paths``; returns how many were removed."""
    removed = 0
    for path in paths:
        if path is None:
            continue
        try:
            Path(path).unlink()
            removed += 1
        except FileNotFoundError:
            continue
        except OSError as exc:
            logger.warning("Could not remove %s: %s", path, exc)
    return removed


@contextmanager
def attempt_workspace(job_id: str, attempt: int, root: Optional[Path] = None) -> Iterator[Path]:
    """
    Yield a fresh directory owned by a single job attempt.

    The directory and everything in it are removed on every exit path,
    including exceptions raised by the body.
    """
    base = root or WORK_DIR
    workspace = base / f"{job_id}-attempt{attempt}"
    if workspace.exists():
        shutil.rmtree(workspace, ignore_errors=True)
    ensure_dir_exists(workspace)
    try:
        yield workspace
    finally:
        shutil.rmtree(workspace, ignore_errors=True)
        logger.debug("Workspace %s removed", workspace)
