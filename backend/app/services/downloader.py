"""Stream a remote source video to the attempt workspace."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Optional

import httpx

from app.config import settings
from app.errors import (
    TRANSIENT_STATUS_CODES,
    DownloadError,
    MediaValidationError,
    SourceUnavailableError,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


def download_source(
    url: str,
    destination: Path,
    *,
    total_timeout: Optional[float] = None,
    inactivity_timeout: Optional[float] = None,
    max_bytes: Optional[int] = None,
    transport: Optional[httpx.BaseTransport] = None,
    clock: Callable[[], float] = time.monotonic,
) -> Path:
    """Download ``url`` into ``destination`` and return the path.

    ``inactivity_timeout`` bounds every single read; ``total_timeout`` bounds
    the whole transfer. Network failures, timeouts, 429 and 5xx raise the
    retryable :class:`DownloadError`; other 4xx answers and oversize or empty
    bodies are validation errors. A partial file never survives a failure.
    """
    total_timeout = total_timeout or settings.DOWNLOAD_TOTAL_TIMEOUT_SECONDS
    inactivity_timeout = inactivity_timeout or settings.DOWNLOAD_INACTIVITY_TIMEOUT_SECONDS
    max_bytes = max_bytes or settings.MAX_SOURCE_SIZE_BYTES
    deadline = clock() + total_timeout
    written = 0

    try:
        with httpx.Client(
            timeout=httpx.Timeout(inactivity_timeout),
            follow_redirects=True,
            transport=transport,
        ) as client:
            with client.stream("GET", url) as response:
                _check_status(response, url)
                declared = int(response.headers.get("content-length") or 0)
                if declared > max_bytes:
                    raise MediaValidationError(
                        f"Source is {declared} bytes, limit is {max_bytes}", phase="downloading"
                    )
                with open(destination, "wb") as fh:
                    for block in response.iter_bytes(CHUNK_SIZE):
                        written += len(block)
                        if written > max_bytes:
                            raise MediaValidationError(
                                f"Source exceeds {max_bytes} bytes", phase="downloading"
                            )
                        if clock() > deadline:
                            raise DownloadError(
                                f"Download exceeded {total_timeout:.0f}s", phase="downloading"
                            )
                        fh.write(block)
    except httpx.TimeoutException as exc:
        destination.unlink(missing_ok=True)
        raise DownloadError(f"Download stalled for {inactivity_timeout:.0f}s", phase="downloading") from exc
    except httpx.HTTPError as exc:
        destination.unlink(missing_ok=True)
        raise DownloadError(f"Download failed: {exc}", phase="downloading") from exc
    except Exception:
        destination.unlink(missing_ok=True)
        raise

    if written == 0:
        destination.unlink(missing_ok=True)
        raise MediaValidationError("Source download is empty", phase="downloading")

    logger.info("Downloaded %d bytes from %s", written, url)
    return destination


def _check_status(response: httpx.Response, url: str) -> None:
    status = response.status_code
    if status < 400:
        return
    if status >= 500 or status in TRANSIENT_STATUS_CODES:
        raise DownloadError(f"Source answered HTTP {status}: {url}", phase="downloading")
    raise SourceUnavailableError(f"Source answered HTTP {status}: {url}", phase="downloading")
