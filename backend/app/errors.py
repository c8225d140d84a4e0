"""Exception taxonomy shared by the pipeline components.

Lower-level components raise these with enough context (phase, chunk index,
attempt) for the orchestrator to decide between retrying and failing a job.
Two different questions are asked of an exception:

* :func:`is_transient` – should the *call site* retry right away with backoff
  (remote timeouts, rate limits, 5xx)?
* :func:`is_retryable` – once the call site gave up, may the *queue* schedule
  another attempt of the whole job?
"""

from __future__ import annotations

from typing import Optional

import httpx

MAX_ERROR_LENGTH = 500

TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


class PipelineError(Exception):
    """Base class for every error raised while processing a video."""

    retryable = True

    def __init__(
        self,
        message: str,
        *,
        phase: Optional[str] = None,
        chunk_index: Optional[int] = None,
        attempt: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.phase = phase
        self.chunk_index = chunk_index
        self.attempt = attempt

    def __str__(self) -> str:
        context = []
        if self.phase:
            context.append(f"phase={self.phase}")
        if self.chunk_index is not None:
            context.append(f"chunk={self.chunk_index}")
        if self.attempt is not None:
            context.append(f"attempt={self.attempt}")
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


# --- Validation errors: fail fast, never retried ---------------------------

class ValidationError(PipelineError):
    retryable = False


class JobValidationError(ValidationError):
    """The enqueue payload is malformed."""


class MediaValidationError(ValidationError):
    """The source media is missing, empty, oversize or has no duration."""


class AudioValidationError(ValidationError):
    """An audio chunk cannot be sent to the speech backend."""


class RecordNotFoundError(ValidationError):
    """The VideoRecord backing a job does not exist."""


class SourceUnavailableError(ValidationError):
    """The source URL answered with a non-transient client error."""


# --- Retryable at job level ------------------------------------------------

class DownloadError(PipelineError):
    pass


class TranscodeError(PipelineError):
    pass


class TranscriptionError(PipelineError):
    """Speech backend failure. ``transient`` drives the call-site retry."""

    def __init__(self, message: str, *, transient: bool = False, **context) -> None:
        super().__init__(message, **context)
        self.transient = transient


class EnrichmentError(PipelineError):
    def __init__(self, message: str, *, transient: bool = False, **context) -> None:
        super().__init__(message, **context)
        self.transient = transient


class DuplicateJobError(PipelineError):
    """Another worker is actively processing the same video."""


class StorageError(PipelineError):
    pass


class LeaseLostError(PipelineError):
    """The job lease expired and was handed to another attempt."""


def is_transient(exc: BaseException) -> bool:
    """Return True for failures worth an immediate backoff-and-retry."""
    if isinstance(exc, (TranscriptionError, EnrichmentError)):
        return exc.transient
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in TRANSIENT_STATUS_CODES
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return True
    return isinstance(exc, (TimeoutError, ConnectionError))


def is_retryable(exc: BaseException) -> bool:
    """Return True if the queue may schedule another attempt of the job."""
    return getattr(exc, "retryable", True)


def truncate_error(exc: BaseException | str, limit: int = MAX_ERROR_LENGTH) -> str:
    message = exc if isinstance(exc, str) else (str(exc) or exc.__class__.__name__)
    return message[:limit]


class AppBaseException(Exception):
    """HTTP-facing exception so routes can map to JSON responses easily."""

    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail
