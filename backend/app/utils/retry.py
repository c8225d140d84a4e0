"""Exponential backoff combinator used by every remote-call site."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try an operation and how long to wait in between.

    ``max_attempts`` counts the first call, so ``max_attempts=3`` means one
    call plus at most two retries. The delay doubles after every failure,
    starting at ``base_delay`` and never exceeding ``max_delay``.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the ``attempt``-th failure (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


def _always(_exc: BaseException) -> bool:
    return True


def retry_with_backoff(
    operation: Callable[[], T],
    policy: RetryPolicy,
    *,
    retry_on: Callable[[BaseException], bool] = _always,
    sleep: Callable[[float], None] = time.sleep,
    description: str | None = None,
) -> T:
    """
    Call ``operation`` until it succeeds or the policy is exhausted.

    Exceptions for which ``retry_on`` returns False are re-raised immediately.
    After the last attempt the last exception is re-raised unchanged so callers
    keep the original type and context.

    usage:
        text = retry_with_backoff(
            lambda: backend.transcribe(path, "en"),
            RetryPolicy(max_attempts=3, base_delay=2.0),
            retry_on=is_transient,
        )
    """
    name = description or getattr(operation, "__name__", "operation")
    attempt = 1
    while True:
        try:
            return operation()
        except Exception as exc:
            if not retry_on(exc):
                raise
            if attempt >= policy.max_attempts:
                logger.error("%s failed after %d attempts: %s", name, attempt, exc)
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %d/%d): %s. retrying in %.1fs...",
                name, attempt, policy.max_attempts, exc, delay,
            )
            sleep(delay)
            attempt += 1
