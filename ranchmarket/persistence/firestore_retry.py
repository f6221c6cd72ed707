from __future__ import annotations

import logging
import random
import time
from typing import Callable, Optional, TypeVar

from google.api_core import exceptions as gexc

from ranchmarket.common.logging import log_event

T = TypeVar("T")
logger = logging.getLogger(__name__)

# Contention on a hot listing surfaces as Aborted from the commit.
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    gexc.Aborted,
    gexc.DeadlineExceeded,
    gexc.InternalServerError,
    gexc.ResourceExhausted,
    gexc.ServiceUnavailable,
    gexc.TooManyRequests,
)


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, TRANSIENT_ERRORS)


def backoff_delay(attempt: int, *, base_delay_s: float, max_delay_s: float, rng: Callable[[], float] = random.random) -> float:
    """Full-jitter delay for the given zero-based retry attempt."""
    cap = min(max_delay_s, base_delay_s * (2**attempt))
    return rng() * cap


def with_firestore_retry(
    fn: Callable[[], T],
    *,
    max_attempts: int = 5,
    base_delay_s: float = 0.2,
    max_delay_s: float = 4.0,
    label: Optional[str] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run `fn`, retrying transient Firestore failures with exponential backoff and full jitter.

    Whole transactions go through here as well, so a retried transaction body re-reads
    every document it validates.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except TRANSIENT_ERRORS as e:
            if attempt >= max_attempts - 1:
                log_event(
                    logger,
                    "firestore.retry_exhausted",
                    severity="WARNING",
                    label=label,
                    attempts=attempt + 1,
                    error=type(e).__name__,
                )
                raise
            delay = backoff_delay(attempt, base_delay_s=base_delay_s, max_delay_s=max_delay_s)
            logger.info("firestore_retry label=%s attempt=%d sleep_s=%.3f error=%s", label, attempt + 1, delay, type(e).__name__)
            sleep(delay)
            attempt += 1
