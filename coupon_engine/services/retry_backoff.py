from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError

T = TypeVar("T")

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (OperationalError,)


@dataclass
class BackoffDecision:
    delay_seconds: float
    consecutive_failures: int


class ExponentialBackoff:
    def __init__(self, *, base_delay_seconds: float = 0.05, max_delay_seconds: float = 2.0) -> None:
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds

    def next_delay(self, consecutive_failures: int) -> BackoffDecision:
        if consecutive_failures <= 0:
            return BackoffDecision(delay_seconds=0.0, consecutive_failures=0)
        delay = min(self.base_delay_seconds * (2 ** (consecutive_failures - 1)), self.max_delay_seconds)
        return BackoffDecision(delay_seconds=float(delay), consecutive_failures=consecutive_failures)


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, TRANSIENT_ERRORS):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


def retry_with_backoff(
    operation: Callable[[], T],
    *,
    backoff: ExponentialBackoff,
    max_attempts: int = 0,
    label: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation`` until it succeeds, sleeping between transient failures.

    ``max_attempts`` of 0 retries without bound. Non-transient errors propagate
    immediately; the last transient error propagates once attempts run out.
    """
    failures = 0
    while True:
        try:
            return operation()
        except Exception as exc:
            if not is_transient(exc):
                raise
            failures += 1
            if max_attempts and failures >= max_attempts:
                logger.critical("%s failed after %s attempts", label, failures)
                raise
            decision = backoff.next_delay(failures)
            logger.warning(
                "%s transient failure attempt=%s retry_in=%.3fs error=%s",
                label,
                failures,
                decision.delay_seconds,
                exc.__class__.__name__,
            )
            sleep(decision.delay_seconds)
