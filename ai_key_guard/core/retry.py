"""
Retry with exponential backoff.

Shared by the aggregator, the rotation orchestrator and the publisher.
Sleep is injectable so tests run without real delays.
"""

import logging
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from .errors import TransientIOError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS: Tuple[Type[BaseException], ...] = (TransientIOError, TimeoutError)


def backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """Delay before retry number ``attempt`` (1-based): base * 2^(attempt-1), capped."""
    return min(maximum, base * (2 ** (attempt - 1)))


def retry_call(
    func: Callable[[], T],
    attempts: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    retry_on: Tuple[Type[BaseException], ...] = RETRYABLE_ERRORS,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "call",
    should_continue: Optional[Callable[[], bool]] = None,
) -> T:
    """Call ``func`` until it succeeds or ``attempts`` are exhausted.

    Args:
        func: Zero-argument callable to invoke
        attempts: Total number of attempts (>= 1)
        base_delay: Delay before the first retry in seconds
        max_delay: Upper bound for any single delay
        retry_on: Exception types that trigger a retry
        sleep: Sleep function
        description: Label used in log lines
        should_continue: Checked before every retry; returning False stops early

    Returns:
        The first successful result of ``func``

    Raises:
        The last exception raised by ``func`` once attempts are exhausted
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    for attempt in range(1, attempts + 1):
        try:
            return func()
        except retry_on as e:
            if attempt == attempts or (should_continue is not None and not should_continue()):
                logger.warning("%s failed after %d attempt(s): %s", description, attempt, e)
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.info(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                description, attempt, attempts, e, delay,
            )
            sleep(delay)
    raise AssertionError("unreachable")
