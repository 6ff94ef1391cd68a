"""Bounded retry with backoff, shared by conversion and delivery."""

import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from .logger import get_logger

logger = get_logger("retry")

T = TypeVar("T")


def exponential_backoff(attempt: int) -> float:
    """Seconds to wait after failed attempt number ``attempt`` (1-based): 2, 4, 8..."""
    return float(2**attempt)


def retry_with_backoff(
    func: Callable[[], T],
    *,
    max_attempts: int = 3,
    backoff: Callable[[int], float] = exponential_backoff,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    should_continue: Optional[Callable[[], bool]] = None,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "operation",
) -> T:
    """Call ``func`` until it succeeds or ``max_attempts`` is reached.

    Attempts run strictly one after another. The last exception is re-raised
    once attempts are exhausted, or as soon as ``should_continue`` returns
    False between attempts. Exceptions outside ``retry_on`` propagate
    immediately.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(1, max_attempts + 1):
        try:
            result = func()
        except retry_on as e:
            if attempt >= max_attempts:
                logger.error(f"{description} failed after {attempt} attempts: {e}")
                raise
            if should_continue is not None and not should_continue():
                logger.warning(f"{description} abandoned after attempt {attempt}: {e}")
                raise
            wait = backoff(attempt)
            logger.warning(
                f"{description} failed (attempt {attempt}/{max_attempts}): {e}. Retrying in {wait:.1f}s"
            )
            sleep(wait)
        else:
            if attempt > 1:
                logger.info(f"{description} succeeded after {attempt} attempts")
            return result

    raise AssertionError("unreachable")


__all__ = ["retry_with_backoff", "exponential_backoff"]
