"""Backoff for git operations that talk to a remote."""
import functools
import time
from typing import Callable, Iterator, Optional, Tuple, Type

from gut.core.logger import get_logger

logger = get_logger(__name__)

# stderr fragments git prints for failures worth another attempt
TRANSIENT_MARKERS = (
    "could not resolve host",
    "connection timed out",
    "connection reset",
    "connection refused",
    "early eof",
    "the remote end hung up",
    "operation timed out",
    "temporary failure",
)


def is_transient(exc: Exception) -> bool:
    """True if a failed git call looks like a network hiccup."""
    text = (getattr(exc, 'stderr', None) or str(exc)).lower()
    return any(marker in text for marker in TRANSIENT_MARKERS)


def backoff_delays(attempts: int, delay: float, factor: float) -> Iterator[float]:
    """Sleep intervals between ``attempts`` tries: delay, delay*factor, ..."""
    current = delay
    for _ in range(attempts - 1):
        yield current
        current *= factor


def retry(
    max_attempts: int = 3,
    delay: float = 2.0,
    backoff: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    when: Optional[Callable[[Exception], bool]] = None,
    sleep: Callable[[float], None] = time.sleep,
):
    """Retry a remote operation with exponential backoff.

    Only clone and fetch of template repositories are wrapped; nothing that
    writes to a working tree is retried.

    Args:
        max_attempts: Total attempts, including the first
        delay: Seconds before the second attempt
        backoff: Multiplier applied to the delay after each failure
        exceptions: Exception types considered for a retry
        when: Predicate deciding whether a caught exception is retryable
        sleep: Sleep function (tests pass a no-op)
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            delays = backoff_delays(max_attempts, delay, backoff)
            attempt = 1
            while True:
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if when is not None and not when(e):
                        raise
                    pause = next(delays, None)
                    if pause is None:
                        logger.error(f"{func.__name__} gave up after {attempt} attempt(s): {e}")
                        raise
                    logger.warning(
                        f"{func.__name__} failed (attempt {attempt}/{max_attempts}), "
                        f"retrying in {pause:.1f}s: {e}"
                    )
                    sleep(pause)
                    attempt += 1

        return wrapper

    return decorator
