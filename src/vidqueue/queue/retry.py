"""Retry policy: error classification and exponential backoff."""

import math
import random
from typing import Callable, Optional

from ..errors import PermanentTaskError, TransientTaskError

RETRYABLE_SIGNATURES = (
    "ECONNREFUSED",
    "ECONNRESET",
    "ETIMEDOUT",
    "ENOTFOUND",
    "Rate limit",
    "Temporary failure",
    "Service unavailable",
)


def is_retryable(error: Optional[BaseException]) -> bool:
    """Classify a task failure.

    Explicit task error types win. Python's connection and timeout errors are
    transient. Anything else is retryable only if its message carries one of
    the known transient signatures; unclassified errors are terminal.
    """
    if error is None:
        return False
    if isinstance(error, PermanentTaskError):
        return False
    if isinstance(error, (TransientTaskError, ConnectionError, TimeoutError)):
        return True

    message = str(error)
    return any(signature in message for signature in RETRYABLE_SIGNATURES)


def backoff_delay(
    attempt: int,
    base_delay_s: float = 2.0,
    max_delay_s: float = 60.0,
    jitter: float = 0.1,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay before retry number ``attempt`` (1-based).

    delay = min(max, base * 2^(attempt-1)) plus up to ``jitter`` of that as
    uniform noise, floored to whole milliseconds.

    Returns:
        Delay in seconds
    """
    attempt = max(1, attempt)
    base_ms = base_delay_s * 1000.0
    max_ms = max_delay_s * 1000.0

    # Cap the exponent so large attempt numbers cannot overflow
    exponent = min(attempt - 1, 62)
    delay_ms = min(max_ms, base_ms * (2 ** exponent))
    delay_ms += rng() * jitter * delay_ms

    return math.floor(delay_ms) / 1000.0
