"""
Retry policy for opening completion streams.

Only the request that opens the upstream stream is retried, and only for
transient failures. Once a fragment has been handed to the caller nothing
is retried.
"""
import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Tuple, Type, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Lower-cased message fragments of GenerationErrors raised without a status code
TRANSIENT_MESSAGES = (
    'could not connect',
    'timed out',
    'temporarily unavailable',
    'overloaded',
)


class RetryExhausted(Exception):
    """Raised when every attempt to open the stream failed."""

    def __init__(self, message: str, attempts: int, last_exception: Exception):
        super().__init__(message)
        self.attempts = attempts
        self.last_exception = last_exception


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff with jitter."""
    attempts: int = 3
    first_delay: float = 1.0
    max_delay: float = 5.0
    jitter: float = 0.10  # ±10%

    def delay(self, retry: int) -> float:
        """Seconds to wait before retry number `retry` (1-based)."""
        base = min(self.first_delay * 2 ** (retry - 1), self.max_delay)
        spread = base * self.jitter
        return max(0.0, base + random.uniform(-spread, spread))


GENERATION_RETRY_POLICY = RetryPolicy()


def is_transient(error: Exception) -> bool:
    """
    Whether opening the stream again could succeed.

    Transport failures, timeouts, 429 and 5xx responses are transient. Other
    upstream statuses (bad request, bad key, unknown model) are not.
    """
    if isinstance(error, httpx.TransportError):
        return True

    status_code = getattr(error, 'status_code', None)
    if status_code is not None:
        return status_code == 429 or status_code >= 500

    message = str(error).lower()
    return any(fragment in message for fragment in TRANSIENT_MESSAGES)


def open_with_retry(
    open_stream: Callable[[], T],
    policy: RetryPolicy,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
) -> T:
    """
    Call open_stream until it succeeds or the policy runs out of attempts.

    Raises:
        RetryExhausted: If every attempt failed with a transient error
        Exception: The first non-transient error, unchanged
    """
    last_error = None

    for attempt in range(1, policy.attempts + 1):
        try:
            return open_stream()
        except exceptions as e:
            if not is_transient(e):
                raise
            last_error = e

        if attempt < policy.attempts:
            wait = policy.delay(attempt)
            logger.warning(
                f"Opening completion stream failed (attempt {attempt}/{policy.attempts}): "
                f"{last_error}. Retrying in {wait:.2f}s"
            )
            time.sleep(wait)

    raise RetryExhausted(
        f"Could not open completion stream after {policy.attempts} attempts: {last_error}",
        attempts=policy.attempts,
        last_exception=last_error,
    )
