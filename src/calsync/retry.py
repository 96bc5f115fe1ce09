"""Provider-independent exponential-backoff retry executor."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from calsync.core.metrics import record_retry_attempt
from calsync.errors import CalendarError, classify_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_SECONDS = 1.0


def backoff_delay(attempt: int, base_delay: float = DEFAULT_BASE_DELAY_SECONDS) -> float:
    """Delay applied after the zero-based ``attempt`` fails."""
    return base_delay * (2**attempt)


async def retry(
    operation: Callable[[], Awaitable[T]],
    *,
    classify: Callable[[BaseException], CalendarError] = classify_error,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    on_retry: Callable[[int, CalendarError], None] | None = None,
) -> T:
    """Run ``operation`` until it succeeds, retrying only retryable failures.

    Parameters
    ----------
    operation:
        Zero-argument coroutine factory.  It is called once per attempt.
    classify:
        Maps a raised exception onto the shared taxonomy.  Only errors whose
        classification is ``retryable`` are retried.
    max_attempts:
        Total attempt ceiling, including the first call.
    base_delay:
        Seconds to wait after the first failed attempt; doubles after each
        subsequent failure (``base_delay * 2**attempt``).  No delay follows
        the final attempt.
    sleep:
        Awaitable sleep, injectable for tests.
    on_retry:
        Optional callback invoked with ``(attempt_number, classified_error)``
        before each backoff delay.

    Raises
    ------
    Exception
        The last exception raised by ``operation``, re-raised unchanged.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(max_attempts):
        try:
            return await operation()
        except Exception as exc:
            classified = classify(exc)
            if not classified.retryable:
                raise
            if attempt >= max_attempts - 1:
                logger.warning(
                    "Retryable calendar error persisted after %d attempt(s): %s",
                    max_attempts,
                    classified.code,
                )
                raise

            delay = backoff_delay(attempt, base_delay)
            record_retry_attempt(str(classified.code))
            logger.info(
                "Retrying calendar operation in %.1fs (attempt %d/%d, code=%s)",
                delay,
                attempt + 1,
                max_attempts,
                classified.code,
            )
            if on_retry is not None:
                on_retry(attempt + 1, classified)
            await sleep(delay)

    # Unreachable: the loop either returns or raises.
    raise AssertionError("retry loop exited without a result")
