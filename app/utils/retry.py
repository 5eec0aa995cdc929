"""
Retry with a success predicate.

Used around template and document metadata analysis, where the assistant
call itself rarely raises but frequently returns a fallback result worth
retrying.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_until(
    fn: Callable[[], Awaitable[T]],
    is_good: Callable[[T], bool],
    attempts: int = 3,
    delay: float = 3.0,
    label: str = "operation",
) -> T:
    """
    Call *fn* up to *attempts* times, sleeping *delay* seconds between tries,
    until *is_good* accepts the result.

    Exceptions count as a bad attempt.  Returns the last result when no
    attempt is accepted; re-raises the last exception when every attempt
    raised.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    result: Optional[T] = None
    have_result = False
    last_exc: Optional[BaseException] = None

    for attempt in range(1, attempts + 1):
        try:
            result = await fn()
            have_result = True
            if is_good(result):
                if attempt > 1:
                    logger.info("%s: succeeded on attempt %d/%d", label, attempt, attempts)
                return result
            logger.warning("%s: attempt %d/%d returned a fallback result", label, attempt, attempts)
        except Exception as exc:
            last_exc = exc
            logger.warning("%s: attempt %d/%d failed: %s", label, attempt, attempts, exc)

        if attempt < attempts:
            await asyncio.sleep(delay)

    if not have_result and last_exc is not None:
        raise last_exc
    logger.error("%s: no acceptable result after %d attempts", label, attempts)
    return result  # type: ignore[return-value]
