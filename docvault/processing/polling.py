"""
poll_until — generic fixed-interval polling with an attempt ceiling.

    result = await poll_until(check, interval=10.0, max_attempts=30)

`check` is an async callable returning None while the job is still running
and a value once it reached a terminal state. Each attempt sleeps *before*
checking, matching job APIs that never finish instantly. Exceptions raised
by `check` propagate unless their type is listed in `retry_on`, in which case
the attempt is counted and polling continues.

`sleep` is injectable so tests can drive the loop with a fake clock.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from docvault.core.exceptions import PollTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


async def poll_until(
    check:        Callable[[], Awaitable[Optional[T]]],
    interval:     float,
    max_attempts: int,
    *,
    sleep:        Sleep = asyncio.sleep,
    retry_on:     tuple[type[BaseException], ...] = (),
    timeout_error: type[PollTimeoutError] = PollTimeoutError,
    label:        str = "poll",
) -> T:
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    for attempt in range(1, max_attempts + 1):
        await sleep(interval)
        try:
            result = await check()
        except retry_on as exc:
            logger.warning(
                "Poll attempt error | label=%s attempt=%d/%d error=%s",
                label, attempt, max_attempts, exc,
            )
            continue

        if result is not None:
            logger.debug("Poll done | label=%s attempts=%d", label, attempt)
            return result

        logger.debug("Poll pending | label=%s attempt=%d/%d", label, attempt, max_attempts)

    raise timeout_error(
        f"{label} did not complete after {max_attempts} attempts "
        f"({max_attempts * interval:.0f}s)",
        attempts=max_attempts,
    )
