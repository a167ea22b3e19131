from __future__ import annotations

import asyncio
import random
from typing import Optional


def compute_backoff(
    attempt: int,
    base: float = 2.0,
    jitter: float = 0.5,
    maximum: Optional[float] = 300.0,
) -> float:
    """Compute exponential backoff with jitter, capped at ``maximum`` seconds.

    A non-positive ``base`` disables backoff entirely.
    """
    if base <= 0:
        return 0.0
    delay = base ** attempt + random.uniform(0, jitter)
    if maximum is not None:
        delay = min(delay, maximum)
    return delay


async def schedule_retry(
    attempt: int,
    base: float = 2.0,
    jitter: float = 0.5,
    maximum: Optional[float] = 300.0,
) -> float:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, base=base, jitter=jitter, maximum=maximum)
    await asyncio.sleep(delay)
    return delay
