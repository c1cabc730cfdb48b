from __future__ import annotations

import asyncio
import random


def compute_backoff(attempt: int, base: float = 0.01, factor: float = 2.0, jitter: float = 0.01) -> float:
    """Compute exponential backoff with jitter for the ``attempt``-th retry."""
    delay = base * factor ** max(attempt - 1, 0)
    return delay + random.uniform(0, jitter)


async def schedule_retry(attempt: int, base: float = 0.01, jitter: float = 0.01) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, base=base, jitter=jitter)
    await asyncio.sleep(delay)
