from __future__ import annotations

import asyncio
import random


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Exponential backoff with jitter; ``base=0`` disables the delay."""
    if base <= 0:
        return random.uniform(0, jitter) if jitter > 0 else 0.0
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


async def schedule_retry(attempt: int, base: float = 1.5, jitter: float = 0.5) -> None:
    """Sleep for the computed backoff delay before retrying."""
    await asyncio.sleep(compute_backoff(attempt, base, jitter))
