from __future__ import annotations

import asyncio
import random


def compute_backoff(attempt: int, base: float = 0.05, jitter: float = 0.05) -> float:
    """Delay before retry ``attempt`` (1-based): doubling from ``base``, plus jitter."""
    return base * (2 ** max(attempt - 1, 0)) + random.uniform(0, jitter)


async def schedule_retry(attempt: int, base: float = 0.05) -> None:
    """Back off before re-running a write that lost an optimistic-lock race."""
    await asyncio.sleep(compute_backoff(attempt, base=base, jitter=base))
