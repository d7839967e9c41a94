"""Backoff helpers for a worker's delivery retries."""

from __future__ import annotations

import asyncio
import random

DEFAULT_MAX_DELAY = 60.0


def compute_backoff(
    attempt: int,
    base: float = 1.5,
    jitter: float = 0.5,
    max_delay: float = DEFAULT_MAX_DELAY,
) -> float:
    """Compute exponential backoff with jitter, capped at ``max_delay``."""
    if attempt < 0:
        raise ValueError(f"attempt must be >= 0, got {attempt}")
    delay = min(base ** attempt, max_delay)
    return delay + random.uniform(0, jitter)


async def schedule_retry(attempt: int) -> float:
    """Sleep for computed backoff delay before retrying; return the delay."""
    delay = compute_backoff(attempt)
    await asyncio.sleep(delay)
    return delay


async def no_backoff(attempt: int) -> float:
    """Retry immediately."""
    return 0.0
