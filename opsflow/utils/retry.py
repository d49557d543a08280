from __future__ import annotations

import asyncio
import random
from datetime import datetime, timedelta, timezone
from typing import Optional

from ..config import RetryPolicy


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compute_backoff(attempt: int, policy: Optional[RetryPolicy] = None) -> float:
    """Compute exponential backoff with jitter for the 1-based ``attempt``."""
    policy = policy or RetryPolicy()
    delay = policy.base_delay * policy.multiplier ** max(attempt - 1, 0)
    delay = min(delay, policy.max_delay)
    if policy.jitter:
        delay += random.uniform(0, policy.jitter)
    return delay


def next_retry_at(
    attempt: int,
    policy: Optional[RetryPolicy] = None,
    now: Optional[datetime] = None,
    retry_after: Optional[float] = None,
) -> datetime:
    """Absolute time of the next attempt; a provider ``Retry-After`` wins if longer."""
    delay = compute_backoff(attempt, policy)
    if retry_after is not None:
        delay = max(delay, retry_after)
    return (now or utcnow()) + timedelta(seconds=delay)


async def schedule_retry(attempt: int, policy: Optional[RetryPolicy] = None) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, policy)
    await asyncio.sleep(delay)
