from __future__ import annotations

import random

from ..models import BackoffPolicy, BackoffStrategy


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


def retry_delay(policy: BackoffPolicy, attempt: int) -> float:
    """Seconds to wait before attempt ``attempt + 1`` of an automated step."""
    if policy.strategy is BackoffStrategy.NONE:
        return 0.0
    if policy.strategy is BackoffStrategy.FIXED:
        delay = policy.delay_seconds + random.uniform(0, policy.jitter_seconds)
    else:
        delay = policy.delay_seconds * compute_backoff(
            attempt - 1, base=2.0, jitter=0.0
        ) + random.uniform(0, policy.jitter_seconds)
    if policy.max_delay_seconds is not None:
        delay = min(delay, policy.max_delay_seconds)
    return delay
