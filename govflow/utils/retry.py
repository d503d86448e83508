from __future__ import annotations

import random
import time


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


def sleep_before_retry(attempt: int, scale: float = 1.0) -> float:
    """Sleep for the computed backoff delay and return it."""
    delay = compute_backoff(attempt) * scale
    time.sleep(delay)
    return delay
