"""Fixed-interval polling with an explicit timeout budget."""

from __future__ import annotations

import time
from typing import Any, Callable, NamedTuple, Optional, TypeVar

T = TypeVar("T")


class PollOutcome(NamedTuple):
    """Last observed value of a poll and whether the condition was met."""

    value: Any
    satisfied: bool
    attempts: int
    elapsed: float

    @property
    def timed_out(self) -> bool:
        return not self.satisfied


def poll_until(
    probe: Callable[[], Optional[T]],
    done: Callable[[Optional[T]], bool],
    timeout: float,
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    before_attempt: Optional[Callable[[], None]] = None,
) -> PollOutcome:
    """Call ``probe`` until ``done`` accepts its value or ``timeout`` elapses.

    The probe always runs at least once. With ``timeout <= 0`` it runs exactly
    once and never sleeps. Sleeping happens between attempts only, so callers
    must not hold shared locks across this call.
    """
    start = clock()
    attempts = 0
    while True:
        if before_attempt is not None:
            before_attempt()
        value = probe()
        attempts += 1
        if done(value):
            return PollOutcome(value, True, attempts, clock() - start)

        elapsed = clock() - start
        if elapsed >= timeout:
            return PollOutcome(value, False, attempts, elapsed)

        sleep(min(interval, max(timeout - elapsed, 0.0)))
