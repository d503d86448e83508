"""Timing helpers shared by the polling layers."""

from .polling import PollOutcome, poll_until
from .retry import compute_backoff, sleep_before_retry

__all__ = ["PollOutcome", "poll_until", "compute_backoff", "sleep_before_retry"]
