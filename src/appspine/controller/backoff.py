"""Exponential backoff for requeues.

Delay = min(base_delay * (multiplier ** attempt), max_delay) ± jitter

Example:
    >>> backoff = ExponentialBackoff(base_delay=0.5, max_delay=300.0)
    >>> [backoff.next_delay(n) for n in range(4)]
    [0.5, 1.0, 2.0, 4.0]
"""

from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass
class ExponentialBackoff:
    """Exponential backoff with optional jitter.

    Attributes:
        base_delay: Delay after the first failure, in seconds
        max_delay: Cap applied before jitter
        multiplier: Growth factor per consecutive failure
        jitter: Add randomness so many keys don't retry in lockstep
        jitter_range: Jitter as a fraction of the delay (0.0-1.0)
    """

    base_delay: float = 0.5
    max_delay: float = 300.0
    multiplier: float = 2.0
    jitter: bool = False
    jitter_range: float = 0.25

    def next_delay(self, attempt: int, max_delay: float | None = None) -> float:
        """Delay before retry number *attempt* (zero-based).

        *max_delay*, when given, caps tighter than the configured maximum.
        """
        cap = self.max_delay if max_delay is None else min(self.max_delay, max_delay)
        # Bounded exponent; the cap wins long before this.
        exponent = min(attempt, 64)
        delay = min(self.base_delay * (self.multiplier**exponent), cap)

        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay += random.uniform(-jitter_amount, jitter_amount)
            delay = max(0.0, delay)

        return delay
