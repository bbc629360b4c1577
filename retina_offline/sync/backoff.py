"""Exponential backoff with multiplicative jitter for push retries."""

from __future__ import annotations

import random
from dataclasses import dataclass, field


@dataclass
class BackoffPolicy:
    """Retry delay schedule.

    ``delay(n) = min(cap, base * multiplier**(n - 1) * (1 + U(0, jitter_ratio)))``

    With ``jitter_ratio <= multiplier - 1`` the jittered delay of attempt
    ``n + 1`` is never smaller than that of attempt ``n``, so the schedule is
    non-decreasing until it reaches the cap, while independent items (and
    independent clients) still spread out instead of retrying in lockstep.
    """

    base: float = 1.0
    cap: float = 60.0
    multiplier: float = 2.0
    jitter_ratio: float = 0.5
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def __post_init__(self) -> None:
        if self.base <= 0 or self.cap < self.base:
            raise ValueError("backoff requires 0 < base <= cap")
        if self.multiplier < 1:
            raise ValueError("backoff multiplier must be >= 1")
        if not 0 <= self.jitter_ratio <= self.multiplier - 1:
            raise ValueError("jitter_ratio must be within [0, multiplier - 1]")

    def delay(self, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt`` (1-based)."""
        if attempt < 1:
            return 0.0
        exponent = min(attempt - 1, 64)
        raw = self.base * self.multiplier**exponent
        jitter = 1.0 + self.rng.uniform(0.0, self.jitter_ratio)
        return min(self.cap, raw * jitter)
