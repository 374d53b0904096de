"""
Exponential backoff policy shared by the worker re-arm path and the webhook
delivery loop.
"""

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential backoff with an upper bound and optional jitter.

    The delay before retry ``n`` (1-based, counting the attempt that just
    failed) is ``initial_delay * multiplier ** (n - 1)`` capped at
    ``max_delay``. Jitter varies the result by up to +/-25%.
    """

    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 300.0
    jitter: bool = False

    def delay_for(self, attempt: int) -> float:
        """Get the delay in seconds to wait after ``attempt`` failed."""
        exponent = max(0, attempt - 1)
        base = min(self.initial_delay * (self.multiplier ** exponent), self.max_delay)

        if not self.jitter:
            return base

        spread = base * 0.25
        return max(0.0, base + random.uniform(-spread, spread))

    def total_delay(self, max_attempts: int) -> float:
        """Upper bound on the time spent waiting across ``max_attempts`` attempts."""
        worst = sum(
            min(self.initial_delay * (self.multiplier ** (n - 1)), self.max_delay)
            for n in range(1, max_attempts)
        )
        return worst * 1.25 if self.jitter else worst
