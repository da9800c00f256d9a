"""
Backoff between lock acquisition attempts.
"""

import random
from dataclasses import dataclass


@dataclass
class BackoffPolicy:
    """
    Exponential backoff with jitter for contended locks.

    delay = min(initial_delay * base^attempt, max_delay), scaled by a random
    factor in [0.75, 1.25] when jitter is on. Jitter keeps workers that lost
    the same conditional write from retrying in lockstep.

    Examples:
        >>> policy = BackoffPolicy(initial_delay=0.05, max_delay=1.0)
        >>> policy.get_delay(0) <= 1.0
        True
    """

    # First wait after a failed attempt (seconds)
    initial_delay: float = 0.05

    # Upper bound for any single wait (seconds)
    max_delay: float = 1.0

    exponential_base: float = 2.0

    jitter: bool = True

    def __post_init__(self):
        if self.initial_delay <= 0:
            raise ValueError("initial_delay must be > 0")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        if self.exponential_base < 1.0:
            raise ValueError("exponential_base must be >= 1.0")

    def get_delay(self, attempt: int) -> float:
        """
        Delay before the next attempt.

        Args:
            attempt: Number of failed attempts so far (0-indexed)
        """
        delay = self.initial_delay * (self.exponential_base**attempt)
        if self.jitter:
            delay *= random.uniform(0.75, 1.25)
        # Capped after jitter so max_delay is a hard upper bound
        return min(delay, self.max_delay)


DEFAULT_BACKOFF_POLICY = BackoffPolicy()
