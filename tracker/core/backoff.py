import random
from dataclasses import dataclass
from typing import Iterator

from tracker.core.config import Settings


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Capped exponential backoff shared by every retry loop in the core.

    `delays()` yields the pause before each retry, so a policy with
    max_attempts=N yields N-1 delays.
    """

    max_attempts: int = 5
    base_delay: float = 0.05
    max_delay: float = 1.0
    multiplier: float = 2.0
    jitter: bool = True

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")

    @classmethod
    def from_settings(cls, settings: Settings) -> "BackoffPolicy":
        return cls(
            max_attempts=settings.lock_max_attempts,
            base_delay=settings.lock_base_delay,
            max_delay=settings.lock_max_delay,
        )

    def delay_for(self, retry: int) -> float:
        """Delay before retry number `retry` (0-based)."""
        delay = min(self.base_delay * (self.multiplier**retry), self.max_delay)
        if self.jitter:
            # full jitter spreads out editors that collided on the same lock
            return random.uniform(0, delay)
        return delay

    def delays(self) -> Iterator[float]:
        for retry in range(self.max_attempts - 1):
            yield self.delay_for(retry)
