"""
Reconnect Backoff Policies

Fixed delay is the default. Exponential backoff with full jitter is
available for fleets where many agents reconnect at once.
"""

import random
from dataclasses import dataclass, field
from enum import Enum


class BackoffKind(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass
class BackoffPolicy:
    """
    Computes the delay before reconnect attempt N (1-based).

    Attributes:
        kind: fixed or exponential
        base_delay: Delay for fixed mode, first delay for exponential mode
        max_delay: Upper bound for exponential mode
        jitter: Randomize exponential delays in [base_delay, computed]
    """
    kind: BackoffKind = BackoffKind.FIXED
    base_delay: float = 5.0
    max_delay: float = 60.0
    jitter: bool = True
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def delay(self, attempt: int) -> float:
        if self.kind == BackoffKind.FIXED:
            return self.base_delay

        # Capped so 2 ** exponent stays a representable float
        exponent = min(max(attempt - 1, 0), 32)
        computed = min(self.base_delay * (2 ** exponent), self.max_delay)
        if self.jitter and computed > self.base_delay:
            return self.rng.uniform(self.base_delay, computed)
        return computed
