# propflow/core/utils/backoff.py
from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass
class RetryBackoff:
    """Jittered exponential backoff for transient infrastructure errors."""

    initial_ms: int
    max_ms: int
    max_attempts: int  # 0 means unlimited
    attempts: int = 0

    def reset(self) -> None:
        self.attempts = 0

    def can_retry(self) -> bool:
        match self.max_attempts:
            case 0:
                return True
            case _:
                return self.attempts < self.max_attempts

    def next_delay_seconds(self) -> float:
        self.attempts += 1
        exponent = max(0, self.attempts - 1)
        base_ms = min(self.max_ms, int(self.initial_ms * (2**exponent)))
        jitter_range = base_ms * 0.25
        delay_ms = base_ms + random.uniform(-jitter_range, jitter_range)
        return max(0.1, delay_ms / 1000.0)
