from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class BackoffPolicy:
    base_delay_ms: int = 1000
    max_delay_ms: int = 5000

    def delay_ms(self, attempt: int) -> int:
        return backoff_delay(attempt, self.base_delay_ms, self.max_delay_ms)


def backoff_delay(attempt: int, base_ms: int = 1000, max_ms: int = 5000) -> int:
    """Delay before the next candidate: base x attempt, capped at max_ms."""
    if attempt <= 0:
        return 0
    return min(base_ms * attempt, max_ms)
