from __future__ import annotations

import random
from typing import Optional


class ExponentialBackoff:
    """
    Exponential backoff with jitter:
      delay(n) = min(cap, base * 2**(n-1)) * U(1 - jitter, 1)

    Attempts are 1-based. Each delay depends only on the attempt number,
    never on why the previous attempt failed.
    """
    def __init__(
        self,
        base: float,
        cap: float,
        jitter: float = 0.5,
        max_attempts: Optional[int] = None,
        rng: Optional[random.Random] = None,
    ):
        if base <= 0 or cap <= 0:
            raise ValueError("Backoff base and cap must be positive.")
        self.base = float(base)
        self.cap = float(cap)
        self.jitter = min(1.0, max(0.0, float(jitter)))
        self.max_attempts = max_attempts
        self._rng = rng or random.Random()

    def delay(self, attempt: int) -> float:
        n = min(max(1, attempt), 64)
        raw = min(self.cap, self.base * (2 ** (n - 1)))
        if not self.jitter:
            return raw
        return raw * self._rng.uniform(1.0 - self.jitter, 1.0)

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts is not None and attempt >= self.max_attempts


def backoff_from_settings(settings, max_attempts: Optional[int]) -> ExponentialBackoff:
    return ExponentialBackoff(
        base=settings.backoff_base_seconds,
        cap=settings.backoff_max_seconds,
        jitter=settings.backoff_jitter,
        max_attempts=max_attempts,
    )
