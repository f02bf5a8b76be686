from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """Exponential wait between failed job attempts.

    ``delay(n) = base_seconds * 2 ** (n - 1)``. Total over positive integers;
    enforcing the retry ceiling is the caller's job. No jitter.
    """

    base_seconds: float = 1.0

    def delay(self, attempt: int) -> float:
        if attempt < 1:
            raise ValueError(f"attempt must be a positive integer, got {attempt}")
        return self.base_seconds * 2 ** (attempt - 1)
