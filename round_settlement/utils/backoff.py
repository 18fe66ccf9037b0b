"""Exponential backoff helpers with optional jitter."""
from __future__ import annotations

import random
from dataclasses import dataclass, field, asdict
from typing import Any, Optional

from round_settlement.config import BACKOFF_POLICY


def compute_backoff_ms(attempt: int, *, base_ms: Optional[int] = None, factor: Optional[int] = None, max_ms: Optional[int] = None, jitter_pct: Optional[float] = None) -> int:
    """Delay before retrying after ``attempt`` failed executions (1-based).

    ``base_ms * factor ** (attempt - 1)``: with the defaults that is 1000ms after
    the first failure and 2000ms after the second.
    """
    if attempt < 1:
        attempt = 1
    base_ms = int(base_ms if base_ms is not None else BACKOFF_POLICY["base_ms"])
    factor = int(factor if factor is not None else BACKOFF_POLICY["factor"])
    max_ms = int(max_ms if max_ms is not None else BACKOFF_POLICY["max_ms"])
    jitter_pct = float(jitter_pct if jitter_pct is not None else BACKOFF_POLICY["jitter_pct"])

    delay = base_ms * (factor ** (attempt - 1))
    delay = min(delay, max_ms)
    if jitter_pct > 0:
        jitter_amount = delay * jitter_pct
        delay = int(random.uniform(delay - jitter_amount, delay + jitter_amount))
    return max(int(delay), 0)


@dataclass(slots=True)
class BackoffPolicy:
    """Per-job retry schedule, persisted alongside the job."""
    base_ms: int = field(default_factory=lambda: int(BACKOFF_POLICY["base_ms"]))
    factor: int = field(default_factory=lambda: int(BACKOFF_POLICY["factor"]))
    max_ms: int = field(default_factory=lambda: int(BACKOFF_POLICY["max_ms"]))
    jitter_pct: float = field(default_factory=lambda: float(BACKOFF_POLICY["jitter_pct"]))

    def delay_ms(self, attempt: int) -> int:
        return compute_backoff_ms(
            attempt,
            base_ms=self.base_ms,
            factor=self.factor,
            max_ms=self.max_ms,
            jitter_pct=self.jitter_pct,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "BackoffPolicy":
        if not data:
            return cls()
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


__all__ = ["compute_backoff_ms", "BackoffPolicy"]
