"""Time utilities (wall-clock millis, ledger seconds conversion)."""
from __future__ import annotations
import time

def now_ms() -> int:
    return int(time.time() * 1000)

def ledger_seconds_to_ms(seconds: int) -> int:
    # Ledger timestamps are integer seconds; stay in integer arithmetic.
    return int(seconds) * 1000

__all__ = ["now_ms", "ledger_seconds_to_ms"]
