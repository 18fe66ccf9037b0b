"""Ledger-side value types (read-only mirrors of on-chain state)."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from round_settlement.utils.time import ledger_seconds_to_ms


@dataclass(slots=True, frozen=True)
class Round:
    """A round as stored on the ledger. Integers are kept unbounded."""
    id: int
    start_time: int  # ledger seconds
    end_time: int    # ledger seconds
    completed: bool
    prize_pool: int = 0
    donations: int = 0
    request_id: int = 0

    @property
    def end_time_ms(self) -> int:
        return ledger_seconds_to_ms(self.end_time)

    @property
    def exists(self) -> bool:
        # Unknown ids come back as an all-zero struct
        return not (self.start_time == 0 and self.end_time == 0)

    @classmethod
    def from_contract(cls, round_id: int, raw: Sequence[Any]) -> "Round":
        start_time, end_time, prize_pool, donations, completed, request_id = raw
        return cls(
            id=int(round_id),
            start_time=int(start_time),
            end_time=int(end_time),
            completed=bool(completed),
            prize_pool=int(prize_pool),
            donations=int(donations),
            request_id=int(request_id),
        )

    def snapshot(self) -> "RoundSnapshot":
        return RoundSnapshot(round_id=self.id, completed=self.completed, end_time=self.end_time)

    def to_dict(self) -> dict[str, Any]:
        # Large integers as strings so JSON consumers never round them
        return {
            "id": self.id,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "end_time_ms": self.end_time_ms,
            "completed": self.completed,
            "prize_pool": str(self.prize_pool),
            "donations": str(self.donations),
            "request_id": str(self.request_id),
        }


@dataclass(slots=True, frozen=True)
class RoundSnapshot:
    """The minimum the reconciliation decision needs: id, completed flag, end time."""
    round_id: int
    completed: bool
    end_time: int  # ledger seconds

    @property
    def end_time_ms(self) -> int:
        return ledger_seconds_to_ms(self.end_time)


__all__ = ["Round", "RoundSnapshot"]
