"""Settlement job payload structure and job lifecycle states."""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional


class JobStatus(str, enum.Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"  # dead-lettered


PENDING_STATUSES = frozenset({JobStatus.WAITING, JobStatus.DELAYED})


def settlement_key(round_id: int) -> str:
    return f"settle-round:{round_id}"


@dataclass(slots=True)
class SettlementJob:
    round_id: int
    correlation_id: Optional[str] = None


__all__ = ["JobStatus", "PENDING_STATUSES", "SettlementJob", "settlement_key"]
