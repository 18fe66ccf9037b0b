"""
Pydantic schemas for round reads.
"""
from typing import List, Optional
from pydantic import BaseModel, Field


class RoundRead(BaseModel):
    id: int
    start_time: int = Field(description="Ledger seconds")
    end_time: int = Field(description="Ledger seconds")
    end_time_ms: int
    completed: bool
    # Token amounts exceed JSON-safe integers
    prize_pool: str
    donations: str
    request_id: str


class RoundParticipants(BaseModel):
    round_id: int
    addresses: List[str]
    count: int


class CurrentRound(BaseModel):
    round_id: int
    round: Optional[RoundRead] = None
