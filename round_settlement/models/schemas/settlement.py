"""
Pydantic schemas for settlement operations and audit reads.
"""
from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, ConfigDict, Field
from round_settlement.models.db.enums import SettlementOutcome


class ReconcileTrigger(BaseModel):
    """Manual reconciliation request; without a round id the startup sweep is re-run."""
    round_id: Optional[int] = Field(None, ge=0, description="Round to reconcile, or None for current + previous")


class ScheduledJobRead(BaseModel):
    job_id: str
    key: str
    status: str
    round_id: Optional[int] = None
    attempt: int
    max_attempts: int
    enqueued_at: int
    scheduled_at: int
    ready_at: int
    last_error: Optional[str] = None
    last_backoff_ms: Optional[int] = None
    finished_at: Optional[int] = None


class SettlementLogRead(BaseModel):
    id: int
    round_id: int
    outcome: SettlementOutcome
    job_id: Optional[str]
    attempt: Optional[int]
    tx_hash: Optional[str]
    winners: Optional[List[str]]
    error_message: Optional[str]
    attempted_at: datetime

    model_config = ConfigDict(from_attributes=True)


class NotificationLogRead(BaseModel):
    id: int
    operation: str
    entity: Optional[str]
    round_id: Optional[int]
    evaluation_state: Optional[str]
    success: bool
    error_message: Optional[str]
    request_id: Optional[str]
    received_at: datetime

    model_config = ConfigDict(from_attributes=True)


class QueueStats(BaseModel):
    backend: str
    depth: int
    details: Dict[str, Any] = Field(default_factory=dict)
