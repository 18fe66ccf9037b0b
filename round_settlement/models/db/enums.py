"""Central Enum definitions for settlement domain states.

These replace scattered string literals to ensure consistency across
DB models, schemas, and business logic.
"""
from __future__ import annotations
import enum


class SettlementOutcome(str, enum.Enum):
    SETTLED = "SETTLED"
    ALREADY_COMPLETED = "ALREADY_COMPLETED"
    NO_ENTRIES = "NO_ENTRIES"
    # Audit-only: attempt raised and was handed back to the queue
    FAILED = "FAILED"


class EvaluationState(str, enum.Enum):
    SETTLED = "SETTLED"
    OVERDUE = "OVERDUE"
    SCHEDULED_ALREADY = "SCHEDULED_ALREADY"
    NEEDS_SCHEDULING = "NEEDS_SCHEDULING"


class NotificationOperation(str, enum.Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
