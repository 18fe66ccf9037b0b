"""Operator audit trail: settlement attempts and inbound notifications.

Writes are best effort. The audit store must never change the outcome of a
settlement or an acknowledgement, so failures here are logged and dropped.
"""
from __future__ import annotations

from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError

from round_settlement import database
from round_settlement.models.db import NotificationLog, SettlementLog, SettlementOutcome
from round_settlement.utils import get_logger

logger = get_logger(__name__)


class AuditLog:
    def record_settlement(
        self,
        round_id: int,
        outcome: SettlementOutcome,
        *,
        job_id: Optional[str] = None,
        attempt: Optional[int] = None,
        tx_hash: Optional[str] = None,
        winners: Optional[list[str]] = None,
        error: Optional[str] = None,
    ) -> None:
        self._add(
            SettlementLog(
                round_id=round_id,
                outcome=outcome,
                job_id=job_id,
                attempt=attempt,
                tx_hash=tx_hash,
                winners=winners,
                error_message=error,
            ),
            round_id=round_id,
        )

    def record_notification(
        self,
        operation: str,
        entity: Optional[str],
        *,
        round_id: Optional[int] = None,
        evaluation_state: Optional[str] = None,
        success: bool = True,
        error: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> None:
        self._add(
            NotificationLog(
                operation=operation,
                entity=entity,
                round_id=round_id,
                evaluation_state=evaluation_state,
                success=success,
                error_message=error,
                request_id=request_id,
            ),
            round_id=round_id,
        )

    def _add(self, row: Any, *, round_id: Optional[int]) -> None:
        # Resolved per call so tests can rebind database.SessionLocal
        session = database.SessionLocal()
        try:
            session.add(row)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("Audit write failed", table=row.__tablename__, round_id=round_id, error=str(e))
        finally:
            session.close()


__all__ = ["AuditLog"]
