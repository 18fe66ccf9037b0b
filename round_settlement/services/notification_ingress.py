"""Indexer change-notification ingress.

The indexer pushes row changes for the round entity. Authentication happens
before anything else; after that every notification is acknowledged with a
success flag, because a non-2xx answer only makes the indexer redeliver the
same change and the engine is idempotent anyway.
"""
from __future__ import annotations

import hmac
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from round_settlement.config import WEBHOOK_SETTINGS
from round_settlement.errors import InvalidCredential
from round_settlement.ledger.types import RoundSnapshot
from round_settlement.models.db.enums import NotificationOperation
from round_settlement.models.schemas.webhook import WebhookPayload
from round_settlement.services.audit import AuditLog
from round_settlement.services.reconciliation_engine import ReconciliationDecision, ReconciliationEngine
from round_settlement.utils import get_logger, log_business_event

logger = get_logger(__name__)

_ID_FIELDS = ("id", "raffleId", "raffle_id", "roundId", "round_id")
_END_TIME_FIELDS = ("endTime", "end_time")


def verify_secret(provided: Optional[str], expected: Optional[str]) -> None:
    if not expected:
        # Misconfiguration: refuse everything rather than accept unauthenticated input
        logger.error("Webhook secret is not configured; rejecting notification")
        raise InvalidCredential("Webhook secret not configured")
    if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning("Webhook authentication failed", secret_present=bool(provided))
        raise InvalidCredential("Invalid webhook secret")


def _to_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"Field {name} must be numeric, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise ValueError(f"Field {name} must be numeric, got {value!r}")


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    raise ValueError(f"Field completed must be boolean, got {value!r}")


def _first(state: Dict[str, Any], names: tuple[str, ...]) -> tuple[str, Any]:
    for name in names:
        if state.get(name) is not None:
            return name, state[name]
    raise ValueError(f"Round state missing field {names[0]}")


def parse_round_snapshot(state: Dict[str, Any]) -> RoundSnapshot:
    """Build a snapshot from an indexer row; big integers may arrive as strings."""
    id_name, raw_id = _first(state, _ID_FIELDS)
    end_name, raw_end = _first(state, _END_TIME_FIELDS)
    return RoundSnapshot(
        round_id=_to_int(raw_id, id_name),
        completed=_to_bool(state.get("completed", False)),
        end_time=_to_int(raw_end, end_name),
    )


@dataclass
class IngressResult:
    success: bool
    message: str
    error: Optional[str] = None
    round_id: Optional[int] = None
    decisions: list[ReconciliationDecision] = field(default_factory=list)

    def to_ack(self) -> Dict[str, Any]:
        ack: Dict[str, Any] = {"success": self.success, "message": self.message}
        if self.error is not None:
            ack["error"] = self.error
        return ack


class NotificationIngress:
    def __init__(
        self,
        engine: ReconciliationEngine,
        *,
        audit: Optional[AuditLog] = None,
        round_entity: Optional[str] = None,
    ):
        self.engine = engine
        self.audit = audit
        self.round_entity = round_entity or WEBHOOK_SETTINGS.get("round_entity", "raffle")

    def handle(self, payload: WebhookPayload, *, request_id: Optional[str] = None) -> IngressResult:
        op = payload.op.upper()
        logger.info("Notification received", op=op, entity=payload.entity, request_id=request_id)
        try:
            result = self._dispatch(op, payload, request_id)
        except Exception as e:
            # Acknowledge regardless; redelivery would hit the same failure
            logger.error(
                "Notification processing failed",
                op=op,
                entity=payload.entity,
                request_id=request_id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            result = IngressResult(
                success=False,
                message="Error processing webhook",
                error=str(e),
                round_id=self._round_id_hint(payload),
            )
        self._record(op, payload.entity, result, request_id)
        return result

    def reject(self, error: InvalidCredential, *, request_id: Optional[str] = None) -> None:
        log_business_event(event_type="notification_rejected", details={"reason": str(error)}, request_id=request_id)
        if self.audit is not None:
            self.audit.record_notification(
                "UNAUTHENTICATED", None, success=False, error=str(error), request_id=request_id
            )

    def _dispatch(self, op: str, payload: WebhookPayload, request_id: Optional[str]) -> IngressResult:
        if payload.entity.lower() != self.round_entity.lower():
            logger.info("Ignoring notification for non-round entity", entity=payload.entity)
            return IngressResult(success=True, message=f"Entity {payload.entity} ignored")

        if op == NotificationOperation.DELETE.value:
            logger.info("Ignoring round delete notification", request_id=request_id)
            return IngressResult(success=True, message="Delete ignored")

        if op not in (NotificationOperation.INSERT.value, NotificationOperation.UPDATE.value):
            logger.warning("Unknown notification operation", op=op)
            return IngressResult(success=True, message=f"Operation {op} ignored")

        state = payload.new or payload.old
        if not state:
            raise ValueError("Notification carries no round state")
        snapshot = parse_round_snapshot(state)
        decisions = self.engine.reconcile_notification(snapshot, correlation_id=request_id)
        return IngressResult(
            success=True,
            message="Webhook processed successfully",
            round_id=snapshot.round_id,
            decisions=decisions,
        )

    @staticmethod
    def _round_id_hint(payload: WebhookPayload) -> Optional[int]:
        state = payload.new or payload.old or {}
        try:
            return _to_int(_first(state, _ID_FIELDS)[1], "id")
        except ValueError:
            return None

    def _record(self, op: str, entity: str, result: IngressResult, request_id: Optional[str]) -> None:
        if self.audit is None:
            return
        self.audit.record_notification(
            op,
            entity,
            round_id=result.round_id,
            evaluation_state=result.decisions[0].state.value if result.decisions else None,
            success=result.success,
            error=result.error,
            request_id=request_id,
        )


__all__ = ["NotificationIngress", "IngressResult", "verify_secret", "parse_round_snapshot"]
