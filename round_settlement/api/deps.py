"""
Dependencies for database sessions, shared collaborators and webhook authentication.
"""
from typing import Any, Generator, Optional
from fastapi import Depends, HTTPException, status, Request
from sqlalchemy.orm import Session
from round_settlement import database
from round_settlement.config import WEBHOOK_SETTINGS
from round_settlement.errors import InvalidCredential
from round_settlement.ledger.reader import LedgerReader
from round_settlement.services.notification_ingress import NotificationIngress, verify_secret
from round_settlement.services.reconciliation_engine import ReconciliationEngine
from round_settlement.utils import get_logger

logger = get_logger(__name__)


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.
    Ensures proper session lifecycle management with automatic cleanup.
    """
    db = database.SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error("Database session error", error=str(e), exc_info=True)
        db.rollback()
        raise
    finally:
        db.close()


def _state(request: Request, name: str) -> Any:
    value = getattr(request.app.state, name, None)
    if value is None:
        logger.warning("Service component not available", component=name)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name.replace('_', ' ').capitalize()} not available",
        )
    return value


def get_ledger_reader(request: Request) -> LedgerReader:
    return _state(request, "ledger_reader")


def get_engine(request: Request) -> ReconciliationEngine:
    return _state(request, "reconciliation_engine")


def get_queue(request: Request) -> Any:
    return _state(request, "settlement_queue")


def get_ingress(request: Request) -> NotificationIngress:
    return _state(request, "notification_ingress")


def verify_webhook_secret(request: Request, ingress: NotificationIngress = Depends(get_ingress)) -> None:
    """
    Reject the notification before any processing when the shared secret is wrong.

    Raises:
        HTTPException: 401 on a missing or mismatched secret
    """
    header = str(WEBHOOK_SETTINGS.get("secret_header", "goldsky-webhook-secret"))
    provided: Optional[str] = request.headers.get(header)
    try:
        verify_secret(provided, WEBHOOK_SETTINGS.get("secret"))
    except InvalidCredential as e:
        ingress.reject(e, request_id=getattr(request.state, "request_id", None))
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
