"""
Indexer change-notification endpoint.
"""
import asyncio
import json
from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError
from round_settlement.api.deps import get_ingress, verify_webhook_secret
from round_settlement.models.schemas.webhook import WebhookAck, WebhookPayload
from round_settlement.services.notification_ingress import NotificationIngress
from round_settlement.utils import get_logger

router = APIRouter()
logger = get_logger(__name__)


@router.post(
    "",
    response_model=WebhookAck,
    response_model_exclude_none=True,
    summary="Receive round change notifications from the indexer",
    dependencies=[Depends(verify_webhook_secret)],
)
async def receive_webhook(
    request: Request,
    ingress: NotificationIngress = Depends(get_ingress),
) -> WebhookAck:
    """
    Acknowledge every authenticated notification with 200.

    The body is validated here rather than by FastAPI so that the secret
    check always runs first and malformed payloads are still acknowledged.
    """
    request_id = getattr(request.state, "request_id", None)
    try:
        payload = WebhookPayload.model_validate(json.loads(await request.body()))
    except (ValueError, ValidationError) as e:
        logger.warning("Malformed notification payload", error=str(e), request_id=request_id)
        return WebhookAck(success=False, message="Error processing webhook", error="Malformed payload")

    # Engine work talks to the ledger synchronously
    result = await asyncio.to_thread(ingress.handle, payload, request_id=request_id)
    return WebhookAck(**result.to_ack())
