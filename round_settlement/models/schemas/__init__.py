from .base import ResponseBase
from .webhook import WebhookPayload, WebhookData, WebhookAck
from .rounds import RoundRead, RoundParticipants, CurrentRound
from .settlement import (
    ReconcileTrigger,
    ScheduledJobRead,
    SettlementLogRead,
    NotificationLogRead,
    QueueStats,
)

__all__ = [
    # Base
    "ResponseBase",

    # Webhook
    "WebhookPayload",
    "WebhookData",
    "WebhookAck",

    # Rounds
    "RoundRead",
    "RoundParticipants",
    "CurrentRound",

    # Settlement
    "ReconcileTrigger",
    "ScheduledJobRead",
    "SettlementLogRead",
    "NotificationLogRead",
    "QueueStats",
]
