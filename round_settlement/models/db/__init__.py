from .enums import SettlementOutcome, EvaluationState, NotificationOperation
from .settlement_logs import SettlementLog
from .notification_logs import NotificationLog

__all__ = [
    "SettlementOutcome",
    "EvaluationState",
    "NotificationOperation",
    "SettlementLog",
    "NotificationLog",
]
