"""SQLAlchemy model for inbound change notifications (operator audit)."""
from __future__ import annotations
from datetime import datetime
from sqlalchemy import Integer, Text, DateTime, Boolean, String, BigInteger
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from round_settlement.database import Base


class NotificationLog(Base):
    __tablename__ = "notification_logs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    operation: Mapped[str] = mapped_column(String(16), nullable=False)
    entity: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    round_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    # Engine classification of the round, when one was made
    evaluation_state: Mapped[str | None] = mapped_column(String(32), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
