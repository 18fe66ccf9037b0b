"""SQLAlchemy model for settlement attempt logs (operator audit)."""
from __future__ import annotations
from datetime import datetime
from sqlalchemy import Integer, Text, DateTime, Enum, JSON, String, BigInteger
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from round_settlement.database import Base

from .enums import SettlementOutcome


class SettlementLog(Base):
    __tablename__ = "settlement_logs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    # Ledger round ids are sequential counters; 64 bits is ample
    round_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    outcome: Mapped[SettlementOutcome] = mapped_column(Enum(SettlementOutcome), nullable=False, index=True)
    job_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    attempt: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String(80), nullable=True)
    winners: Mapped[list | None] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
