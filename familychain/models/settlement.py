"""
Settlement model - reward payout bookkeeping, one row per approved task.

Settlements are not ledger projections: they survive reorg rollbacks so a
payout is never attempted twice for the same task.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Integer, String, Text, Index, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin, TokenAmount
from .task import TaskSettlementStatus


class SettlementStatus(Enum):
    QUEUED = "queued"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    SETTLEMENT_PENDING = "settlement_pending"
    CANCELLED = "cancelled"

    @property
    def task_status(self) -> TaskSettlementStatus:
        return _TASK_STATUS[self]


_TASK_STATUS = {
    SettlementStatus.QUEUED: TaskSettlementStatus.QUEUED,
    SettlementStatus.SUBMITTING: TaskSettlementStatus.SUBMITTED,
    SettlementStatus.SUBMITTED: TaskSettlementStatus.SUBMITTED,
    SettlementStatus.CONFIRMED: TaskSettlementStatus.SETTLED,
    SettlementStatus.SETTLEMENT_PENDING: TaskSettlementStatus.SETTLEMENT_PENDING,
    SettlementStatus.CANCELLED: TaskSettlementStatus.NONE,
}


class Settlement(BaseModel, TimestampMixin):
    """Reward payout for a single task."""

    __tablename__ = "settlements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    task_id: Mapped[int] = mapped_column(
        BigInteger,
        unique=True,
        comment="Ledger task id"
    )

    recipient_address: Mapped[str] = mapped_column(String(42))

    amount: Mapped[int] = mapped_column(
        TokenAmount,
        comment="Reward token base units"
    )

    method: Mapped[str] = mapped_column(
        String(16),
        comment="RewardToken function used (mint or transfer)"
    )

    status: Mapped[SettlementStatus] = mapped_column(
        SQLEnum(SettlementStatus, native_enum=False, length=32),
        default=SettlementStatus.QUEUED
    )

    attempts: Mapped[int] = mapped_column(Integer, default=0)

    nonce: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)

    raw_transaction: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Signed transaction, re-broadcast on retry"
    )

    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmed_block: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (
        Index("idx_settlement_status", "status"),
        Index("idx_settlement_tx_hash", "tx_hash"),
    )

    def __repr__(self) -> str:
        return f"<Settlement(task={self.task_id}, status={self.status.value}, tx={self.tx_hash})>"
