"""
Exchange model - a child's redemption of a reward.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import BigInteger, DateTime, ForeignKey, Integer, String, Text, Index, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin, utcnow


class ExchangeStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Exchange(BaseModel, TimestampMixin):
    """Reward redemption request."""

    __tablename__ = "exchanges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    reward_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("rewards.id"),
        comment="Redeemed reward"
    )

    child_address: Mapped[str] = mapped_column(
        String(42),
        comment="Redeeming child wallet"
    )

    token_amount: Mapped[int] = mapped_column(
        BigInteger,
        comment="Price paid in whole reward tokens"
    )

    status: Mapped[ExchangeStatus] = mapped_column(
        SQLEnum(ExchangeStatus, native_enum=False, length=16),
        default=ExchangeStatus.PENDING
    )

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )

    __table_args__ = (
        Index("idx_exchange_child_status", "child_address", "status"),
    )

    def __repr__(self) -> str:
        return f"<Exchange(id={self.id}, reward={self.reward_id}, child={self.child_address}, status={self.status.value})>"

    def mark_completed(self) -> None:
        self.status = ExchangeStatus.COMPLETED
        self.completed_at = utcnow()

    def mark_cancelled(self, notes: Optional[str] = None) -> None:
        self.status = ExchangeStatus.CANCELLED
        if notes:
            self.notes = notes
