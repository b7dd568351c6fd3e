"""
LedgerEvent model - dedup bookkeeping and replay log of applied events.
"""

from enum import Enum
from typing import Optional, Dict, Any

from sqlalchemy import (
    String, Integer, BigInteger, Text, Index, JSON, Enum as SQLEnum
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class EventType(Enum):
    """Ledger events the reconciler understands. Values are ABI event names."""

    # TaskRegistry
    TASK_CREATED = "TaskCreated"
    TASK_ASSIGNED = "TaskAssigned"
    TASK_COMPLETED = "TaskCompleted"
    TASK_APPROVED = "TaskApproved"
    TASK_REJECTED = "TaskRejected"
    REWARD_TRANSFERRED = "RewardTransferred"

    # FamilyRegistry
    FAMILY_CREATED = "FamilyCreated"
    FAMILY_UPDATED = "FamilyUpdated"
    CHILD_ADDED = "ChildAdded"
    CHILD_REMOVED = "ChildRemoved"

    # RewardToken
    TRANSFER = "Transfer"
    APPROVAL = "Approval"


class EventStatus(Enum):
    """Outcome of applying an event."""
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


class LedgerEvent(BaseModel, TimestampMixin):
    """One row per (transaction_hash, log_index) the engine has seen."""

    __tablename__ = "ledger_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    event_type: Mapped[EventType] = mapped_column(
        SQLEnum(EventType, native_enum=False, length=32),
        comment="Type of event"
    )

    transaction_hash: Mapped[str] = mapped_column(
        String(66),
        comment="Transaction hash"
    )

    log_index: Mapped[int] = mapped_column(
        Integer,
        comment="Log index within the block"
    )

    block_number: Mapped[int] = mapped_column(
        BigInteger,
        comment="Block number"
    )

    block_hash: Mapped[str] = mapped_column(
        String(66),
        comment="Block hash at ingestion time"
    )

    contract_address: Mapped[str] = mapped_column(
        String(42),
        comment="Emitting contract"
    )

    payload: Mapped[Dict[str, Any]] = mapped_column(
        JSON,
        comment="Validated event payload"
    )

    # Related entities
    task_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    family_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    wallet_address: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)

    status: Mapped[EventStatus] = mapped_column(
        SQLEnum(EventStatus, native_enum=False, length=16),
        default=EventStatus.APPLIED,
        comment="Application outcome"
    )

    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Reason the event was skipped"
    )

    __table_args__ = (
        Index("idx_ledger_event_dedup", "transaction_hash", "log_index", unique=True),
        Index("idx_ledger_event_position", "block_number", "log_index"),
        Index("idx_ledger_event_task", "task_id"),
        Index("idx_ledger_event_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<LedgerEvent(type={self.event_type.value}, block={self.block_number}, "
            f"log={self.log_index}, tx={self.transaction_hash[:10]}...)>"
        )
