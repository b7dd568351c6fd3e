"""
Task model - lifecycle projection of TaskRegistry tasks.
"""

from enum import Enum
from typing import Optional

from sqlalchemy import BigInteger, Boolean, String, Text, Index, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin, TokenAmount


class TaskStatus(Enum):
    """Task lifecycle on the ledger."""
    CREATED = "created"
    ASSIGNED = "assigned"
    COMPLETED = "completed"
    APPROVED = "approved"
    REJECTED = "rejected"


class TaskSettlementStatus(Enum):
    """Reward settlement progress as seen from the task."""
    NONE = "none"
    QUEUED = "queued"
    SUBMITTED = "submitted"
    SETTLED = "settled"
    SETTLEMENT_PENDING = "settlement_pending"


class Task(BaseModel, TimestampMixin):
    """Projection of a ledger task, keyed by the ledger task id."""

    __tablename__ = "tasks"

    id: Mapped[int] = mapped_column(
        BigInteger,
        primary_key=True,
        autoincrement=False,
        comment="Ledger task id"
    )

    creator_address: Mapped[str] = mapped_column(
        String(42),
        comment="Parent wallet that created the task"
    )

    assigned_child_address: Mapped[Optional[str]] = mapped_column(
        String(42),
        nullable=True,
        comment="Child wallet the task is assigned to"
    )

    title: Mapped[str] = mapped_column(
        Text,
        comment="Task title"
    )

    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Description read from getTask"
    )

    reward_amount: Mapped[int] = mapped_column(
        TokenAmount,
        comment="Reward in ledger base units"
    )

    status: Mapped[TaskStatus] = mapped_column(
        SQLEnum(TaskStatus, native_enum=False, length=16),
        default=TaskStatus.CREATED,
        comment="Lifecycle status"
    )

    settlement_status: Mapped[TaskSettlementStatus] = mapped_column(
        SQLEnum(TaskSettlementStatus, native_enum=False, length=32),
        default=TaskSettlementStatus.NONE,
        comment="Reward settlement progress"
    )

    escrow_released: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        comment="RewardTransferred observed for this task"
    )

    created_block: Mapped[int] = mapped_column(BigInteger)
    assigned_block: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    completed_block: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    resolved_block: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        nullable=True,
        comment="Block of the approval or rejection"
    )

    __table_args__ = (
        Index("idx_task_creator", "creator_address"),
        Index("idx_task_child", "assigned_child_address"),
        Index("idx_task_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Task(id={self.id}, status={self.status.value}, child={self.assigned_child_address})>"
