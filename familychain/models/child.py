"""
Child model - a child wallet attached to a family.
"""

from typing import Optional

from sqlalchemy import BigInteger, Integer, String, ForeignKey, Index, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin, TokenAmount
from .family import LifecycleStatus


class Child(BaseModel, TimestampMixin):
    """Projection of a ledger child, keyed by wallet address."""

    __tablename__ = "children"

    wallet_address: Mapped[str] = mapped_column(
        String(42),
        primary_key=True,
        comment="Child wallet address (checksum)"
    )

    family_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("families.id"),
        comment="Owning family"
    )

    name: Mapped[str] = mapped_column(
        String(255),
        comment="Child display name"
    )

    age: Mapped[int] = mapped_column(
        Integer,
        comment="Age as registered on the ledger"
    )

    parent_address: Mapped[str] = mapped_column(
        String(42),
        comment="Parent wallet of the owning family"
    )

    status: Mapped[LifecycleStatus] = mapped_column(
        SQLEnum(LifecycleStatus, native_enum=False, length=16),
        default=LifecycleStatus.ACTIVE,
        comment="Lifecycle status"
    )

    # Counters derived from task and token events
    total_tasks_completed: Mapped[int] = mapped_column(
        Integer,
        default=0,
        comment="Number of approved tasks"
    )

    total_rewards_earned: Mapped[int] = mapped_column(
        TokenAmount,
        default=0,
        comment="Confirmed reward token base units"
    )

    added_block: Mapped[int] = mapped_column(
        BigInteger,
        comment="Block of the last ChildAdded event"
    )

    removed_block: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        nullable=True,
        comment="Block of the last ChildRemoved event"
    )

    __table_args__ = (
        Index("idx_child_family", "family_id"),
        Index("idx_child_parent", "parent_address"),
    )

    def __repr__(self) -> str:
        return f"<Child(wallet={self.wallet_address}, family={self.family_id}, status={self.status.value})>"

    @property
    def is_active(self) -> bool:
        return self.status == LifecycleStatus.ACTIVE
