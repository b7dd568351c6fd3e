"""
Family model - a household registered on the FamilyRegistry contract.
"""

from enum import Enum
from typing import Optional

from sqlalchemy import BigInteger, String, Index, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class LifecycleStatus(Enum):
    """Soft-delete state shared by families and children."""
    ACTIVE = "active"
    DEACTIVATED = "deactivated"


class Family(BaseModel, TimestampMixin):
    """Projection of a ledger family, keyed by the ledger family id."""

    __tablename__ = "families"

    id: Mapped[int] = mapped_column(
        BigInteger,
        primary_key=True,
        autoincrement=False,
        comment="Ledger family id"
    )

    name: Mapped[str] = mapped_column(
        String(255),
        comment="Family display name"
    )

    parent_address: Mapped[str] = mapped_column(
        String(42),
        unique=True,
        comment="Parent wallet address (checksum)"
    )

    status: Mapped[LifecycleStatus] = mapped_column(
        SQLEnum(LifecycleStatus, native_enum=False, length=16),
        default=LifecycleStatus.ACTIVE,
        comment="Lifecycle status"
    )

    created_block: Mapped[int] = mapped_column(
        BigInteger,
        comment="Block of the FamilyCreated event"
    )

    updated_block: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        nullable=True,
        comment="Block of the last FamilyUpdated event"
    )

    __table_args__ = (
        Index("idx_family_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Family(id={self.id}, name={self.name!r}, parent={self.parent_address})>"

    @property
    def is_active(self) -> bool:
        return self.status == LifecycleStatus.ACTIVE
