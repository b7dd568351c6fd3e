"""
Reward model - off-ledger catalogue of things children can buy with tokens.
"""

from typing import Optional

from sqlalchemy import BigInteger, Boolean, Integer, String, Text, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class Reward(BaseModel, TimestampMixin):
    """A family-scoped reward priced in whole reward tokens."""

    __tablename__ = "rewards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Not a foreign key: family projections are rebuilt on reorg rollback
    family_id: Mapped[int] = mapped_column(
        BigInteger,
        comment="Ledger family id"
    )

    name: Mapped[str] = mapped_column(String(255))

    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    image_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    token_price: Mapped[int] = mapped_column(
        Integer,
        comment="Price in whole reward tokens"
    )

    stock: Mapped[int] = mapped_column(
        Integer,
        default=1,
        comment="Units left"
    )

    active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_by: Mapped[str] = mapped_column(
        String(42),
        comment="Parent wallet that created the reward"
    )

    __table_args__ = (
        Index("idx_reward_family_active", "family_id", "active"),
    )

    def __repr__(self) -> str:
        return f"<Reward(id={self.id}, name={self.name!r}, price={self.token_price}, stock={self.stock})>"

    @property
    def is_available(self) -> bool:
        return self.active and self.stock > 0
