"""
Checkpoint model - the durable ingestion cursor.
"""

from sqlalchemy import BigInteger, Integer
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class Checkpoint(BaseModel, TimestampMixin):
    """Highest ledger position whose events are fully applied, per chain."""

    __tablename__ = "checkpoints"

    chain_id: Mapped[int] = mapped_column(
        BigInteger,
        primary_key=True,
        autoincrement=False
    )

    last_block: Mapped[int] = mapped_column(BigInteger)

    last_log_index: Mapped[int] = mapped_column(Integer)

    def __repr__(self) -> str:
        return f"<Checkpoint(chain={self.chain_id}, block={self.last_block}, log={self.last_log_index})>"
