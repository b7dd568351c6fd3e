"""
Checkpoint tracker - durable ingestion cursor per chain.
"""

from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.database import Database
from ..core.exceptions import CheckpointPersistenceError, CheckpointRegressionError
from ..core.logging import get_logger
from ..indexer.core.types import LedgerPosition
from ..models.checkpoint import Checkpoint


class CheckpointTracker:
    """Loads and stores the (chain_id, last_block, last_log_index) cursor."""

    def __init__(self, database: Database, logger=None):
        self.database = database
        self.logger = (logger or get_logger(__name__)).bind(service="checkpoint_tracker")

    async def load(self, chain_id: int) -> Optional[LedgerPosition]:
        """Last fully applied position, or None on a fresh database."""
        async with self.database.session() as session:
            checkpoint = await session.get(Checkpoint, chain_id)
            if checkpoint is None:
                return None
            return LedgerPosition(checkpoint.last_block, checkpoint.last_log_index)

    async def store(
        self,
        session: AsyncSession,
        chain_id: int,
        position: LedgerPosition,
        allow_rewind: bool = False,
    ) -> None:
        """
        Upsert the checkpoint inside the caller's transaction and commit it.

        The commit makes the batch's read-model changes and the new cursor
        durable together. Any database failure here is fatal.
        """
        try:
            checkpoint = await session.get(Checkpoint, chain_id, populate_existing=True)
            if checkpoint is None:
                session.add(Checkpoint(
                    chain_id=chain_id,
                    last_block=position.block_number,
                    last_log_index=position.log_index,
                ))
            else:
                current = LedgerPosition(checkpoint.last_block, checkpoint.last_log_index)
                if position < current and not allow_rewind:
                    raise CheckpointRegressionError(
                        f"Checkpoint for chain {chain_id} would move back from {current} to {position}",
                        {"chain_id": chain_id, "current": str(current), "requested": str(position)},
                    )
                checkpoint.last_block = position.block_number
                checkpoint.last_log_index = position.log_index

            await session.commit()

        except SQLAlchemyError as e:
            self.logger.critical(
                "Checkpoint persistence failed",
                chain_id=chain_id,
                position=str(position),
                error=str(e),
            )
            raise CheckpointPersistenceError(
                f"Failed to store checkpoint for chain {chain_id}: {e}",
                {"chain_id": chain_id, "position": str(position)},
            ) from e

        self.logger.debug("Checkpoint stored", chain_id=chain_id, position=str(position))
