"""
Read model store - query surface over the reconciled projections.

Writes to the ledger projections go through the reconciliation engine only;
this module reads.
"""

from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import select

from ..core.database import Database
from ..core.exceptions import TransientRPCError, ValidationError
from ..core.logging import get_logger
from ..indexer.core.types import LedgerPosition
from ..models.checkpoint import Checkpoint
from ..models.child import Child
from ..models.exchange import Exchange
from ..models.family import Family, LifecycleStatus
from ..models.reward import Reward
from ..models.settlement import Settlement, SettlementStatus
from ..models.task import Task, TaskStatus


@dataclass
class ReadModelLag:
    """How far the read model trails the ledger."""
    checkpoint: Optional[LedgerPosition]
    head: Optional[int]
    blocks_behind: Optional[int]

    def to_dict(self) -> dict:
        return {
            "checkpoint": str(self.checkpoint) if self.checkpoint else None,
            "head": self.head,
            "blocks_behind": self.blocks_behind,
        }


class ReadModelStore:
    """Query-by-id and by parent/child/family for every projected entity."""

    def __init__(self, database: Database, adapter=None, logger=None):
        self.database = database
        self.adapter = adapter
        self.logger = (logger or get_logger(__name__)).bind(service="read_model")

    # Families and children

    async def get_family(self, family_id: int) -> Optional[Family]:
        async with self.database.session() as session:
            return await session.get(Family, family_id)

    async def get_family_by_parent(self, parent_address: str) -> Optional[Family]:
        async with self.database.session() as session:
            result = await session.execute(
                select(Family).where(Family.parent_address == parent_address)
            )
            return result.scalar_one_or_none()

    async def list_children(
        self,
        family_id: Optional[int] = None,
        parent_address: Optional[str] = None,
        active_only: bool = False,
    ) -> List[Child]:
        """Children of a family, selected by family id or by parent wallet."""
        if family_id is None and parent_address is None:
            raise ValidationError("list_children needs family_id or parent_address")

        query = select(Child).order_by(Child.added_block, Child.wallet_address)
        if family_id is not None:
            query = query.where(Child.family_id == family_id)
        if parent_address is not None:
            query = query.where(Child.parent_address == parent_address)
        if active_only:
            query = query.where(Child.status == LifecycleStatus.ACTIVE)

        async with self.database.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def get_child(self, wallet_address: str) -> Optional[Child]:
        async with self.database.session() as session:
            return await session.get(Child, wallet_address)

    # Tasks

    async def get_task(self, task_id: int) -> Optional[Task]:
        async with self.database.session() as session:
            return await session.get(Task, task_id)

    async def list_tasks_by_creator(self, creator_address: str) -> List[Task]:
        return await self._list_tasks(Task.creator_address == creator_address)

    async def list_tasks_by_child(self, child_address: str) -> List[Task]:
        return await self._list_tasks(Task.assigned_child_address == child_address)

    async def list_tasks_by_status(self, status: TaskStatus, limit: int = 100) -> List[Task]:
        return await self._list_tasks(Task.status == status, limit=limit)

    async def _list_tasks(self, criterion, limit: Optional[int] = None) -> List[Task]:
        query = select(Task).where(criterion).order_by(Task.id)
        if limit is not None:
            query = query.limit(limit)
        async with self.database.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    # Settlements

    async def get_settlement(self, task_id: int) -> Optional[Settlement]:
        async with self.database.session() as session:
            result = await session.execute(
                select(Settlement).where(Settlement.task_id == task_id)
            )
            return result.scalar_one_or_none()

    async def list_settlements(self, status: Optional[SettlementStatus] = None) -> List[Settlement]:
        query = select(Settlement).order_by(Settlement.task_id)
        if status is not None:
            query = query.where(Settlement.status == status)
        async with self.database.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    # Off-ledger data

    async def list_rewards(self, family_id: int, active_only: bool = True) -> List[Reward]:
        query = select(Reward).where(Reward.family_id == family_id).order_by(Reward.token_price, Reward.id)
        if active_only:
            query = query.where(Reward.active.is_(True))
        async with self.database.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def list_exchanges(self, child_address: str) -> List[Exchange]:
        async with self.database.session() as session:
            result = await session.execute(
                select(Exchange)
                .where(Exchange.child_address == child_address)
                .order_by(Exchange.created_at.desc(), Exchange.id.desc())
            )
            return list(result.scalars().all())

    # Lag

    async def get_lag(self, chain_id: int) -> ReadModelLag:
        """Checkpoint vs ledger head. head is None when the ledger is unreachable."""
        async with self.database.session() as session:
            checkpoint = await session.get(Checkpoint, chain_id)
            position = (
                LedgerPosition(checkpoint.last_block, checkpoint.last_log_index)
                if checkpoint is not None else None
            )

        head = None
        if self.adapter is not None:
            try:
                head = await self.adapter.get_block_number()
            except TransientRPCError as e:
                self.logger.warning("Ledger head unavailable for lag", error=e.message)

        blocks_behind = None
        if head is not None:
            applied = position.block_number if position is not None else -1
            blocks_behind = max(head - applied, 0)

        return ReadModelLag(checkpoint=position, head=head, blocks_behind=blocks_behind)
