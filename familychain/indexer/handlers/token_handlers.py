"""
Event handlers for RewardToken events.
"""

from sqlalchemy.ext.asyncio import AsyncSession

from ...core.logging import get_logger
from ...models.child import Child
from ...services.event_parser import DomainEvent
from ..core.types import ApplyContext


class TokenHandlers:
    """
    Closes the settlement loop: a Transfer emitted by one of our settlement
    transactions confirms it and credits the child.
    """

    def __init__(self, settlements, logger=None):
        self.settlements = settlements
        self.logger = (logger or get_logger(__name__)).bind(service="token_handlers")

    async def handle_transfer(self, db: AsyncSession, event: DomainEvent, ctx: ApplyContext):
        """Handle Transfer event."""
        data = event.payload

        settlement = await self.settlements.find_by_tx_hash(db, event.transaction_hash)
        if settlement is None:
            return

        confirmed = await self.settlements.confirm(
            db,
            settlement,
            recipient=data.to_address,
            amount=data.value,
            block_number=event.block_number,
        )
        if not confirmed:
            return

        child = await db.get(Child, data.to_address, populate_existing=True)
        if child is not None:
            child.total_rewards_earned += data.value
        else:
            self.logger.warning("Reward paid to unknown child", child=data.to_address, task_id=settlement.task_id)

    async def handle_approval(self, db: AsyncSession, event: DomainEvent, ctx: ApplyContext):
        """Allowances do not affect the read model."""
        return None
