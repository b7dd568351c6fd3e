"""
Exchange service - off-ledger reward catalogue and redemptions.

Parents publish rewards priced in whole reward tokens; children redeem
them against the tokens the reconciler has seen paid to them. Nothing
here touches the ledger.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings
from ..core.database import Database
from ..core.exceptions import NotFoundError, ValidationError
from ..core.logging import get_logger
from ..models.child import Child
from ..models.exchange import Exchange, ExchangeStatus
from ..models.family import Family
from ..models.reward import Reward


REWARD_FIELDS = ("name", "description", "image_url", "token_price", "stock", "active")


class ExchangeService:
    """Reward catalogue management and the exchange lifecycle."""

    def __init__(self, database: Database, settings: Settings, logger=None):
        self.database = database
        self.token_decimals = settings.token_decimals
        self.logger = (logger or get_logger(__name__)).bind(service="exchange_service")

    # Rewards

    async def create_reward(
        self,
        family_id: int,
        created_by: str,
        name: str,
        token_price: int,
        stock: int = 1,
        description: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> Reward:
        """Add a reward to a family's catalogue. Only the family's parent may."""
        self._validate_price_and_stock(token_price, stock)

        async with self.database.session() as session:
            family = await session.get(Family, family_id)
            if family is None:
                raise NotFoundError(f"Family {family_id} not found", {"family_id": family_id})
            if family.parent_address != created_by:
                raise ValidationError(
                    "Only the family's parent can create rewards",
                    {"family_id": family_id, "created_by": created_by},
                )

            reward = Reward(
                family_id=family_id,
                created_by=created_by,
                name=name,
                description=description,
                image_url=image_url,
                token_price=token_price,
                stock=stock,
                active=True,
            )
            session.add(reward)
            await session.flush()

        self.logger.info("Reward created", reward_id=reward.id, family_id=family_id, price=token_price)
        return reward

    async def update_reward(self, reward_id: int, **changes: Any) -> Reward:
        unknown = set(changes) - set(REWARD_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown reward fields: {sorted(unknown)}")

        async with self.database.session() as session:
            reward = await self._get_reward(session, reward_id)
            self._validate_price_and_stock(
                changes.get("token_price", reward.token_price),
                changes.get("stock", reward.stock),
            )
            for key, value in changes.items():
                setattr(reward, key, value)

        self.logger.info("Reward updated", reward_id=reward_id, fields=sorted(changes))
        return reward

    async def get_reward(self, reward_id: int) -> Reward:
        async with self.database.session() as session:
            return await self._get_reward(session, reward_id)

    async def list_family_rewards(self, family_id: int, available_only: bool = False) -> List[Reward]:
        async with self.database.session() as session:
            query = select(Reward).where(Reward.family_id == family_id).order_by(Reward.id)
            if available_only:
                query = query.where(Reward.active.is_(True), Reward.stock > 0)
            result = await session.execute(query)
            return list(result.scalars().all())

    # Exchanges

    async def request_exchange(self, child_address: str, reward_id: int, notes: Optional[str] = None) -> Exchange:
        """
        Redeem a reward for a child.

        The child must be active in the reward's family, the reward active
        and in stock, and the child's available balance must cover the
        price. Stock is reserved immediately.

        Stock is reserved by a conditional UPDATE before anything is read,
        which holds the reward row (the write lock on SQLite) until commit.
        The child row is locked as well. Any rejection rolls the
        reservation back.
        """
        async with self.database.session() as session:
            reserved = await session.execute(
                update(Reward)
                .where(Reward.id == reward_id, Reward.active.is_(True), Reward.stock > 0)
                .values(stock=Reward.stock - 1)
            )
            reward = await self._get_reward(session, reward_id)
            if reserved.rowcount == 0:
                raise ValidationError(
                    "Reward is not available",
                    {"reward_id": reward_id, "active": reward.active, "stock": reward.stock},
                )

            result = await session.execute(
                select(Child).where(Child.wallet_address == child_address).with_for_update()
            )
            child = result.scalar_one_or_none()
            if child is None:
                raise NotFoundError(f"Child {child_address} not found", {"child": child_address})
            if not child.is_active:
                raise ValidationError("Child is not active", {"child": child_address})
            if reward.family_id != child.family_id:
                raise ValidationError(
                    "Reward belongs to another family",
                    {"reward_id": reward_id, "child": child_address},
                )

            balance = await self._available_balance(session, child)
            if balance < reward.token_price:
                raise ValidationError(
                    "Insufficient token balance",
                    {"child": child_address, "available": balance, "required": reward.token_price},
                )

            exchange = Exchange(
                reward_id=reward.id,
                child_address=child_address,
                token_amount=reward.token_price,
                status=ExchangeStatus.PENDING,
                notes=notes,
            )
            session.add(exchange)
            await session.flush()

        self.logger.info(
            "Exchange requested",
            exchange_id=exchange.id,
            reward_id=reward_id,
            child=child_address,
            tokens=exchange.token_amount,
        )
        return exchange

    async def complete_exchange(self, exchange_id: int) -> Exchange:
        async with self.database.session() as session:
            exchange = await self._get_pending_exchange(session, exchange_id)
            exchange.mark_completed()

        self.logger.info("Exchange completed", exchange_id=exchange_id)
        return exchange

    async def cancel_exchange(self, exchange_id: int, notes: Optional[str] = None) -> Exchange:
        """Cancel a pending exchange and put the reward back in stock."""
        async with self.database.session() as session:
            exchange = await self._get_pending_exchange(session, exchange_id)
            exchange.mark_cancelled(notes)

            await session.execute(
                update(Reward)
                .where(Reward.id == exchange.reward_id)
                .values(stock=Reward.stock + 1)
            )

        self.logger.info("Exchange cancelled", exchange_id=exchange_id)
        return exchange

    async def get_balance(self, child_address: str) -> Dict[str, int]:
        """Whole-token balance summary for a child."""
        async with self.database.session() as session:
            child = await session.get(Child, child_address)
            if child is None:
                raise NotFoundError(f"Child {child_address} not found", {"child": child_address})
            earned = self._whole_tokens(child.total_rewards_earned)
            spent = await self._spent_tokens(session, child_address)

        return {"earned": earned, "spent": spent, "available": earned - spent}

    # Helpers

    async def _get_reward(self, session: AsyncSession, reward_id: int) -> Reward:
        reward = await session.get(Reward, reward_id)
        if reward is None:
            raise NotFoundError(f"Reward {reward_id} not found", {"reward_id": reward_id})
        return reward

    async def _get_pending_exchange(self, session: AsyncSession, exchange_id: int) -> Exchange:
        exchange = await session.get(Exchange, exchange_id)
        if exchange is None:
            raise NotFoundError(f"Exchange {exchange_id} not found", {"exchange_id": exchange_id})
        if exchange.status != ExchangeStatus.PENDING:
            raise ValidationError(
                f"Exchange {exchange_id} is {exchange.status.value}",
                {"exchange_id": exchange_id, "status": exchange.status.value},
            )
        return exchange

    async def _available_balance(self, session: AsyncSession, child: Child) -> int:
        earned = self._whole_tokens(child.total_rewards_earned)
        return earned - await self._spent_tokens(session, child.wallet_address)

    async def _spent_tokens(self, session: AsyncSession, child_address: str) -> int:
        result = await session.execute(
            select(func.coalesce(func.sum(Exchange.token_amount), 0)).where(
                Exchange.child_address == child_address,
                Exchange.status != ExchangeStatus.CANCELLED,
            )
        )
        return int(result.scalar_one())

    def _whole_tokens(self, base_units: int) -> int:
        return base_units // (10 ** self.token_decimals)

    @staticmethod
    def _validate_price_and_stock(token_price: int, stock: int) -> None:
        if token_price <= 0:
            raise ValidationError("Token price must be positive", {"token_price": token_price})
        if stock < 0:
            raise ValidationError("Stock cannot be negative", {"stock": stock})
