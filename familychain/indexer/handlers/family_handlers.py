"""
Event handlers for FamilyRegistry events.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ...core.exceptions import StateViolation
from ...core.logging import get_logger
from ...models.child import Child
from ...models.family import Family, LifecycleStatus
from ...services.event_parser import DomainEvent
from ..core.types import ApplyContext


class FamilyHandlers:
    """
    Upserts families and children by their ledger natural keys.
    """

    def __init__(self, logger=None):
        self.logger = (logger or get_logger(__name__)).bind(service="family_handlers")

    async def handle_family_created(self, db: AsyncSession, event: DomainEvent, ctx: ApplyContext):
        """Handle FamilyCreated event."""
        data = event.payload

        family = await db.get(Family, data.family_id, populate_existing=True)
        if family is not None:
            if family.parent_address == data.parent:
                return
            raise StateViolation(
                f"Family {data.family_id} already belongs to {family.parent_address}",
                {"family_id": data.family_id, "parent": data.parent},
            )

        result = await db.execute(select(Family.id).where(Family.parent_address == data.parent))
        other_family = result.scalar_one_or_none()
        if other_family is not None:
            raise StateViolation(
                f"Parent {data.parent} already owns family {other_family}",
                {"family_id": data.family_id, "parent": data.parent, "existing_family_id": other_family},
            )

        db.add(Family(
            id=data.family_id,
            name=data.name,
            parent_address=data.parent,
            status=LifecycleStatus.ACTIVE,
            created_block=event.block_number,
        ))
        self.logger.info("Family created", family_id=data.family_id, parent=data.parent)

    async def handle_family_updated(self, db: AsyncSession, event: DomainEvent, ctx: ApplyContext):
        """Handle FamilyUpdated event."""
        data = event.payload

        family = await db.get(Family, data.family_id, populate_existing=True)
        if family is None:
            raise StateViolation(
                f"FamilyUpdated for unknown family {data.family_id}",
                {"family_id": data.family_id},
            )

        family.name = data.name
        family.updated_block = event.block_number
        self.logger.info("Family renamed", family_id=data.family_id, name=data.name)

    async def handle_child_added(self, db: AsyncSession, event: DomainEvent, ctx: ApplyContext):
        """Handle ChildAdded event. Re-adding a removed child reactivates it."""
        data = event.payload

        family = await db.get(Family, data.family_id, populate_existing=True)
        if family is None:
            raise StateViolation(
                f"ChildAdded for unknown family {data.family_id}",
                {"family_id": data.family_id, "child": data.child_address},
            )

        child = await db.get(Child, data.child_address, populate_existing=True)
        if child is None:
            db.add(Child(
                wallet_address=data.child_address,
                family_id=data.family_id,
                name=data.name,
                age=data.age,
                parent_address=family.parent_address,
                status=LifecycleStatus.ACTIVE,
                total_tasks_completed=0,
                total_rewards_earned=0,
                added_block=event.block_number,
            ))
            self.logger.info("Child added", family_id=data.family_id, child=data.child_address)
            return

        if child.is_active:
            if child.family_id == data.family_id:
                return
            raise StateViolation(
                f"Child {data.child_address} is active in family {child.family_id}",
                {"family_id": data.family_id, "child": data.child_address, "current_family_id": child.family_id},
            )

        child.family_id = data.family_id
        child.parent_address = family.parent_address
        child.name = data.name
        child.age = data.age
        child.status = LifecycleStatus.ACTIVE
        child.added_block = event.block_number
        child.removed_block = None
        self.logger.info("Child reactivated", family_id=data.family_id, child=data.child_address)

    async def handle_child_removed(self, db: AsyncSession, event: DomainEvent, ctx: ApplyContext):
        """Handle ChildRemoved event (soft delete)."""
        data = event.payload

        child = await db.get(Child, data.child_address, populate_existing=True)
        if child is None or child.family_id != data.family_id:
            raise StateViolation(
                f"ChildRemoved for child {data.child_address} not in family {data.family_id}",
                {"family_id": data.family_id, "child": data.child_address},
            )
        if not child.is_active:
            return

        child.status = LifecycleStatus.DEACTIVATED
        child.removed_block = event.block_number
        self.logger.info("Child removed", family_id=data.family_id, child=data.child_address)
