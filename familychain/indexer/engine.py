"""
Reconciliation engine - applies DomainEvents to the read model.

Each event is applied inside a savepoint together with its ledger_events
row, so the state transition and the dedup bookkeeping commit or vanish
together. The caller owns the outer transaction and commits it with the
checkpoint that certifies the batch.
"""

from typing import Awaitable, Callable, Dict, Iterable

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import DuplicateEvent, StateViolation
from ..core.logging import get_logger
from ..models.child import Child
from ..models.event import EventStatus, EventType, LedgerEvent
from ..models.family import Family
from ..models.settlement import Settlement, SettlementStatus
from ..models.task import Task
from ..services.event_parser import DomainEvent
from .core.types import ApplyContext, BatchResult
from .handlers import FamilyHandlers, TaskHandlers, TokenHandlers


Handler = Callable[[AsyncSession, DomainEvent, ApplyContext], Awaitable[None]]


class ReconciliationEngine:
    """Applies ordered ledger events under the task/family/child state machine."""

    def __init__(self, settlements, logger=None):
        self.settlements = settlements
        self.logger = (logger or get_logger(__name__)).bind(service="reconciliation_engine")

        self.task_handlers = TaskHandlers(settlements, logger=logger)
        self.family_handlers = FamilyHandlers(logger=logger)
        self.token_handlers = TokenHandlers(settlements, logger=logger)

        self.event_handlers: Dict[EventType, Handler] = {}
        self._setup_event_handlers()

    def _setup_event_handlers(self) -> None:
        self.event_handlers = {
            EventType.TASK_CREATED: self.task_handlers.handle_task_created,
            EventType.TASK_ASSIGNED: self.task_handlers.handle_task_assigned,
            EventType.TASK_COMPLETED: self.task_handlers.handle_task_completed,
            EventType.TASK_APPROVED: self.task_handlers.handle_task_approved,
            EventType.TASK_REJECTED: self.task_handlers.handle_task_rejected,
            EventType.REWARD_TRANSFERRED: self.task_handlers.handle_reward_transferred,
            EventType.FAMILY_CREATED: self.family_handlers.handle_family_created,
            EventType.FAMILY_UPDATED: self.family_handlers.handle_family_updated,
            EventType.CHILD_ADDED: self.family_handlers.handle_child_added,
            EventType.CHILD_REMOVED: self.family_handlers.handle_child_removed,
            EventType.TRANSFER: self.token_handlers.handle_transfer,
            EventType.APPROVAL: self.token_handlers.handle_approval,
        }

    async def apply_batch(self, session: AsyncSession, events: Iterable[DomainEvent]) -> BatchResult:
        """
        Apply ordered events in the caller's transaction.

        StateViolations and unexpected handler errors skip the event and
        record it; database errors propagate so the whole batch is retried.
        """
        result = BatchResult()
        for event in events:
            try:
                await self._ensure_unrecorded(session, event)
            except DuplicateEvent as e:
                result.duplicates += 1
                self.logger.debug("Duplicate event ignored", ledger_event=str(event), **e.details)
                continue

            ctx = ApplyContext()
            status = await self._apply_one(session, event, ctx)

            if status == EventStatus.APPLIED:
                result.applied += 1
                result.settlements_to_dispatch.extend(ctx.settlements_to_dispatch)
                result.created_task_ids.extend(ctx.created_task_ids)
            elif status == EventStatus.SKIPPED:
                result.skipped += 1
            else:
                result.failed += 1

        return result

    async def _ensure_unrecorded(self, session: AsyncSession, event: DomainEvent) -> None:
        found = await session.execute(
            select(LedgerEvent.id).where(
                LedgerEvent.transaction_hash == event.transaction_hash,
                LedgerEvent.log_index == event.log_index,
            )
        )
        if found.scalar_one_or_none() is not None:
            raise DuplicateEvent(event.transaction_hash, event.log_index)

    async def _apply_one(self, session: AsyncSession, event: DomainEvent, ctx: ApplyContext) -> EventStatus:
        handler = self.event_handlers.get(event.event_type)
        try:
            async with session.begin_nested():
                if handler is not None:
                    await handler(session, event, ctx)
                session.add(LedgerEvent(**event.to_record(), status=EventStatus.APPLIED))
            return EventStatus.APPLIED

        except StateViolation as e:
            self.logger.error(
                "State violation, event skipped",
                alert="data_integrity",
                ledger_event=str(event),
                transaction_hash=event.transaction_hash,
                error=e.message,
                details=e.details,
            )
            await self._record_skipped(session, event, EventStatus.SKIPPED, e.message)
            return EventStatus.SKIPPED

        except SQLAlchemyError:
            raise

        except Exception as e:
            self.logger.exception(
                "Event handler failed, event skipped",
                ledger_event=str(event),
                transaction_hash=event.transaction_hash,
            )
            await self._record_skipped(session, event, EventStatus.FAILED, f"{type(e).__name__}: {e}")
            return EventStatus.FAILED

    async def _record_skipped(self, session: AsyncSession, event: DomainEvent, status: EventStatus, reason: str) -> None:
        async with session.begin_nested():
            session.add(LedgerEvent(**event.to_record(), status=status, error_message=reason))

    async def rollback(self, session: AsyncSession, ancestor_block: int) -> BatchResult:
        """
        Rewind the read model to the state after ancestor_block.

        Events above the ancestor are forgotten, the ledger projections are
        dropped and rebuilt by replaying the remaining event log in order.
        Off-ledger data (settlements, rewards, exchanges) is kept; task
        descriptions fetched from the ledger are carried over.
        """
        self.logger.warning("Rolling back read model", ancestor_block=ancestor_block)

        descriptions = dict(
            (await session.execute(
                select(Task.id, Task.description).where(Task.description.is_not(None))
            )).all()
        )

        dropped = await session.execute(
            delete(LedgerEvent).where(LedgerEvent.block_number > ancestor_block)
        )

        await session.execute(delete(Child))
        await session.execute(delete(Task))
        await session.execute(delete(Family))

        # Confirmations are re-derived from the replayed Transfer events
        await session.execute(
            update(Settlement)
            .where(Settlement.status == SettlementStatus.CONFIRMED)
            .values(status=SettlementStatus.SUBMITTED, confirmed_block=None, confirmed_at=None)
        )
        session.expunge_all()

        result = await self.replay(session)

        if descriptions:
            tasks = await session.execute(select(Task).where(Task.id.in_(list(descriptions))))
            for task in tasks.scalars():
                task.description = descriptions[task.id]

        cancelled, resubmit = await self.settlements.reconcile_after_rollback(session)
        result.settlements_to_dispatch.extend(resubmit)

        self.logger.warning(
            "Rollback complete",
            ancestor_block=ancestor_block,
            events_dropped=dropped.rowcount,
            events_replayed=result.applied,
            settlements_cancelled=len(cancelled),
            settlements_resubmitted=len(resubmit),
        )
        return result

    async def replay(self, session: AsyncSession) -> BatchResult:
        """Re-apply every recorded event in ledger order."""
        records = await session.execute(
            select(LedgerEvent)
            .where(LedgerEvent.status == EventStatus.APPLIED)
            .order_by(LedgerEvent.block_number, LedgerEvent.log_index)
        )

        result = BatchResult()
        for record in records.scalars().all():
            event = DomainEvent.from_record(record)
            handler = self.event_handlers.get(event.event_type)
            ctx = ApplyContext()
            try:
                async with session.begin_nested():
                    if handler is not None:
                        await handler(session, event, ctx)
            except StateViolation as e:
                self.logger.error(
                    "State violation during replay",
                    alert="data_integrity",
                    ledger_event=str(event),
                    error=e.message,
                )
                record.status = EventStatus.SKIPPED
                record.error_message = e.message
                result.skipped += 1
                continue

            result.applied += 1
            result.settlements_to_dispatch.extend(ctx.settlements_to_dispatch)

        return result
