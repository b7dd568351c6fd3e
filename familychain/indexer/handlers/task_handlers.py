"""
Event handlers for TaskRegistry events.

Tasks move along created -> assigned -> completed -> approved|rejected.
Re-delivery of the transition that produced the current state is a no-op;
anything else that would move a task sideways or backwards is a
StateViolation and leaves the task untouched.
"""

from sqlalchemy.ext.asyncio import AsyncSession

from ...core.exceptions import StateViolation
from ...core.logging import get_logger
from ...models.child import Child
from ...models.task import Task, TaskStatus, TaskSettlementStatus
from ...services.event_parser import DomainEvent
from ..core.types import ApplyContext


class TaskHandlers:
    """
    Handles task lifecycle events.
    """

    def __init__(self, settlements, logger=None):
        self.settlements = settlements
        self.logger = (logger or get_logger(__name__)).bind(service="task_handlers")

    async def _load(self, db: AsyncSession, event: DomainEvent) -> Task:
        task = await db.get(Task, event.payload.task_id, populate_existing=True)
        if task is None:
            raise StateViolation(
                f"{event.event_type.value} for unknown task {event.payload.task_id}",
                {"task_id": event.payload.task_id, "event": str(event)},
            )
        return task

    @staticmethod
    def _violation(task: Task, event: DomainEvent, expected: TaskStatus) -> StateViolation:
        return StateViolation(
            f"{event.event_type.value} not allowed for task {task.id} in status {task.status.value}",
            {
                "task_id": task.id,
                "status": task.status.value,
                "expected": expected.value,
                "event": str(event),
            },
        )

    async def handle_task_created(self, db: AsyncSession, event: DomainEvent, ctx: ApplyContext):
        """Handle TaskCreated event."""
        data = event.payload

        task = await db.get(Task, data.task_id, populate_existing=True)
        if task is not None:
            if task.creator_address != data.creator:
                raise StateViolation(
                    f"Task {data.task_id} already created by {task.creator_address}",
                    {"task_id": data.task_id, "creator": data.creator},
                )
            self.logger.debug("Task already exists", task_id=data.task_id)
            return

        db.add(Task(
            id=data.task_id,
            creator_address=data.creator,
            assigned_child_address=None,
            title=data.title,
            description=None,
            reward_amount=data.reward,
            status=TaskStatus.CREATED,
            settlement_status=TaskSettlementStatus.NONE,
            escrow_released=False,
            created_block=event.block_number,
        ))
        ctx.created_task_ids.append(data.task_id)

        self.logger.info("Task created", task_id=data.task_id, creator=data.creator, reward=data.reward)

    async def handle_task_assigned(self, db: AsyncSession, event: DomainEvent, ctx: ApplyContext):
        """Handle TaskAssigned event."""
        data = event.payload
        task = await self._load(db, event)

        if task.status == TaskStatus.ASSIGNED and task.assigned_child_address == data.assigned_to:
            return
        if task.status != TaskStatus.CREATED:
            raise self._violation(task, event, TaskStatus.CREATED)

        task.status = TaskStatus.ASSIGNED
        task.assigned_child_address = data.assigned_to
        task.assigned_block = event.block_number

        self.logger.info("Task assigned", task_id=task.id, child=data.assigned_to)

    async def handle_task_completed(self, db: AsyncSession, event: DomainEvent, ctx: ApplyContext):
        """Handle TaskCompleted event."""
        task = await self._load(db, event)

        if task.status == TaskStatus.COMPLETED:
            return
        if task.status != TaskStatus.ASSIGNED:
            raise self._violation(task, event, TaskStatus.ASSIGNED)

        task.status = TaskStatus.COMPLETED
        task.completed_block = event.block_number

        self.logger.info("Task completed", task_id=task.id, completed_by=event.payload.completed_by)

    async def handle_task_approved(self, db: AsyncSession, event: DomainEvent, ctx: ApplyContext):
        """Handle TaskApproved event: resolve the task and owe its reward."""
        task = await self._load(db, event)

        if task.status == TaskStatus.APPROVED:
            self.logger.debug("Task already approved", task_id=task.id)
            return
        if task.status != TaskStatus.COMPLETED:
            raise self._violation(task, event, TaskStatus.COMPLETED)

        task.status = TaskStatus.APPROVED
        task.resolved_block = event.block_number

        child = await db.get(Child, task.assigned_child_address, populate_existing=True)
        if child is not None:
            child.total_tasks_completed += 1
        else:
            self.logger.warning(
                "Approved task assigned to unknown child",
                task_id=task.id,
                child=task.assigned_child_address,
            )

        _, needs_dispatch = await self.settlements.enqueue(db, task)
        if needs_dispatch:
            ctx.settlements_to_dispatch.append(task.id)

        self.logger.info("Task approved", task_id=task.id, approved_by=event.payload.approved_by)

    async def handle_task_rejected(self, db: AsyncSession, event: DomainEvent, ctx: ApplyContext):
        """Handle TaskRejected event. Terminal, nothing is paid."""
        task = await self._load(db, event)

        if task.status == TaskStatus.REJECTED:
            return
        if task.status != TaskStatus.COMPLETED:
            raise self._violation(task, event, TaskStatus.COMPLETED)

        task.status = TaskStatus.REJECTED
        task.resolved_block = event.block_number

        self.logger.info("Task rejected", task_id=task.id, rejected_by=event.payload.rejected_by)

    async def handle_reward_transferred(self, db: AsyncSession, event: DomainEvent, ctx: ApplyContext):
        """Handle RewardTransferred event: the registry released the escrow."""
        task = await self._load(db, event)

        if task.status != TaskStatus.APPROVED:
            raise self._violation(task, event, TaskStatus.APPROVED)
        if task.escrow_released:
            return

        task.escrow_released = True
        self.logger.info(
            "Task escrow released",
            task_id=task.id,
            recipient=event.payload.recipient,
            amount=event.payload.amount,
        )
