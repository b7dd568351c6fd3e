"""
Test the reconciliation engine: task state machine, family/child upserts,
idempotence and rollback.
"""

import pytest
from sqlalchemy import select

from familychain.indexer.engine import ReconciliationEngine
from familychain.models import (
    Child,
    EventStatus,
    EventType,
    Family,
    LedgerEvent,
    LifecycleStatus,
    Settlement,
    SettlementStatus,
    Task,
    TaskSettlementStatus,
    TaskStatus,
)

from .conftest import (
    CHILD,
    OTHER_CHILD,
    OTHER_PARENT,
    PARENT,
    TOKEN,
    ZERO_ADDRESS,
    domain_event,
    family_setup,
    read_state,
    task_lifecycle,
)


@pytest.fixture
def engine(settlements):
    return ReconciliationEngine(settlements)


async def apply(database, engine, events):
    async with database.session() as session:
        return await engine.apply_batch(session, events)


async def event_records(database):
    async with database.session() as session:
        result = await session.execute(select(LedgerEvent).order_by(LedgerEvent.block_number, LedgerEvent.log_index))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_full_task_lifecycle(database, engine):
    """Test created -> assigned -> completed -> approved with settlement queued."""
    result = await apply(database, engine, family_setup() + task_lifecycle(1, 2))

    assert result.applied == 6
    assert result.skipped == 0
    assert result.settlements_to_dispatch == [1]
    assert result.created_task_ids == [1]

    async with database.session() as session:
        task = await session.get(Task, 1)
        assert task.status == TaskStatus.APPROVED
        assert task.assigned_child_address == CHILD
        assert task.created_block == 2
        assert task.assigned_block == 3
        assert task.completed_block == 4
        assert task.resolved_block == 5
        assert task.settlement_status == TaskSettlementStatus.QUEUED

        child = await session.get(Child, CHILD)
        assert child.total_tasks_completed == 1
        assert child.total_rewards_earned == 0

        settlement = (await session.execute(select(Settlement))).scalar_one()
        assert settlement.task_id == 1
        assert settlement.recipient_address == CHILD
        assert settlement.amount == 5 * TOKEN
        assert settlement.status == SettlementStatus.QUEUED


@pytest.mark.asyncio
async def test_assigned_before_created_is_state_violation(database, engine):
    """Test an event for an unknown task is skipped and recorded."""
    event = domain_event(EventType.TASK_ASSIGNED, 3, task_id=99, assigned_to=CHILD)

    result = await apply(database, engine, [event])

    assert result.applied == 0
    assert result.skipped == 1
    async with database.session() as session:
        assert await session.get(Task, 99) is None

    records = await event_records(database)
    assert len(records) == 1
    assert records[0].status == EventStatus.SKIPPED
    assert "unknown task" in records[0].error_message


@pytest.mark.asyncio
async def test_invalid_transitions_leave_task_unchanged(database, engine):
    events = task_lifecycle(1, 2, approve=False)
    await apply(database, engine, events)

    late_approval = domain_event(EventType.TASK_APPROVED, 9, task_id=1, approved_by=PARENT)
    reassignment = domain_event(EventType.TASK_ASSIGNED, 9, 1, task_id=1, assigned_to=OTHER_CHILD)
    result = await apply(database, engine, [late_approval, reassignment])

    assert result.skipped == 2
    async with database.session() as session:
        task = await session.get(Task, 1)
        assert task.status == TaskStatus.REJECTED
        assert task.assigned_child_address == CHILD
        assert (await session.execute(select(Settlement))).first() is None


@pytest.mark.asyncio
async def test_completed_requires_assignment(database, engine):
    created = domain_event(EventType.TASK_CREATED, 1, task_id=5, creator=PARENT, title="Read", reward=TOKEN)
    completed = domain_event(EventType.TASK_COMPLETED, 2, task_id=5, completed_by=CHILD)

    result = await apply(database, engine, [created, completed])

    assert result.applied == 1
    assert result.skipped == 1
    async with database.session() as session:
        assert (await session.get(Task, 5)).status == TaskStatus.CREATED


@pytest.mark.asyncio
async def test_replayed_batch_is_idempotent(database, engine):
    """Test applying the same events twice yields the same state."""
    events = family_setup() + task_lifecycle(1, 2)
    await apply(database, engine, events)
    before = await read_state(database)

    result = await apply(database, engine, events)

    assert result.applied == 0
    assert result.duplicates == len(events)
    assert await read_state(database) == before


@pytest.mark.asyncio
async def test_duplicate_approval_settles_once(database, engine):
    """Test a second approval from another transaction queues nothing new."""
    await apply(database, engine, family_setup() + task_lifecycle(1, 2))

    second_approval = domain_event(EventType.TASK_APPROVED, 8, task_id=1, approved_by=PARENT)
    result = await apply(database, engine, [second_approval])

    assert result.applied == 1
    assert result.settlements_to_dispatch == []
    async with database.session() as session:
        settlements = (await session.execute(select(Settlement))).scalars().all()
        assert len(settlements) == 1
        assert (await session.get(Child, CHILD)).total_tasks_completed == 1


@pytest.mark.asyncio
async def test_zero_reward_task_is_not_settled(database, engine):
    result = await apply(database, engine, family_setup() + task_lifecycle(3, 2, reward=0))

    assert result.settlements_to_dispatch == []
    async with database.session() as session:
        assert (await session.execute(select(Settlement))).first() is None
        assert (await session.get(Task, 3)).settlement_status == TaskSettlementStatus.NONE


@pytest.mark.asyncio
async def test_task_created_with_different_creator_is_violation(database, engine):
    first = domain_event(EventType.TASK_CREATED, 1, task_id=1, creator=PARENT, title="A", reward=TOKEN)
    clash = domain_event(EventType.TASK_CREATED, 2, task_id=1, creator=OTHER_PARENT, title="B", reward=TOKEN)

    result = await apply(database, engine, [first, clash])

    assert result.skipped == 1
    async with database.session() as session:
        task = await session.get(Task, 1)
        assert task.creator_address == PARENT
        assert task.title == "A"


@pytest.mark.asyncio
async def test_family_and_children_upserts(database, engine):
    """Test rename, soft delete and reactivation of a child."""
    events = family_setup() + [
        domain_event(EventType.FAMILY_UPDATED, 2, family_id=1, name="The Smiths"),
        domain_event(EventType.CHILD_REMOVED, 3, family_id=1, child_address=CHILD),
    ]
    await apply(database, engine, events)

    async with database.session() as session:
        family = await session.get(Family, 1)
        assert family.name == "The Smiths"
        assert family.updated_block == 2
        child = await session.get(Child, CHILD)
        assert child.status == LifecycleStatus.DEACTIVATED
        assert child.removed_block == 3

    readded = domain_event(EventType.CHILD_ADDED, 4, family_id=1, child_address=CHILD, name="Alice", age=10)
    await apply(database, engine, [readded])

    async with database.session() as session:
        child = await session.get(Child, CHILD)
        assert child.status == LifecycleStatus.ACTIVE
        assert child.age == 10
        assert child.removed_block is None


@pytest.mark.asyncio
async def test_child_cannot_join_second_family_while_active(database, engine):
    events = family_setup() + family_setup(block=2, family_id=2, parent=OTHER_PARENT)

    result = await apply(database, engine, events)

    assert result.skipped == 1
    async with database.session() as session:
        assert (await session.get(Child, CHILD)).family_id == 1
        assert (await session.get(Family, 2)) is not None


@pytest.mark.asyncio
async def test_parent_owns_one_family(database, engine):
    events = family_setup() + [
        domain_event(EventType.FAMILY_CREATED, 2, family_id=2, parent=PARENT, name="Again"),
    ]

    result = await apply(database, engine, events)

    assert result.skipped == 1
    async with database.session() as session:
        assert await session.get(Family, 2) is None


@pytest.mark.asyncio
async def test_reward_transferred_requires_approval(database, engine):
    events = task_lifecycle(1, 2, approve=False) + [
        domain_event(EventType.REWARD_TRANSFERRED, 7, task_id=1, recipient=CHILD, amount=5 * TOKEN),
    ]

    result = await apply(database, engine, events)

    assert result.skipped == 1


@pytest.mark.asyncio
async def test_settlement_transfer_confirms_and_credits_child(database, engine):
    await apply(database, engine, family_setup() + task_lifecycle(1, 2))

    async with database.session() as session:
        settlement = (await session.execute(select(Settlement))).scalar_one()
        settlement.status = SettlementStatus.SUBMITTED
        settlement.tx_hash = "0x" + "ee" * 32

    transfer = domain_event(
        EventType.TRANSFER, 9, tx_hash="0x" + "ee" * 32,
        from_address=ZERO_ADDRESS, to_address=CHILD, value=5 * TOKEN,
    )
    await apply(database, engine, [transfer])

    async with database.session() as session:
        settlement = (await session.execute(select(Settlement))).scalar_one()
        assert settlement.status == SettlementStatus.CONFIRMED
        assert settlement.confirmed_block == 9
        assert (await session.get(Task, 1)).settlement_status == TaskSettlementStatus.SETTLED
        assert (await session.get(Child, CHILD)).total_rewards_earned == 5 * TOKEN


@pytest.mark.asyncio
async def test_unrelated_transfer_is_ignored(database, engine):
    await apply(database, engine, family_setup())

    transfer = domain_event(EventType.TRANSFER, 5, from_address=PARENT, to_address=CHILD, value=TOKEN)
    result = await apply(database, engine, [transfer])

    assert result.applied == 1
    async with database.session() as session:
        assert (await session.get(Child, CHILD)).total_rewards_earned == 0


@pytest.mark.asyncio
async def test_rollback_matches_fresh_application(database, engine, settings, chain):
    """Test rolling back to a block equals applying only the events up to it."""
    kept = family_setup() + task_lifecycle(1, 2, approve=False)
    dropped = task_lifecycle(2, 10) + [
        domain_event(EventType.CHILD_REMOVED, 15, family_id=1, child_address=CHILD),
    ]
    await apply(database, engine, kept + dropped)

    async with database.session() as session:
        result = await engine.rollback(session, 9)

    assert result.applied == len(kept)
    state = await read_state(database)
    assert [task[0] for task in state["tasks"]] == [1]
    assert state["children"][0][2] == LifecycleStatus.ACTIVE
    # The approval of task 2 was dropped, so its queued payout is cancelled
    assert state["settlements"] == [(2, SettlementStatus.CANCELLED, 5 * TOKEN)]

    records = await event_records(database)
    assert max(record.block_number for record in records) == 5


@pytest.mark.asyncio
async def test_rollback_then_reapproval_revives_settlement(database, engine):
    await apply(database, engine, family_setup() + task_lifecycle(1, 2))
    async with database.session() as session:
        await engine.rollback(session, 4)

    approval = domain_event(EventType.TASK_APPROVED, 6, task_id=1, approved_by=PARENT)
    result = await apply(database, engine, [approval])

    assert result.settlements_to_dispatch == [1]
    async with database.session() as session:
        settlement = (await session.execute(select(Settlement))).scalar_one()
        assert settlement.status == SettlementStatus.QUEUED


@pytest.mark.asyncio
async def test_rollback_dropping_transfer_resubmits_payout(database, engine):
    """Test a confirmed payout whose Transfer is rolled back goes out again."""
    await apply(database, engine, family_setup() + task_lifecycle(1, 2))

    async with database.session() as session:
        settlement = (await session.execute(select(Settlement))).scalar_one()
        settlement.status = SettlementStatus.SUBMITTED
        settlement.tx_hash = "0x" + "ee" * 32
        settlement.raw_transaction = "0xf86c"

    transfer = domain_event(
        EventType.TRANSFER, 9, tx_hash="0x" + "ee" * 32,
        from_address=ZERO_ADDRESS, to_address=CHILD, value=5 * TOKEN,
    )
    await apply(database, engine, [transfer])

    async with database.session() as session:
        result = await engine.rollback(session, 8)

    assert result.settlements_to_dispatch == [1]
    async with database.session() as session:
        settlement = (await session.execute(select(Settlement))).scalar_one()
        assert settlement.status == SettlementStatus.SUBMITTING
        assert settlement.confirmed_block is None
        assert settlement.raw_transaction == "0xf86c"
        task = await session.get(Task, 1)
        assert task.status == TaskStatus.APPROVED
        assert task.settlement_status == TaskSettlementStatus.SUBMITTED
        assert (await session.get(Child, CHILD)).total_rewards_earned == 0


@pytest.mark.asyncio
async def test_handler_crash_records_failed_event(database, engine):
    async def crash(session, event, ctx):
        raise RuntimeError("boom")

    engine.event_handlers[EventType.FAMILY_UPDATED] = crash
    update = domain_event(EventType.FAMILY_UPDATED, 3, family_id=1, name="The Smiths")

    result = await apply(database, engine, family_setup() + [update])

    assert result.applied == 2
    assert result.failed == 1
    records = await event_records(database)
    assert [record.status for record in records] == [EventStatus.APPLIED, EventStatus.APPLIED, EventStatus.FAILED]
    assert records[-1].error_message == "RuntimeError: boom"
