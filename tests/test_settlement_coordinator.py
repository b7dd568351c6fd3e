"""
Test reward settlement: submission, retries, escalation and operator retry.
"""

import asyncio

import pytest
from sqlalchemy import select

from familychain.core.exceptions import LedgerRevertError, NotFoundError, TransientRPCError, ValidationError
from familychain.indexer.engine import ReconciliationEngine
from familychain.models import Settlement, SettlementStatus, Task, TaskSettlementStatus
from familychain.services.settlement_coordinator import SettlementCoordinator

from .conftest import CHILD, TOKEN, family_setup, make_settings, task_lifecycle


@pytest.fixture
def coordinator(database, chain, settings, signer):
    return SettlementCoordinator(database, chain, settings, signer=signer)


async def approve_task(database, coordinator, task_id=1, reward=5 * TOKEN):
    engine = ReconciliationEngine(coordinator)
    async with database.session() as session:
        return await engine.apply_batch(session, family_setup() + task_lifecycle(task_id, 2, reward=reward))


async def load(database, task_id=1):
    async with database.session() as session:
        settlement = (await session.execute(select(Settlement).where(Settlement.task_id == task_id))).scalar_one()
        task = await session.get(Task, task_id)
        return settlement, task


@pytest.mark.asyncio
async def test_dispatch_submits_signed_transaction(database, chain, coordinator, signer):
    """Test an approved task is paid with one mint to the child."""
    result = await approve_task(database, coordinator)

    coordinator.dispatch(result.settlements_to_dispatch)
    await coordinator.wait_idle()

    settlement, task = await load(database)
    assert settlement.status == SettlementStatus.SUBMITTED
    assert settlement.attempts == 1
    assert settlement.tx_hash == chain.prepared[0].tx_hash
    assert settlement.raw_transaction == chain.prepared[0].raw_transaction
    assert settlement.submitted_at is not None
    assert task.settlement_status == TaskSettlementStatus.SUBMITTED

    assert len(chain.broadcasts) == 1
    prepared = chain.broadcasts[0]
    assert prepared.method == "mint"
    assert prepared.sender == signer.address


@pytest.mark.asyncio
async def test_transient_failures_rebroadcast_same_transaction(database, chain, coordinator):
    """Test retries re-send the signed bytes instead of signing a new payout."""
    chain.broadcast_script = [TransientRPCError("connection reset"), None]
    result = await approve_task(database, coordinator)

    coordinator.dispatch(result.settlements_to_dispatch)
    await coordinator.wait_idle()

    settlement, _ = await load(database)
    assert settlement.status == SettlementStatus.SUBMITTED
    assert settlement.attempts == 2
    assert len(chain.prepared) == 1
    assert len(chain.broadcasts) == 1


@pytest.mark.asyncio
async def test_exhausted_retries_escalate_to_settlement_pending(database, chain, coordinator, settings):
    chain.broadcast_script = [TransientRPCError("timeout")] * settings.settlement_max_attempts
    result = await approve_task(database, coordinator)

    coordinator.dispatch(result.settlements_to_dispatch)
    await coordinator.wait_idle()

    settlement, task = await load(database)
    assert settlement.status == SettlementStatus.SETTLEMENT_PENDING
    assert settlement.attempts == settings.settlement_max_attempts
    assert "gave up" in settlement.last_error
    assert task.settlement_status == TaskSettlementStatus.SETTLEMENT_PENDING
    assert chain.broadcasts == []
    assert chain.nonce_resets == 1


@pytest.mark.asyncio
async def test_revert_escalates_immediately(database, chain, coordinator):
    chain.broadcast_script = [LedgerRevertError("execution reverted: not minter")]
    result = await approve_task(database, coordinator)

    coordinator.dispatch(result.settlements_to_dispatch)
    await coordinator.wait_idle()

    settlement, _ = await load(database)
    assert settlement.status == SettlementStatus.SETTLEMENT_PENDING
    assert "not minter" in settlement.last_error


@pytest.mark.asyncio
async def test_concurrent_dispatch_settles_once(database, chain, coordinator):
    result = await approve_task(database, coordinator)

    coordinator.dispatch(result.settlements_to_dispatch)
    coordinator.dispatch(result.settlements_to_dispatch)
    await coordinator.wait_idle()
    coordinator.dispatch(result.settlements_to_dispatch)
    await coordinator.wait_idle()

    assert len(chain.prepared) == 1
    assert len(chain.broadcasts) == 1


@pytest.mark.asyncio
async def test_without_signer_settlement_stays_queued(database, chain, settings):
    coordinator = SettlementCoordinator(database, chain, settings)
    result = await approve_task(database, coordinator)

    coordinator.dispatch(result.settlements_to_dispatch)
    await coordinator.wait_idle()

    settlement, _ = await load(database)
    assert not coordinator.enabled
    assert settlement.status == SettlementStatus.QUEUED
    assert chain.prepared == []


@pytest.mark.asyncio
async def test_operator_retry_reuses_stored_transaction(database, chain, coordinator, settings):
    chain.broadcast_script = [TransientRPCError("down")] * settings.settlement_max_attempts
    result = await approve_task(database, coordinator)
    coordinator.dispatch(result.settlements_to_dispatch)
    await coordinator.wait_idle()

    await coordinator.retry(1)
    await coordinator.wait_idle()

    settlement, task = await load(database)
    assert settlement.status == SettlementStatus.SUBMITTED
    assert settlement.tx_hash == chain.prepared[0].tx_hash
    assert len(chain.prepared) == 1
    assert task.settlement_status == TaskSettlementStatus.SUBMITTED


@pytest.mark.asyncio
async def test_operator_retry_fresh_signs_new_transaction(database, chain, coordinator):
    chain.broadcast_script = [LedgerRevertError("nonce already used")]
    result = await approve_task(database, coordinator)
    coordinator.dispatch(result.settlements_to_dispatch)
    await coordinator.wait_idle()

    await coordinator.retry(1, fresh=True)
    await coordinator.wait_idle()

    settlement, _ = await load(database)
    assert settlement.status == SettlementStatus.SUBMITTED
    assert len(chain.prepared) == 2
    assert settlement.tx_hash == chain.prepared[1].tx_hash


@pytest.mark.asyncio
async def test_retry_requires_pending_settlement(database, coordinator):
    await approve_task(database, coordinator)

    with pytest.raises(ValidationError):
        await coordinator.retry(1)
    with pytest.raises(NotFoundError):
        await coordinator.retry(404)


@pytest.mark.asyncio
async def test_start_resumes_interrupted_submission(database, chain, coordinator):
    """Test a settlement signed before a crash is re-sent, not re-signed."""
    await approve_task(database, coordinator)
    async with database.session() as session:
        settlement = (await session.execute(select(Settlement))).scalar_one()
        settlement.status = SettlementStatus.SUBMITTING
        settlement.nonce = 0
        settlement.tx_hash = "0x" + "ab" * 32
        settlement.raw_transaction = "0xdeadbeef"

    await coordinator.start()
    await coordinator.wait_idle()

    settlement, _ = await load(database)
    assert settlement.status == SettlementStatus.SUBMITTED
    assert settlement.tx_hash == "0x" + "ab" * 32
    assert chain.prepared == []
    assert chain.broadcasts[0].raw_transaction == "0xdeadbeef"


@pytest.mark.asyncio
async def test_reverted_receipt_escalates(tmp_path, database, chain, signer):
    settings = make_settings(tmp_path, settlement_receipt_timeout=1.0)
    coordinator = SettlementCoordinator(database, chain, settings, signer=signer)
    chain.default_receipt = False
    result = await approve_task(database, coordinator)

    coordinator.dispatch(result.settlements_to_dispatch)
    await coordinator.wait_idle()

    settlement, _ = await load(database)
    assert settlement.status == SettlementStatus.SETTLEMENT_PENDING
    assert settlement.last_error == "settlement transaction reverted"


@pytest.mark.asyncio
async def test_stop_cancels_stuck_submissions(database, chain, settings, signer):
    class StuckLedger(type(chain)):
        async def broadcast(self, prepared):
            await asyncio.sleep(3600)

    stuck = StuckLedger()
    coordinator = SettlementCoordinator(database, stuck, settings, signer=signer)
    result = await approve_task(database, coordinator)

    coordinator.dispatch(result.settlements_to_dispatch)
    await asyncio.sleep(0.05)
    await coordinator.stop(timeout=0.1)

    settlement, _ = await load(database)
    assert settlement.status == SettlementStatus.SUBMITTING
    assert settlement.recipient_address == CHILD

    # New approvals are not dispatched while stopping
    coordinator.dispatch([1])
    assert coordinator._inflight == {}
