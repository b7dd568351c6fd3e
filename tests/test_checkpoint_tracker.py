"""
Test the durable ingestion cursor.
"""

import pytest
from sqlalchemy.exc import OperationalError

from familychain.core.exceptions import CheckpointPersistenceError, CheckpointRegressionError
from familychain.indexer.core.types import LedgerPosition

from .conftest import CHAIN_ID


@pytest.mark.asyncio
async def test_load_on_fresh_database_returns_none(checkpoints):
    assert await checkpoints.load(CHAIN_ID) is None


@pytest.mark.asyncio
async def test_store_and_load(database, checkpoints):
    async with database.session() as session:
        await checkpoints.store(session, CHAIN_ID, LedgerPosition(10, 3))

    assert await checkpoints.load(CHAIN_ID) == LedgerPosition(10, 3)

    async with database.session() as session:
        await checkpoints.store(session, CHAIN_ID, LedgerPosition.end_of_block(12))

    position = await checkpoints.load(CHAIN_ID)
    assert position.is_end_of_block
    assert position.resume_block == 13


@pytest.mark.asyncio
async def test_checkpoints_are_per_chain(database, checkpoints):
    async with database.session() as session:
        await checkpoints.store(session, CHAIN_ID, LedgerPosition(5, 0))
    async with database.session() as session:
        await checkpoints.store(session, 1, LedgerPosition(900, 1))

    assert await checkpoints.load(CHAIN_ID) == LedgerPosition(5, 0)
    assert await checkpoints.load(1) == LedgerPosition(900, 1)


@pytest.mark.asyncio
async def test_store_never_moves_backwards(database, checkpoints):
    async with database.session() as session:
        await checkpoints.store(session, CHAIN_ID, LedgerPosition(10, 3))

    with pytest.raises(CheckpointRegressionError):
        async with database.session() as session:
            await checkpoints.store(session, CHAIN_ID, LedgerPosition(10, 2))

    assert await checkpoints.load(CHAIN_ID) == LedgerPosition(10, 3)


@pytest.mark.asyncio
async def test_rollback_may_rewind(database, checkpoints):
    async with database.session() as session:
        await checkpoints.store(session, CHAIN_ID, LedgerPosition.end_of_block(20))
    async with database.session() as session:
        await checkpoints.store(session, CHAIN_ID, LedgerPosition.end_of_block(15), allow_rewind=True)

    assert await checkpoints.load(CHAIN_ID) == LedgerPosition.end_of_block(15)


@pytest.mark.asyncio
async def test_database_failure_is_checkpoint_persistence_error(database, checkpoints, monkeypatch):
    async def broken_commit(self):
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

    with pytest.raises(CheckpointPersistenceError):
        async with database.session() as session:
            monkeypatch.setattr(type(session), "commit", broken_commit)
            await checkpoints.store(session, CHAIN_ID, LedgerPosition(1, 0))


def test_positions_order_by_block_then_log_index():
    assert LedgerPosition(1, 5) < LedgerPosition(2, 0)
    assert LedgerPosition(2, 0) < LedgerPosition(2, 1)
    assert LedgerPosition(2, 7) < LedgerPosition.end_of_block(2)
    assert str(LedgerPosition.end_of_block(4)) == "4:*"
    assert LedgerPosition(4, 2).resume_block == 4
