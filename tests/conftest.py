"""
Shared fixtures: per-test SQLite database, settings and a scripted
in-memory ledger that emits real ABI-encoded logs.
"""

import asyncio
import itertools
import random
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest
from eth_abi import encode as abi_encode
from eth_account import Account
from eth_utils import encode_hex, event_abi_to_log_topic, to_checksum_address

from familychain.core.config import FAMILY_REGISTRY, REWARD_TOKEN, TASK_REGISTRY, Settings
from familychain.core.database import Database
from familychain.core.exceptions import LedgerRevertError, TransientRPCError
from familychain.models.event import EventType
from familychain.services.checkpoint_tracker import CheckpointTracker
from familychain.services.contracts import event_abis
from familychain.services.event_parser import PAYLOAD_MODELS, DomainEvent, EventParser
from familychain.services.ledger_client import LogBatch, PreparedTransaction, RawLog
from familychain.services.settlement_coordinator import SettlementCoordinator


CHAIN_ID = 1337

TASK_REGISTRY_ADDRESS = to_checksum_address("0x" + "11" * 20)
FAMILY_REGISTRY_ADDRESS = to_checksum_address("0x" + "22" * 20)
REWARD_TOKEN_ADDRESS = to_checksum_address("0x" + "33" * 20)

PARENT = to_checksum_address("0x" + "a1" * 20)
OTHER_PARENT = to_checksum_address("0x" + "a2" * 20)
CHILD = to_checksum_address("0x" + "c1" * 20)
OTHER_CHILD = to_checksum_address("0x" + "c2" * 20)
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Well-known throwaway key, never funded anywhere
SETTLER_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"

TOKEN = 10 ** 18

CONTRACT_OF = {
    EventType.TASK_CREATED: TASK_REGISTRY,
    EventType.TASK_ASSIGNED: TASK_REGISTRY,
    EventType.TASK_COMPLETED: TASK_REGISTRY,
    EventType.TASK_APPROVED: TASK_REGISTRY,
    EventType.TASK_REJECTED: TASK_REGISTRY,
    EventType.REWARD_TRANSFERRED: TASK_REGISTRY,
    EventType.FAMILY_CREATED: FAMILY_REGISTRY,
    EventType.FAMILY_UPDATED: FAMILY_REGISTRY,
    EventType.CHILD_ADDED: FAMILY_REGISTRY,
    EventType.CHILD_REMOVED: FAMILY_REGISTRY,
    EventType.TRANSFER: REWARD_TOKEN,
    EventType.APPROVAL: REWARD_TOKEN,
}

ADDRESSES = {
    TASK_REGISTRY: TASK_REGISTRY_ADDRESS,
    FAMILY_REGISTRY: FAMILY_REGISTRY_ADDRESS,
    REWARD_TOKEN: REWARD_TOKEN_ADDRESS,
}


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'familychain.db'}",
        chain_id=CHAIN_ID,
        task_registry_address=TASK_REGISTRY_ADDRESS,
        family_registry_address=FAMILY_REGISTRY_ADDRESS,
        reward_token_address=REWARD_TOKEN_ADDRESS,
        poll_interval=0.01,
        rpc_retry_base_delay=0.01,
        rpc_retry_max_delay=0.05,
        settlement_backoff_base=0.01,
        settlement_backoff_max=0.05,
        settlement_max_attempts=3,
        settlement_submit_timeout=1.0,
        settlement_receipt_timeout=0,
        shutdown_grace_period=1.0,
        enrich_task_details=False,
        log_level="WARNING",
    )
    values.update(overrides)
    return Settings(**values)


def domain_event(
    event_type: EventType,
    block: int,
    log_index: int = 0,
    tx_hash: Optional[str] = None,
    **fields: Any,
) -> DomainEvent:
    """A DomainEvent built straight from payload fields, bypassing ABI decoding."""
    return DomainEvent(
        event_type=event_type,
        block_number=block,
        log_index=log_index,
        transaction_hash=tx_hash or f"0x{block:032x}{log_index:032x}",
        block_hash=f"0x{block:064x}",
        contract_address=ADDRESSES[CONTRACT_OF[event_type]],
        payload=PAYLOAD_MODELS[event_type](**fields),
    )


def task_lifecycle(task_id: int, start_block: int, child: str = CHILD, reward: int = 5 * TOKEN, approve: bool = True):
    """Created, assigned, completed and approved (or rejected) in consecutive blocks."""
    resolution = (
        domain_event(EventType.TASK_APPROVED, start_block + 3, task_id=task_id, approved_by=PARENT)
        if approve else
        domain_event(EventType.TASK_REJECTED, start_block + 3, task_id=task_id, rejected_by=PARENT)
    )
    return [
        domain_event(EventType.TASK_CREATED, start_block, task_id=task_id, creator=PARENT, title=f"Task {task_id}", reward=reward),
        domain_event(EventType.TASK_ASSIGNED, start_block + 1, task_id=task_id, assigned_to=child),
        domain_event(EventType.TASK_COMPLETED, start_block + 2, task_id=task_id, completed_by=child),
        resolution,
    ]


def family_setup(block: int = 1, family_id: int = 1, parent: str = PARENT, child: str = CHILD):
    return [
        domain_event(EventType.FAMILY_CREATED, block, 0, family_id=family_id, parent=parent, name="Smiths"),
        domain_event(EventType.CHILD_ADDED, block, 1, family_id=family_id, child_address=child, name="Alice", age=9),
    ]


def script_task(chain, start=1, task_id=1, approve=True, with_family=True):
    """Family in block start, then one task transition per block."""
    if with_family:
        chain.emit("FamilyCreated", start, {"familyId": 1, "parent": PARENT, "name": "Smiths"})
        chain.emit("ChildAdded", start, {"familyId": 1, "childAddress": CHILD, "name": "Alice", "age": 9})
    chain.emit("TaskCreated", start + 1, {"taskId": task_id, "creator": PARENT, "title": "Tidy up", "reward": 5 * TOKEN})
    chain.emit("TaskAssigned", start + 2, {"taskId": task_id, "assignedTo": CHILD})
    chain.emit("TaskCompleted", start + 3, {"taskId": task_id, "completedBy": CHILD})
    if approve:
        chain.emit("TaskApproved", start + 4, {"taskId": task_id, "approvedBy": PARENT})
    else:
        chain.emit("TaskRejected", start + 4, {"taskId": task_id, "rejectedBy": PARENT})


class FakeLedgerClient:
    """
    In-memory ledger with the LedgerClient interface.

    Blocks carry real ABI-encoded logs; a reorg bumps the hash of every
    block from the fork point on. Failures are scripted per method.
    """

    def __init__(self, chain_id: int = CHAIN_ID, poll_interval: float = 0.01):
        self.chain_id = chain_id
        self.poll_interval = poll_interval
        self.head = 0
        self.blocks: Dict[int, List[RawLog]] = {}
        self.reorg_points: List[int] = []

        self.shuffle_logs = False
        self.duplicate_logs = False
        self.failures: Dict[str, int] = {}

        self.call_results: Dict[Tuple[str, str], Callable[[List[Any]], Any]] = {}
        self.broadcast_script: List[Optional[Exception]] = []
        self.broadcasts: List[PreparedTransaction] = []
        self.prepared: List[PreparedTransaction] = []
        self.receipts: Dict[str, Optional[bool]] = {}
        self.default_receipt: Optional[bool] = None
        self.nonce_resets = 0
        self._nonces: Dict[str, int] = {}
        self._tx_counter = itertools.count(1)
        self._topics = {
            (contract, abi["name"]): (encode_hex(event_abi_to_log_topic(abi)), abi)
            for contract in ADDRESSES
            for abi in event_abis(contract)
        }

    # Chain scripting

    def block_hash(self, block_number: int) -> str:
        generation = sum(1 for point in self.reorg_points if block_number >= point)
        return f"0x{generation:032x}{block_number:032x}"

    def emit(
        self,
        event_name: str,
        block: int,
        args: Dict[str, Any],
        tx_hash: Optional[str] = None,
        log_index: Optional[int] = None,
        contract: Optional[str] = None,
    ) -> RawLog:
        """Append an ABI-encoded log to a block."""
        contract = contract or CONTRACT_OF[EventType(event_name)]
        topic, abi = self._topics[(contract, event_name)]

        topics = [topic]
        data_types, data_values = [], []
        for param in abi["inputs"]:
            if param["indexed"]:
                topics.append(encode_hex(abi_encode([param["type"]], [args[param["name"]]])))
            else:
                data_types.append(param["type"])
                data_values.append(args[param["name"]])

        entries = self.blocks.setdefault(block, [])
        log = RawLog(
            address=ADDRESSES[contract],
            topics=topics,
            data=encode_hex(abi_encode(data_types, data_values)) if data_types else "0x",
            block_number=block,
            block_hash=self.block_hash(block),
            transaction_hash=tx_hash or f"0x{next(self._tx_counter):064x}",
            log_index=len(entries) if log_index is None else log_index,
        )
        entries.append(log)
        self.head = max(self.head, block)
        return log

    def mine(self, count: int = 1) -> None:
        self.head += count

    def reorg(self, fork_block: int) -> None:
        """Drop every log from fork_block on and give those blocks new hashes."""
        self.reorg_points.append(fork_block)
        for block in list(self.blocks):
            if block >= fork_block:
                del self.blocks[block]

    def fail(self, method: str, times: int = 1) -> None:
        self.failures[method] = self.failures.get(method, 0) + times

    def _maybe_fail(self, method: str) -> None:
        if self.failures.get(method, 0) > 0:
            self.failures[method] -= 1
            raise TransientRPCError(f"{method} failed: scripted outage", {"operation": method})

    # LedgerClient interface

    async def get_chain_id(self) -> int:
        self._maybe_fail("get_chain_id")
        return self.chain_id

    async def get_block_number(self) -> int:
        self._maybe_fail("get_block_number")
        return self.head

    async def get_block_hash(self, block_number: int) -> str:
        self._maybe_fail("get_block_hash")
        if block_number > self.head:
            raise TransientRPCError(f"Block {block_number} not found")
        return self.block_hash(block_number)

    async def fetch_logs(self, from_block: int, to_block: int) -> List[RawLog]:
        self._maybe_fail("fetch_logs")
        logs = [
            log
            for block in range(from_block, to_block + 1)
            for log in self.blocks.get(block, [])
        ]
        if self.duplicate_logs:
            logs = logs + logs
        if self.shuffle_logs:
            logs = list(logs)
            random.Random(42).shuffle(logs)
        else:
            logs.sort(key=lambda log: log.sort_key)
        return logs

    async def subscribe(self, from_block: int):
        next_block = from_block
        while True:
            if self.head < next_block:
                await asyncio.sleep(self.poll_interval)
                continue
            to_block = self.head
            logs = await self.fetch_logs(next_block, to_block)
            yield LogBatch(from_block=next_block, to_block=to_block, logs=logs)
            next_block = to_block + 1

    async def call(self, contract: str, method: str, args=()) -> Any:
        self._maybe_fail("call")
        handler = self.call_results.get((contract, method))
        if handler is None:
            raise LedgerRevertError(f"{contract}.{method} reverted")
        return handler(list(args))

    async def get_receipt_status(self, tx_hash: str) -> Optional[bool]:
        return self.receipts.get(tx_hash, self.default_receipt)

    async def prepare_transaction(self, contract, method, args, signer) -> PreparedTransaction:
        self._maybe_fail("prepare_transaction")
        nonce = self._nonces.get(signer.address, 0)
        self._nonces[signer.address] = nonce + 1
        counter = next(self._tx_counter)
        prepared = PreparedTransaction(
            contract=contract,
            method=method,
            sender=signer.address,
            nonce=nonce,
            raw_transaction=f"0x{counter:08x}",
            tx_hash=f"0x{counter:064x}",
        )
        self.prepared.append(prepared)
        return prepared

    async def broadcast(self, prepared: PreparedTransaction) -> str:
        if self.broadcast_script:
            outcome = self.broadcast_script.pop(0)
            if outcome is not None:
                raise outcome
        self.broadcasts.append(prepared)
        return prepared.tx_hash

    async def submit_transaction(self, contract, method, args, signer) -> str:
        return await self.broadcast(await self.prepare_transaction(contract, method, args, signer))

    def reset_nonce(self, address: str) -> None:
        self.nonce_resets += 1
        self._nonces.pop(address, None)

    async def close(self) -> None:
        return None


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
async def database(settings):
    db = Database(settings)
    await db.create_tables()
    yield db
    await db.close()


@pytest.fixture
def chain():
    return FakeLedgerClient()


@pytest.fixture
def signer():
    return Account.from_key(SETTLER_KEY)


@pytest.fixture
def parser():
    return EventParser(ADDRESSES)


@pytest.fixture
def checkpoints(database):
    return CheckpointTracker(database)


@pytest.fixture
def settlements(database, chain, settings):
    """Coordinator without a signer: settlements are recorded but never submitted."""
    return SettlementCoordinator(database, chain, settings)


async def read_state(database: Database) -> Dict[str, list]:
    """Comparable snapshot of every ledger projection plus settlements."""
    from sqlalchemy import select

    from familychain.models import Child, Family, Settlement, Task

    async with database.session() as session:
        families = (await session.execute(select(Family).order_by(Family.id))).scalars().all()
        children = (await session.execute(select(Child).order_by(Child.wallet_address))).scalars().all()
        tasks = (await session.execute(select(Task).order_by(Task.id))).scalars().all()
        payouts = (await session.execute(select(Settlement).order_by(Settlement.task_id))).scalars().all()

        return {
            "families": [(f.id, f.name, f.parent_address, f.status) for f in families],
            "children": [
                (c.wallet_address, c.family_id, c.status, c.total_tasks_completed, c.total_rewards_earned)
                for c in children
            ],
            "tasks": [
                (t.id, t.status, t.assigned_child_address, t.settlement_status, t.escrow_released)
                for t in tasks
            ],
            "settlements": [(s.task_id, s.status, s.amount) for s in payouts],
        }
