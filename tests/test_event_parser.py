"""
Test decoding of raw ledger logs into DomainEvents.
"""

import pytest

from familychain.core.exceptions import InvalidEventPayload
from familychain.models.event import EventType
from familychain.services.event_parser import DomainEvent
from familychain.services.ledger_client import RawLog

from .conftest import CHILD, PARENT, REWARD_TOKEN_ADDRESS, TOKEN, ZERO_ADDRESS


def test_parse_task_created(chain, parser):
    """Indexed and data arguments both end up in the payload."""
    log = chain.emit("TaskCreated", 7, {"taskId": 42, "creator": PARENT, "title": "Wash the dishes", "reward": 3 * TOKEN})

    event = parser.parse(log)

    assert event.event_type == EventType.TASK_CREATED
    assert event.block_number == 7
    assert event.log_index == 0
    assert event.payload.task_id == 42
    assert event.payload.creator == PARENT
    assert event.payload.title == "Wash the dishes"
    assert event.payload.reward == 3 * TOKEN
    assert event.task_id == 42


def test_parse_child_added(chain, parser):
    log = chain.emit("ChildAdded", 3, {"familyId": 1, "childAddress": CHILD, "name": "Alice", "age": 9})

    event = parser.parse(log)

    assert event.event_type == EventType.CHILD_ADDED
    assert event.payload.child_address == CHILD
    assert event.payload.age == 9
    assert event.family_id == 1
    assert event.wallet_address == CHILD


def test_parse_transfer_renames_reserved_arguments(chain, parser):
    log = chain.emit("Transfer", 9, {"from": ZERO_ADDRESS, "to": CHILD, "value": 5 * TOKEN})

    event = parser.parse(log)

    assert event.payload.from_address == ZERO_ADDRESS
    assert event.payload.to_address == CHILD
    assert event.payload.value == 5 * TOKEN


def test_addresses_are_checksummed(chain, parser):
    log = chain.emit("TaskAssigned", 2, {"taskId": 1, "assignedTo": CHILD.lower()})

    event = parser.parse(log)

    assert event.payload.assigned_to == CHILD


def test_unknown_topic_of_known_contract_is_ignored(chain, parser):
    log = chain.emit("TaskCreated", 1, {"taskId": 1, "creator": PARENT, "title": "t", "reward": 1})
    log.topics[0] = "0x" + "ab" * 32

    assert parser.parse(log) is None


def test_unknown_contract_is_invalid(chain, parser):
    log = chain.emit("TaskCreated", 1, {"taskId": 1, "creator": PARENT, "title": "t", "reward": 1})
    log.address = "0x" + "99" * 20

    with pytest.raises(InvalidEventPayload):
        parser.parse(log)


def test_wrong_topic_count_is_invalid(chain, parser):
    log = chain.emit("TaskAssigned", 1, {"taskId": 1, "assignedTo": CHILD})
    log.topics = log.topics[:2]

    with pytest.raises(InvalidEventPayload, match="indexed topics"):
        parser.parse(log)


def test_truncated_data_is_invalid(chain, parser):
    log = chain.emit("TaskCreated", 1, {"taskId": 1, "creator": PARENT, "title": "t", "reward": 1})
    log.data = log.data[:20]

    with pytest.raises(InvalidEventPayload):
        parser.parse(log)


def test_ids_beyond_storage_range_are_invalid(chain, parser):
    log = chain.emit("TaskCompleted", 1, {"taskId": 2 ** 64, "completedBy": CHILD})

    with pytest.raises(InvalidEventPayload, match="TaskCompleted"):
        parser.parse(log)


def test_anonymous_log_is_invalid(parser):
    log = RawLog(
        address=REWARD_TOKEN_ADDRESS,
        topics=[],
        data="0x",
        block_number=1,
        block_hash="0x" + "00" * 32,
        transaction_hash="0x" + "01" * 32,
        log_index=0,
    )

    with pytest.raises(InvalidEventPayload, match="without topics"):
        parser.parse(log)


def test_record_round_trip_keeps_payload(chain, parser):
    """Events stored in the replay log rebuild to the same DomainEvent."""
    from familychain.models.event import LedgerEvent

    log = chain.emit("RewardTransferred", 4, {"taskId": 8, "recipient": CHILD, "amount": 2 ** 200})
    event = parser.parse(log)

    record = LedgerEvent(**event.to_record())
    rebuilt = DomainEvent.from_record(record)

    assert rebuilt == event
    assert rebuilt.payload.amount == 2 ** 200
