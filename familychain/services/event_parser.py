"""
Event normalisation: raw ledger logs -> validated DomainEvents.

Decoding follows the contract ABIs (topic0 is the keccak of the event
signature, indexed arguments live in the remaining topics, the rest is
ABI-encoded in data). Payloads are validated with pydantic models so
handlers only ever see well-formed values.
"""

from dataclasses import dataclass
from typing import Annotated, Any, Dict, List, Optional, Tuple, Type

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils import decode_hex, encode_hex, event_abi_to_log_topic, to_checksum_address, is_address
from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from ..core.exceptions import InvalidEventPayload
from ..core.logging import get_logger
from ..indexer.core.types import LedgerPosition
from ..models.event import EventType, LedgerEvent
from .contracts import CONTRACT_ABIS, event_abis
from .ledger_client import RawLog


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def _checksum(value: str) -> str:
    if not is_address(value):
        raise ValueError(f"not an address: {value}")
    return to_checksum_address(value)


Address = Annotated[str, AfterValidator(_checksum)]
# Ids are stored as BIGINT; anything larger cannot come from the registries.
LedgerId = Annotated[int, Field(ge=0, lt=2 ** 63)]
Uint256 = Annotated[int, Field(ge=0, lt=2 ** 256)]


class LedgerPayload(BaseModel):
    """Base for validated event payloads."""

    model_config = ConfigDict(frozen=True, extra="forbid")


class TaskCreatedPayload(LedgerPayload):
    task_id: LedgerId
    creator: Address
    title: str
    reward: Uint256


class TaskAssignedPayload(LedgerPayload):
    task_id: LedgerId
    assigned_to: Address


class TaskCompletedPayload(LedgerPayload):
    task_id: LedgerId
    completed_by: Address


class TaskApprovedPayload(LedgerPayload):
    task_id: LedgerId
    approved_by: Address


class TaskRejectedPayload(LedgerPayload):
    task_id: LedgerId
    rejected_by: Address


class RewardTransferredPayload(LedgerPayload):
    task_id: LedgerId
    recipient: Address
    amount: Uint256


class FamilyCreatedPayload(LedgerPayload):
    family_id: LedgerId
    parent: Address
    name: str


class FamilyUpdatedPayload(LedgerPayload):
    family_id: LedgerId
    name: str


class ChildAddedPayload(LedgerPayload):
    family_id: LedgerId
    child_address: Address
    name: str
    age: Annotated[int, Field(ge=0, le=255)]


class ChildRemovedPayload(LedgerPayload):
    family_id: LedgerId
    child_address: Address


class TransferPayload(LedgerPayload):
    from_address: Address
    to_address: Address
    value: Uint256


class ApprovalPayload(LedgerPayload):
    owner: Address
    spender: Address
    value: Uint256


PAYLOAD_MODELS: Dict[EventType, Type[LedgerPayload]] = {
    EventType.TASK_CREATED: TaskCreatedPayload,
    EventType.TASK_ASSIGNED: TaskAssignedPayload,
    EventType.TASK_COMPLETED: TaskCompletedPayload,
    EventType.TASK_APPROVED: TaskApprovedPayload,
    EventType.TASK_REJECTED: TaskRejectedPayload,
    EventType.REWARD_TRANSFERRED: RewardTransferredPayload,
    EventType.FAMILY_CREATED: FamilyCreatedPayload,
    EventType.FAMILY_UPDATED: FamilyUpdatedPayload,
    EventType.CHILD_ADDED: ChildAddedPayload,
    EventType.CHILD_REMOVED: ChildRemovedPayload,
    EventType.TRANSFER: TransferPayload,
    EventType.APPROVAL: ApprovalPayload,
}

# ABI argument name -> payload field name
FIELD_NAMES = {
    "taskId": "task_id",
    "familyId": "family_id",
    "assignedTo": "assigned_to",
    "completedBy": "completed_by",
    "approvedBy": "approved_by",
    "rejectedBy": "rejected_by",
    "childAddress": "child_address",
    "from": "from_address",
    "to": "to_address",
}


@dataclass(frozen=True)
class DomainEvent:
    """A validated ledger event with its position in the log stream."""

    event_type: EventType
    block_number: int
    log_index: int
    transaction_hash: str
    block_hash: str
    contract_address: str
    payload: LedgerPayload

    @property
    def position(self) -> LedgerPosition:
        return LedgerPosition(self.block_number, self.log_index)

    @property
    def dedup_key(self) -> Tuple[str, int]:
        return (self.transaction_hash, self.log_index)

    @property
    def task_id(self) -> Optional[int]:
        return getattr(self.payload, "task_id", None)

    @property
    def family_id(self) -> Optional[int]:
        return getattr(self.payload, "family_id", None)

    @property
    def wallet_address(self) -> Optional[str]:
        for name in ("child_address", "assigned_to", "recipient", "to_address"):
            value = getattr(self.payload, name, None)
            if value is not None:
                return value
        return None

    def to_record(self) -> Dict[str, Any]:
        """Column values for the ledger_events replay log."""
        return {
            "event_type": self.event_type,
            "transaction_hash": self.transaction_hash,
            "log_index": self.log_index,
            "block_number": self.block_number,
            "block_hash": self.block_hash,
            "contract_address": self.contract_address,
            "payload": self.payload.model_dump(mode="json"),
            "task_id": self.task_id,
            "family_id": self.family_id,
            "wallet_address": self.wallet_address,
        }

    @classmethod
    def from_record(cls, record: LedgerEvent) -> "DomainEvent":
        """Rebuild an event from the replay log."""
        model = PAYLOAD_MODELS[record.event_type]
        return cls(
            event_type=record.event_type,
            block_number=record.block_number,
            log_index=record.log_index,
            transaction_hash=record.transaction_hash,
            block_hash=record.block_hash,
            contract_address=record.contract_address,
            payload=model.model_validate(record.payload),
        )

    def __str__(self) -> str:
        return f"{self.event_type.value}@{self.block_number}:{self.log_index}"


@dataclass(frozen=True)
class EventSpec:
    """Decoding recipe for one event of one contract."""

    contract: str
    event_type: EventType
    topic: str
    indexed: List[Tuple[str, str]]
    data: List[Tuple[str, str]]

    @classmethod
    def from_abi(cls, contract: str, abi: Dict[str, Any]) -> "EventSpec":
        inputs = abi["inputs"]
        return cls(
            contract=contract,
            event_type=EventType(abi["name"]),
            topic=encode_hex(event_abi_to_log_topic(abi)),
            indexed=[(i["name"], i["type"]) for i in inputs if i["indexed"]],
            data=[(i["name"], i["type"]) for i in inputs if not i["indexed"]],
        )


def build_event_specs() -> Dict[str, Dict[str, EventSpec]]:
    """contract name -> topic0 -> EventSpec"""
    specs: Dict[str, Dict[str, EventSpec]] = {}
    for contract in CONTRACT_ABIS:
        specs[contract] = {}
        for abi in event_abis(contract):
            spec = EventSpec.from_abi(contract, abi)
            specs[contract][spec.topic] = spec
    return specs


class EventParser:
    """Decodes logs of the configured contracts into DomainEvents."""

    def __init__(self, contract_addresses: Dict[str, str], logger=None):
        self.logger = (logger or get_logger(__name__)).bind(service="event_parser")
        self._contracts_by_address = {
            to_checksum_address(address): name
            for name, address in contract_addresses.items()
        }
        self._specs = build_event_specs()

    @property
    def addresses(self) -> List[str]:
        return list(self._contracts_by_address)

    def parse(self, log: RawLog) -> Optional[DomainEvent]:
        """
        Decode a raw log.

        Returns None for events of a known contract the reconciler does not
        consume. Raises InvalidEventPayload for anything malformed.
        """
        details = {
            "transaction_hash": log.transaction_hash,
            "log_index": log.log_index,
            "block_number": log.block_number,
        }

        contract = self._contracts_by_address.get(to_checksum_address(log.address))
        if contract is None:
            raise InvalidEventPayload(f"Log from unknown contract {log.address}", details)

        if not log.topics:
            raise InvalidEventPayload("Anonymous log without topics", details)

        spec = self._specs[contract].get(log.topics[0].lower())
        if spec is None:
            return None

        if len(log.topics) != len(spec.indexed) + 1:
            raise InvalidEventPayload(
                f"{spec.event_type.value} expects {len(spec.indexed)} indexed topics, got {len(log.topics) - 1}",
                details,
            )

        try:
            values: Dict[str, Any] = {}
            for (name, abi_type), topic in zip(spec.indexed, log.topics[1:]):
                values[FIELD_NAMES.get(name, name)] = abi_decode([abi_type], decode_hex(topic))[0]

            data_types = [abi_type for _, abi_type in spec.data]
            decoded = abi_decode(data_types, decode_hex(log.data)) if data_types else ()
            for (name, _), value in zip(spec.data, decoded):
                values[FIELD_NAMES.get(name, name)] = value
        except (DecodingError, ValueError, TypeError) as e:
            raise InvalidEventPayload(
                f"Cannot decode {spec.event_type.value}: {e}",
                details,
            ) from e

        try:
            payload = PAYLOAD_MODELS[spec.event_type].model_validate(values)
        except PydanticValidationError as e:
            raise InvalidEventPayload(
                f"Invalid {spec.event_type.value} payload: {e.errors()[0]['msg']}",
                {**details, "errors": e.errors(include_url=False)},
            ) from e

        return DomainEvent(
            event_type=spec.event_type,
            block_number=log.block_number,
            log_index=log.log_index,
            transaction_hash=log.transaction_hash.lower(),
            block_hash=log.block_hash.lower(),
            contract_address=to_checksum_address(log.address),
            payload=payload,
        )
