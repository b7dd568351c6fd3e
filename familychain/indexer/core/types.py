"""
Type definitions for the ingestion pipeline.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from ...services.event_parser import DomainEvent


MAX_LOG_INDEX = 2 ** 31 - 1


class IndexerStatus(Enum):
    """Ingestor status."""
    STOPPED = "stopped"
    STARTING = "starting"
    BACKFILLING = "backfilling"
    LIVE = "live"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass(frozen=True, order=True)
class LedgerPosition:
    """A totally ordered point in the log stream: (block_number, log_index)."""

    block_number: int
    log_index: int = MAX_LOG_INDEX

    @classmethod
    def end_of_block(cls, block_number: int) -> "LedgerPosition":
        """Position that covers every log of the block."""
        return cls(block_number, MAX_LOG_INDEX)

    @property
    def is_end_of_block(self) -> bool:
        return self.log_index == MAX_LOG_INDEX

    @property
    def resume_block(self) -> int:
        """First block that may still hold unapplied logs."""
        if self.is_end_of_block:
            return self.block_number + 1
        return self.block_number

    def __str__(self) -> str:
        if self.is_end_of_block:
            return f"{self.block_number}:*"
        return f"{self.block_number}:{self.log_index}"


@dataclass
class EventBatch:
    """Ordered events plus the position the batch certifies once applied."""

    events: List["DomainEvent"]
    certified: LedgerPosition


@dataclass(frozen=True)
class RollbackInstruction:
    """Discard everything above the common ancestor block and replay."""

    ancestor_block: int


@dataclass
class IngestionStats:
    """Ingestion statistics."""

    ranges_processed: int = 0
    events_applied: int = 0
    events_skipped: int = 0
    duplicates_dropped: int = 0
    invalid_payloads: int = 0
    reorgs_handled: int = 0
    last_block: Optional[int] = None
    started_at: datetime = field(default_factory=datetime.now)
    last_error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "ranges_processed": self.ranges_processed,
            "events_applied": self.events_applied,
            "events_skipped": self.events_skipped,
            "duplicates_dropped": self.duplicates_dropped,
            "invalid_payloads": self.invalid_payloads,
            "reorgs_handled": self.reorgs_handled,
            "last_block": self.last_block,
            "started_at": self.started_at.isoformat(),
            "last_error": self.last_error,
        }


@dataclass
class ApplyContext:
    """Side effects collected while applying events, acted on after commit."""

    settlements_to_dispatch: List[int] = field(default_factory=list)
    created_task_ids: List[int] = field(default_factory=list)


@dataclass
class BatchResult:
    """Outcome counts of one applied batch or replay."""

    applied: int = 0
    skipped: int = 0
    duplicates: int = 0
    failed: int = 0
    settlements_to_dispatch: List[int] = field(default_factory=list)
    created_task_ids: List[int] = field(default_factory=list)
