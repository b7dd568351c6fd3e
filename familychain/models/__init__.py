"""
Database models for the FamilyChain reconciler.

Ledger projections (families, children, tasks) are rebuilt from the
ledger_events replay log; rewards, exchanges, settlements and checkpoints
are owned by this service.
"""

from .base import BaseModel, TimestampMixin, TokenAmount
from .family import Family, LifecycleStatus
from .child import Child
from .task import Task, TaskStatus, TaskSettlementStatus
from .reward import Reward
from .exchange import Exchange, ExchangeStatus
from .event import LedgerEvent, EventType, EventStatus
from .checkpoint import Checkpoint
from .settlement import Settlement, SettlementStatus

__all__ = [
    "BaseModel",
    "TimestampMixin",
    "TokenAmount",
    "Family",
    "LifecycleStatus",
    "Child",
    "Task",
    "TaskStatus",
    "TaskSettlementStatus",
    "Reward",
    "Exchange",
    "ExchangeStatus",
    "LedgerEvent",
    "EventType",
    "EventStatus",
    "Checkpoint",
    "Settlement",
    "SettlementStatus",
]
