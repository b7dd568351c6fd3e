"""
Per-contract event handlers used by the reconciliation engine.
"""

from .task_handlers import TaskHandlers
from .family_handlers import FamilyHandlers
from .token_handlers import TokenHandlers

__all__ = [
    "TaskHandlers",
    "FamilyHandlers",
    "TokenHandlers",
]
