"""
Core types of the ingestion pipeline.
"""

from .types import (
    IndexerStatus,
    LedgerPosition,
    EventBatch,
    RollbackInstruction,
    IngestionStats,
    ApplyContext,
    BatchResult,
    MAX_LOG_INDEX,
)

__all__ = [
    "IndexerStatus",
    "LedgerPosition",
    "EventBatch",
    "RollbackInstruction",
    "IngestionStats",
    "ApplyContext",
    "BatchResult",
    "MAX_LOG_INDEX",
]
