"""
Custom exception classes for the application.
Provides structured error handling across all modules.
"""

from typing import Any, Optional, Dict


class FamilyChainError(Exception):
    """Base exception class for the reconciler."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(FamilyChainError):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class DatabaseError(FamilyChainError):
    """Raised when there's a database error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "DATABASE_ERROR", details)


class ValidationError(FamilyChainError):
    """Raised when data validation fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "VALIDATION_ERROR", details)


class NotFoundError(FamilyChainError):
    """Raised when a requested resource is not found."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "NOT_FOUND", details)


# Ledger access

class LedgerError(FamilyChainError):
    """Base class for ledger adapter failures."""


class TransientRPCError(LedgerError):
    """Network, node or timeout failure. Safe to retry."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "TRANSIENT_RPC_ERROR", details)


class LedgerRevertError(LedgerError):
    """The ledger rejected a call or transaction. Retrying will not help."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "LEDGER_REVERT", details)


# Ingestion

class ReorgDetected(FamilyChainError):
    """A previously delivered block is no longer canonical."""

    def __init__(
        self,
        block_number: int,
        expected_hash: Optional[str] = None,
        actual_hash: Optional[str] = None,
    ):
        self.block_number = block_number
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Chain reorganisation detected at block {block_number}",
            "REORG_DETECTED",
            {
                "block_number": block_number,
                "expected_hash": expected_hash,
                "actual_hash": actual_hash,
            },
        )


class InvalidEventPayload(FamilyChainError):
    """A log could not be decoded or failed payload validation."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "INVALID_EVENT_PAYLOAD", details)


class DuplicateEvent(FamilyChainError):
    """An event with the same (transaction_hash, log_index) was already seen."""

    def __init__(self, transaction_hash: str, log_index: int):
        super().__init__(
            f"Duplicate event {transaction_hash}:{log_index}",
            "DUPLICATE_EVENT",
            {"transaction_hash": transaction_hash, "log_index": log_index},
        )


# Reconciliation

class StateViolation(FamilyChainError):
    """An event is inconsistent with the current read-model state."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "STATE_VIOLATION", details)


class SettlementFailure(FamilyChainError):
    """Reward settlement could not be completed automatically."""

    def __init__(self, task_id: int, reason: str, details: Optional[Dict[str, Any]] = None):
        self.task_id = task_id
        self.reason = reason
        super().__init__(
            f"Settlement for task {task_id} failed: {reason}",
            "SETTLEMENT_FAILURE",
            {"task_id": task_id, **(details or {})},
        )


# Checkpoints

class CheckpointPersistenceError(FamilyChainError):
    """The ingestion checkpoint could not be stored. Fatal for the service."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CHECKPOINT_PERSISTENCE_ERROR", details)


class CheckpointRegressionError(FamilyChainError):
    """A checkpoint store would move the cursor backwards outside a rollback."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CHECKPOINT_REGRESSION", details)
