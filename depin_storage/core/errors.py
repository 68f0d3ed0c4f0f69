"""
Error taxonomy for the storage marketplace.

Capability adapters (chain, inventory store, content daemon) raise their own
low-level exceptions. The purchase orchestrator maps every one of them into a
PurchaseError so that no raw transport error reaches the caller.
"""

from enum import Enum, auto
from typing import Optional


class ErrorKind(Enum):
    """Failure categories surfaced to purchase callers."""
    INVALID_REQUEST = auto()
    CONFIGURATION = auto()
    CONNECTIVITY = auto()
    REJECTED = auto()
    PROVIDER_UNAVAILABLE = auto()
    INSUFFICIENT_RESOURCE = auto()
    CONFLICT = auto()
    CHAIN_EXECUTION = auto()
    CANCELLED = auto()
    POST_PAYMENT_INCONSISTENCY = auto()


class Checkpoint(Enum):
    """Purchase pipeline checkpoints, in execution order."""
    VALIDATION = "validation"
    NETWORK = "network check"
    LIVENESS = "liveness and capacity check"
    BALANCE = "balance check"
    ALLOWANCE = "token approval"
    RESERVATION = "capacity reservation"
    PAYMENT = "payment"
    COMMIT = "allocation commit"


class PurchaseError(Exception):
    """A purchase attempt failed at a specific checkpoint."""

    def __init__(
        self,
        kind: ErrorKind,
        checkpoint: Checkpoint,
        message: str,
        shortfall: Optional[int] = None,
        tx_hash: Optional[str] = None
    ):
        super().__init__(f"{checkpoint.value}: {message}")
        self.kind = kind
        self.checkpoint = checkpoint
        self.message = message
        self.shortfall = shortfall
        self.tx_hash = tx_hash

    @property
    def retryable(self) -> bool:
        """Whether the caller may retry the whole purchase with fresh state."""
        return self.kind in (
            ErrorKind.INSUFFICIENT_RESOURCE,
            ErrorKind.CONFLICT,
            ErrorKind.PROVIDER_UNAVAILABLE,
            ErrorKind.CANCELLED,
        )

    @property
    def needs_reconciliation(self) -> bool:
        return self.kind == ErrorKind.POST_PAYMENT_INCONSISTENCY


class ConfigurationError(ValueError):
    """Missing or invalid configuration. Fatal, never retried."""


class ChainErrorReason(Enum):
    """Distinguishable reasons a chain client call can fail."""
    USER_REJECTED = auto()
    NETWORK_MISMATCH = auto()
    CONTRACT_CALL = auto()
    TIMEOUT = auto()
    NETWORK_ERROR = auto()


class ChainError(Exception):
    """Raised by the chain client for any failed read or write."""

    def __init__(self, reason: ChainErrorReason, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.reason = reason
        self.tx_hash = tx_hash


class StoreError(Exception):
    """The inventory store could not complete a read or write."""


class ProviderNotFound(StoreError):
    """No provider record with the requested identity."""


class CapacityConflict(StoreError):
    """A conditional capacity write found a different current value."""

    def __init__(self, provider_id: str, expected: int, actual: Optional[int]):
        super().__init__(
            f"capacity of provider {provider_id} is {actual}, expected {expected}"
        )
        self.provider_id = provider_id
        self.expected = expected
        self.actual = actual


class DaemonUnavailable(Exception):
    """The local content-network daemon did not answer."""
