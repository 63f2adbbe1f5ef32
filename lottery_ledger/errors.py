"""Exception taxonomy shared by the ledger, stores and settlement engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


@dataclass(eq=False)
class LedgerError(Exception):
    """Base error surfaced to callers of the service facade."""

    code: str
    message: str
    details: Optional[Any] = None

    def __str__(self) -> str:
        return self.message


class ValidationError(LedgerError):
    """Bad input. Never retried; ``code`` carries the specific sub-reason."""

    def __init__(self, message: str = "Validation error", details: Optional[Any] = None, code: str = "invalid_request") -> None:
        super().__init__(code=code, message=message, details=details)


class InvalidFieldCount(ValidationError):
    def __init__(self, message: str = "Wrong number of fields", details: Optional[Any] = None) -> None:
        super().__init__(message=message, details=details, code="invalid_field_count")


class ValueOutOfRange(ValidationError):
    def __init__(self, message: str = "Value out of range", details: Optional[Any] = None) -> None:
        super().__init__(message=message, details=details, code="value_out_of_range")


class DuplicateNotAllowed(ValidationError):
    def __init__(self, message: str = "Duplicate numbers are not allowed", details: Optional[Any] = None) -> None:
        super().__init__(message=message, details=details, code="duplicate_not_allowed")


class InvalidMultiple(ValidationError):
    def __init__(self, message: str = "Invalid multiple", details: Optional[Any] = None) -> None:
        super().__init__(message=message, details=details, code="invalid_multiple")


class InvalidBetType(ValidationError):
    def __init__(self, message: str = "Bet type not supported for product", details: Optional[Any] = None) -> None:
        super().__init__(message=message, details=details, code="invalid_bet_type")


class InvalidStake(ValidationError):
    def __init__(self, message: str = "Stake must be a positive amount", details: Optional[Any] = None) -> None:
        super().__init__(message=message, details=details, code="invalid_stake")


class IssueClosed(ValidationError):
    def __init__(self, message: str = "Issue already has a draw result", details: Optional[Any] = None) -> None:
        super().__init__(message=message, details=details, code="issue_closed")


class NotFound(LedgerError):
    def __init__(self, message: str = "Not found", details: Optional[Any] = None) -> None:
        super().__init__(code="not_found", message=message, details=details)


class DuplicateResult(LedgerError):
    def __init__(self, message: str = "Draw result already recorded", details: Optional[Any] = None) -> None:
        super().__init__(code="duplicate_result", message=message, details=details)


class SettlementAlreadyRunning(LedgerError):
    def __init__(self, message: str = "Settlement already in progress", details: Optional[Any] = None) -> None:
        super().__init__(code="settlement_already_running", message=message, details=details)


class InvalidTransition(LedgerError):
    def __init__(self, message: str = "Illegal ticket status transition", details: Optional[Any] = None) -> None:
        super().__init__(code="invalid_transition", message=message, details=details)


class StorageError(LedgerError):
    """Authoritative store failure after the gateway gave up retrying."""

    def __init__(self, message: str = "Storage failure", details: Optional[Any] = None, retryable: bool = True) -> None:
        super().__init__(code="storage_error", message=message, details=details)
        self.retryable = retryable


class StoreUnavailable(StorageError):
    """Transient backend failure (timeout, dropped connection, lock contention)."""

    def __init__(self, message: str = "Store unavailable", details: Optional[Any] = None) -> None:
        super().__init__(message=message, details=details, retryable=True)


class IdentityCollision(RuntimeError):
    """A freshly generated ticket identity already exists. Indicates a broken id scheme."""
