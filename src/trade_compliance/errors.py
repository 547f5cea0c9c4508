"""Exception taxonomy for the compliance engine.

Business findings are *values* (:class:`~trade_compliance.models.TransactionViolation`)
and are never raised. The classes below cover the remaining two families:
infrastructure failures, which abort a validation attempt and may be retried,
and invariant violations, which signal a usage error and leave state untouched.
"""

from __future__ import annotations

from typing import Iterable, Optional

from .constants import ErrorCode


class ComplianceError(Exception):
    """Base class for every error raised by the compliance package."""

    error_code: ErrorCode = ErrorCode.INVARIANT_VIOLATION

    def __init__(self, message: str, *, error_code: Optional[ErrorCode] = None) -> None:
        super().__init__(message)
        if error_code is not None:
            self.error_code = error_code

    @property
    def message(self) -> str:
        return str(self)


class InvalidEnumValue(ComplianceError, ValueError):
    """Raised when a boundary value does not name a member of a closed enum."""

    error_code = ErrorCode.INVALID_ENUM_VALUE

    def __init__(self, field: str, value: object, allowed: Iterable[str]) -> None:
        self.field = field
        self.value = value
        self.allowed = tuple(allowed)
        super().__init__(
            f"Invalid value {value!r} for '{field}'; expected one of: {', '.join(self.allowed)}"
        )


class InvalidRequest(ComplianceError, ValueError):
    """Raised when a validation request is missing fields or carries bad values."""

    error_code = ErrorCode.INVALID_REQUEST


class InfrastructureFailure(ComplianceError):
    """Raised when a collaborator lookup fails during validation.

    The validation attempt is aborted before any ledger commit, so callers can
    retry the same transaction safely.
    """

    error_code = ErrorCode.INTERNAL_ERROR

    def __init__(self, operation: str, cause: BaseException) -> None:
        self.operation = operation
        super().__init__(f"Collaborator call '{operation}' failed: {cause}")


class ValidationCancelled(ComplianceError):
    """Raised when the caller's cancellation signal is observed before commit."""

    error_code = ErrorCode.VALIDATION_CANCELLED


class ReservationConflict(ComplianceError):
    """Raised when a ledger commit no longer fits the committed bucket total."""

    error_code = ErrorCode.RESERVATION_CONFLICT


class InvariantViolation(ComplianceError):
    """Raised when an operation is requested from a state that forbids it."""

    error_code = ErrorCode.INVARIANT_VIOLATION


class TransactionNotFound(InvariantViolation):
    """Raised when a transaction identifier is unknown to the store."""

    error_code = ErrorCode.TRANSACTION_NOT_FOUND


class AlreadyResolved(InvariantViolation):
    """Raised when an override decision was already recorded."""

    error_code = ErrorCode.ALREADY_RESOLVED


class OverrideNotAllowed(InvariantViolation):
    """Raised when the transaction is not awaiting an override decision."""

    error_code = ErrorCode.OVERRIDE_NOT_ALLOWED


class UnauthorizedActor(InvariantViolation):
    """Raised when the acting user lacks an override-approval role."""

    error_code = ErrorCode.UNAUTHORIZED


class MissingJustification(InvariantViolation):
    """Raised when an approval or rejection lacks the required explanation."""

    error_code = ErrorCode.JUSTIFICATION_REQUIRED


class OverrideExpired(InvariantViolation):
    """Raised when an override is requested after the allowed decision window."""

    error_code = ErrorCode.OVERRIDE_EXPIRED


class DataIntegrityError(InvariantViolation):
    """Raised when master data breaks a structural invariant."""

    error_code = ErrorCode.DATA_INTEGRITY


__all__ = [
    "ComplianceError",
    "InvalidEnumValue",
    "InvalidRequest",
    "InfrastructureFailure",
    "ValidationCancelled",
    "ReservationConflict",
    "InvariantViolation",
    "TransactionNotFound",
    "AlreadyResolved",
    "OverrideNotAllowed",
    "UnauthorizedActor",
    "MissingJustification",
    "OverrideExpired",
    "DataIntegrityError",
]
