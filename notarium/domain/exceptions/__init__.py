"""Domain exceptions: the error taxonomy shared by every component."""
from __future__ import annotations

from typing import Any


class DomainException(Exception):
    """Base exception for domain rule violations."""

    def __init__(self, message: str, code: str = "DOMAIN_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ValidationError(DomainException):
    """Input rejected before any state is touched."""

    def __init__(self, message: str, field: str | None = None) -> None:
        self.field = field
        super().__init__(message=message, code="VALIDATION_ERROR")


class DuplicateError(DomainException):
    def __init__(self, entity_type: str, field: str, value: str) -> None:
        self.entity_type = entity_type
        self.field = field
        self.value = value
        super().__init__(
            message=f"{entity_type} with {field}={value!r} already exists",
            code="DUPLICATE",
        )


class NotFoundError(DomainException):
    def __init__(self, entity_type: str, entity_id: str) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            message=f"{entity_type} with id={entity_id!r} not found",
            code="NOT_FOUND",
        )


class InvalidTransitionError(DomainException):
    """A status change outside the allowed state machine edges."""

    def __init__(self, current: str, attempted: str, reason: str = "") -> None:
        self.current = current
        self.attempted = attempted
        message = f"Cannot transition from '{current}' to '{attempted}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message=message, code="INVALID_TRANSITION")


class ConcurrencyError(DomainException):
    """Version mismatch or lost claim; the caller should skip, not retry blindly."""

    def __init__(self, entity_type: str, entity_id: str, reason: str = "version conflict") -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            message=f"Concurrent modification of {entity_type} {entity_id!r}: {reason}",
            code="CONCURRENCY_CONFLICT",
        )


class AppendOnlyViolation(DomainException):
    def __init__(self, entity_type: str, entity_id: str) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            message=f"{entity_type} {entity_id!r} is append-only and cannot be deleted",
            code="APPEND_ONLY",
        )


class AttestationError(DomainException):
    """Failure reported by or while talking to the notary."""

    retryable: bool = False

    def __init__(self, message: str, error_code: str) -> None:
        self.error_code = error_code
        super().__init__(message=message, code=error_code.upper())


class TransientError(AttestationError):
    """Timeout, network fault or notary unavailability. Safe to retry."""

    retryable = True


class RejectedError(AttestationError):
    """The notary definitively refused the submission. Never retried."""


class AuditWriteError(DomainException):
    """An audit entry could not be persisted. Treated as system-fatal."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="AUDIT_WRITE_FAILED")


__all__ = [
    "AppendOnlyViolation",
    "AttestationError",
    "AuditWriteError",
    "ConcurrencyError",
    "DomainException",
    "DuplicateError",
    "InvalidTransitionError",
    "NotFoundError",
    "RejectedError",
    "TransientError",
    "ValidationError",
]
