"""Attestation transactions, batches and the notary exchange value objects."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import Field

from notarium.domain.exceptions import InvalidTransitionError

from .base import AggregateRoot, DomainEvent, Entity, ValueObject, utcnow


class ErrorCode(str, Enum):
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    SERVICE_UNAVAILABLE = "service_unavailable"
    RATE_LIMITED = "rate_limited"
    CIRCUIT_OPEN = "circuit_open"
    MALFORMED_RESPONSE = "malformed_response"
    TX_NOT_FOUND = "tx_not_found"
    CONFIRMATION_PENDING = "confirmation_pending"
    REJECTED = "rejected"
    BATCH_REJECTED = "batch_rejected"


class AttestationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class BatchStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Notary exchange
# ---------------------------------------------------------------------------

class SubmissionReceipt(ValueObject):
    tx_ref: str = Field(..., min_length=1)
    status: AttestationStatus = AttestationStatus.PENDING


class StatusReport(ValueObject):
    tx_ref: str
    status: AttestationStatus
    confirmations: int = Field(default=0, ge=0)
    error: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class NetworkSnapshot(ValueObject):
    network_name: str
    height: int = Field(default=0, ge=0)
    active_peers: int = Field(default=0, ge=0)
    total_peers: int = Field(default=0, ge=0)


# ---------------------------------------------------------------------------
# Attestation transaction
# ---------------------------------------------------------------------------

class AttestationTransaction(Entity):
    """One submission attempt for a record (or its share of a batch)."""

    tx_ref: str | None = None
    evidence_hash: str
    batch_id: str | None = None
    network_name: str = ""
    submitted_at: datetime = Field(default_factory=utcnow)
    confirmed_at: datetime | None = None
    is_confirmed: bool = False
    confirmation_count: int = Field(default=0, ge=0)
    error_code: str | None = None
    error_message: str | None = None
    retry_attempt: int = Field(default=0, ge=0)
    next_retry_at: datetime | None = None
    superseded: bool = False
    receipt: dict[str, Any] = Field(default_factory=dict)
    version: int = 0

    def confirm(self, report: StatusReport, now: datetime | None = None) -> None:
        if self.is_confirmed:
            return
        now = now or utcnow()
        self.tx_ref = report.tx_ref
        self.is_confirmed = True
        self.confirmed_at = now
        self.confirmation_count = max(self.confirmation_count, report.confirmations)
        self.receipt = dict(report.raw)
        self.error_code = None
        self.error_message = None
        self._touch(now)

    def record_failure(
        self,
        error_code: str,
        error_message: str,
        next_retry_at: datetime | None = None,
        now: datetime | None = None,
    ) -> None:
        self.error_code = error_code
        self.error_message = error_message
        self.next_retry_at = next_retry_at
        self._touch(now)

    def supersede(self, now: datetime | None = None) -> None:
        self.superseded = True
        self._touch(now)

    def _touch(self, now: datetime | None) -> None:
        self.version += 1
        self.updated_at = now or utcnow()

    @property
    def is_open(self) -> bool:
        return not self.is_confirmed and not self.superseded


# ---------------------------------------------------------------------------
# Batch aggregate
# ---------------------------------------------------------------------------

class BatchSubmitted(DomainEvent):
    event_type: str = "batch.submitted"
    aggregate_type: str = "AttestationBatch"


class BatchSettled(DomainEvent):
    event_type: str = "batch.settled"
    aggregate_type: str = "AttestationBatch"


class AttestationBatch(AggregateRoot):
    """Many record hashes attested together under one combined digest."""

    batch_digest: str
    member_hashes: list[str]
    member_count: int = Field(default=0, ge=0)
    status: BatchStatus = BatchStatus.PENDING
    tx_ref: str | None = None
    submitted_at: datetime | None = None
    confirmed_at: datetime | None = None
    error_message: str | None = None

    def model_post_init(self, __context: Any) -> None:
        super().model_post_init(__context)
        if not self.member_count:
            self.member_count = len(self.member_hashes)

    def mark_submitted(self, tx_ref: str, now: datetime | None = None) -> None:
        self._require(BatchStatus.PENDING, BatchStatus.SUBMITTED)
        now = now or utcnow()
        self.tx_ref = tx_ref
        self.submitted_at = now
        self.status = BatchStatus.SUBMITTED
        self.increment_version(now)
        self.raise_event(BatchSubmitted(
            aggregate_id=self.id,
            payload={"batch_digest": self.batch_digest, "tx_ref": tx_ref, "members": self.member_count},
        ))

    def settle(self, status: BatchStatus, error_message: str | None = None, now: datetime | None = None) -> None:
        if status not in (BatchStatus.CONFIRMED, BatchStatus.REJECTED, BatchStatus.FAILED):
            raise InvalidTransitionError(self.status.value, status.value)
        if status == BatchStatus.CONFIRMED:
            self._require(BatchStatus.SUBMITTED, status)
        elif self.is_settled:
            raise InvalidTransitionError(self.status.value, status.value)
        now = now or utcnow()
        self.status = status
        self.error_message = error_message
        if status == BatchStatus.CONFIRMED:
            self.confirmed_at = now
        self.increment_version(now)
        self.raise_event(BatchSettled(
            aggregate_id=self.id,
            payload={"batch_digest": self.batch_digest, "status": status.value, "error": error_message},
        ))

    def _require(self, expected: BatchStatus, target: BatchStatus) -> None:
        if self.status != expected:
            raise InvalidTransitionError(self.status.value, target.value)

    @property
    def is_settled(self) -> bool:
        return self.status in (BatchStatus.CONFIRMED, BatchStatus.REJECTED, BatchStatus.FAILED)
