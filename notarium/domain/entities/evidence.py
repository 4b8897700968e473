"""EvidenceRecord aggregate root: one content hash and its attestation lifecycle."""
from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from notarium.domain.exceptions import ConcurrencyError, InvalidTransitionError, ValidationError

from .base import AggregateRoot, DomainEvent, ValueObject, utcnow

HASH_PATTERN = re.compile(r"^[0-9a-f]{64}$")


def normalize_hash(value: str) -> str:
    """Return the canonical lowercase form of a sha256 hex digest.

    Raises ``ValidationError`` for anything that is not 64 hex characters.
    """
    if not isinstance(value, str):
        raise ValidationError("hash must be a string", field="hash")
    candidate = value.strip().lower()
    if not HASH_PATTERN.match(candidate):
        raise ValidationError(
            f"hash must be 64 hexadecimal characters, got {value!r}", field="hash"
        )
    return candidate


class EvidenceStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    REJECTED = "rejected"


TERMINAL_STATUSES = frozenset({EvidenceStatus.CONFIRMED, EvidenceStatus.FAILED, EvidenceStatus.REJECTED})

ALLOWED_TRANSITIONS: dict[EvidenceStatus, frozenset[EvidenceStatus]] = {
    EvidenceStatus.PENDING: frozenset({EvidenceStatus.PROCESSING}),
    EvidenceStatus.PROCESSING: frozenset({
        EvidenceStatus.CONFIRMED,
        EvidenceStatus.FAILED,
        EvidenceStatus.REJECTED,
        EvidenceStatus.PENDING,
    }),
    EvidenceStatus.CONFIRMED: frozenset(),
    EvidenceStatus.FAILED: frozenset(),
    EvidenceStatus.REJECTED: frozenset(),
}


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------

class EvidenceMetadata(ValueObject):
    """What the capture collaborator knows about the evidence at submission."""

    original_reference: str = Field(..., min_length=1, max_length=2048)
    title: str | None = Field(default=None, max_length=500)
    capture_timestamp: datetime = Field(default_factory=utcnow)
    submitter_identity: str = Field(..., min_length=1, max_length=255)
    risk_score: int = Field(default=0, ge=0, le=100)
    quality_score: int = Field(default=100, ge=0, le=100)
    extra: dict[str, Any] = Field(default_factory=dict)


class TransitionContext(ValueObject):
    """Data accompanying a status change.

    ``lease_owner`` names the worker that must currently hold the claim for
    transitions out of ``processing``; for ``pending -> processing`` it is the
    worker taking the claim.
    """

    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    attestation_tx_ref: str | None = None
    confirmation_count: int | None = Field(default=None, ge=0)
    retry_count: int | None = Field(default=None, ge=0)
    next_retry_at: datetime | None = None
    error_code: str | None = None
    error_message: str | None = None


# ---------------------------------------------------------------------------
# Domain Events
# ---------------------------------------------------------------------------

class EvidenceIngested(DomainEvent):
    event_type: str = "evidence.ingested"
    aggregate_type: str = "EvidenceRecord"


class EvidenceStatusChanged(DomainEvent):
    event_type: str = "evidence.status_changed"
    aggregate_type: str = "EvidenceRecord"


class EvidenceConfirmed(DomainEvent):
    event_type: str = "evidence.confirmed"
    aggregate_type: str = "EvidenceRecord"


class EvidenceAttestationRestored(DomainEvent):
    event_type: str = "evidence.attestation_restored"
    aggregate_type: str = "EvidenceRecord"


# ---------------------------------------------------------------------------
# Aggregate Root
# ---------------------------------------------------------------------------

class EvidenceRecord(AggregateRoot):
    """A single unit of notarized evidence, keyed by its content hash."""

    hash: str = Field(..., frozen=True)
    original_reference: str
    title: str | None = None
    capture_timestamp: datetime
    submitter_identity: str
    status: EvidenceStatus = EvidenceStatus.PENDING
    batch_id: str | None = None
    attestation_tx_ref: str | None = None
    confirmation_count: int = Field(default=0, ge=0)
    risk_score: int = Field(default=0, ge=0, le=100)
    quality_score: int = Field(default=100, ge=0, le=100)
    retry_count: int = Field(default=0, ge=0)
    next_retry_at: datetime | None = None
    last_error_code: str | None = None
    last_error_message: str | None = None
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("hash")
    @classmethod
    def validate_hash(cls, v: str) -> str:
        candidate = v.strip().lower()
        if not HASH_PATTERN.match(candidate):
            raise ValueError("hash must be 64 hexadecimal characters")
        return candidate

    # -- Factory ------------------------------------------------------------

    @classmethod
    def ingest(cls, hash: str, metadata: EvidenceMetadata) -> EvidenceRecord:
        try:
            record = cls(
                hash=normalize_hash(hash),
                original_reference=metadata.original_reference,
                title=metadata.title,
                capture_timestamp=metadata.capture_timestamp,
                submitter_identity=metadata.submitter_identity,
                risk_score=metadata.risk_score,
                quality_score=metadata.quality_score,
                metadata=dict(metadata.extra),
            )
        except PydanticValidationError as exc:
            first = exc.errors()[0]
            field = ".".join(str(p) for p in first.get("loc", ())) or None
            raise ValidationError(first.get("msg", str(exc)), field=field) from exc
        record.raise_event(EvidenceIngested(
            aggregate_id=record.id,
            payload={"hash": record.hash, "submitter": record.submitter_identity},
        ))
        return record

    # -- State transitions --------------------------------------------------

    def transition_to(
        self,
        new_status: EvidenceStatus,
        context: TransitionContext,
        now: datetime | None = None,
    ) -> None:
        """Apply a state machine edge, enforcing every record invariant."""
        now = now or utcnow()
        current = self.status
        if new_status not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(current.value, new_status.value)
        if new_status == EvidenceStatus.PROCESSING:
            if not context.lease_owner or context.lease_expires_at is None:
                raise InvalidTransitionError(current.value, new_status.value, "a lease is required")
        else:
            self._ensure_lease(context.lease_owner, now)
        tx_ref = context.attestation_tx_ref or self.attestation_tx_ref
        if new_status == EvidenceStatus.CONFIRMED and not tx_ref:
            raise InvalidTransitionError(
                current.value, new_status.value, "confirmation requires an attestation tx ref"
            )
        if context.retry_count is not None and context.retry_count < self.retry_count:
            raise InvalidTransitionError(current.value, new_status.value, "retry count cannot decrease")

        if new_status == EvidenceStatus.PROCESSING:
            self.lease_owner = context.lease_owner
            self.lease_expires_at = context.lease_expires_at
            self.next_retry_at = None
        else:
            self.lease_owner = None
            self.lease_expires_at = None

        if new_status == EvidenceStatus.CONFIRMED:
            self.attestation_tx_ref = tx_ref
            self.confirmation_count = max(self.confirmation_count + 1, context.confirmation_count or 0)
            self.last_error_code = None
            self.last_error_message = None
        elif new_status != EvidenceStatus.PROCESSING:
            if context.retry_count is not None:
                self.retry_count = context.retry_count
            self.next_retry_at = context.next_retry_at if new_status == EvidenceStatus.PENDING else None
            if context.error_code is not None:
                self.last_error_code = context.error_code
                self.last_error_message = context.error_message

        self.status = new_status
        self.increment_version(now)
        self.raise_event(EvidenceStatusChanged(
            aggregate_id=self.id,
            payload={
                "hash": self.hash,
                "from": current.value,
                "to": new_status.value,
                "retry_count": self.retry_count,
                "error_code": self.last_error_code,
            },
        ))
        if new_status == EvidenceStatus.CONFIRMED:
            self.raise_event(EvidenceConfirmed(
                aggregate_id=self.id,
                payload={
                    "hash": self.hash,
                    "attestation_tx_ref": self.attestation_tx_ref,
                    "confirmation_count": self.confirmation_count,
                },
            ))

    def reclaim(self, worker_id: str, lease_expires_at: datetime, now: datetime | None = None) -> None:
        """Take over a ``processing`` record whose lease has lapsed."""
        now = now or utcnow()
        if self.status != EvidenceStatus.PROCESSING:
            raise InvalidTransitionError(self.status.value, EvidenceStatus.PROCESSING.value)
        if not self.lease_expired(now):
            raise ConcurrencyError("EvidenceRecord", self.hash, f"lease held by {self.lease_owner}")
        self.lease_owner = worker_id
        self.lease_expires_at = lease_expires_at
        self.increment_version(now)

    def record_submission(self, tx_ref: str, worker_id: str, now: datetime | None = None) -> None:
        now = now or utcnow()
        if self.status != EvidenceStatus.PROCESSING:
            raise InvalidTransitionError(self.status.value, self.status.value, "submission outside processing")
        self._ensure_lease(worker_id, now)
        self.attestation_tx_ref = tx_ref
        self.increment_version(now)

    def assign_batch(self, batch_id: str | None, worker_id: str, now: datetime | None = None) -> None:
        now = now or utcnow()
        if self.status != EvidenceStatus.PROCESSING:
            raise InvalidTransitionError(self.status.value, self.status.value, "batch assignment outside processing")
        self._ensure_lease(worker_id, now)
        self.batch_id = batch_id
        self.increment_version(now)

    def restore_attestation_ref(self, tx_ref: str, now: datetime | None = None) -> None:
        """Point a confirmed record back at the transaction that confirmed it."""
        if self.status != EvidenceStatus.CONFIRMED:
            raise InvalidTransitionError(self.status.value, self.status.value, "only confirmed records carry a ref")
        if not tx_ref:
            raise ValidationError("tx_ref must not be empty", field="attestation_tx_ref")
        if tx_ref == self.attestation_tx_ref:
            return
        previous = self.attestation_tx_ref
        self.attestation_tx_ref = tx_ref
        self.increment_version(now or utcnow())
        self.raise_event(EvidenceAttestationRestored(
            aggregate_id=self.id,
            payload={"hash": self.hash, "from": previous, "to": tx_ref},
        ))

    def _ensure_lease(self, worker_id: str | None, now: datetime) -> None:
        if worker_id is None:
            # Only an abandoned claim may be moved by a caller without a lease.
            if self.status == EvidenceStatus.PROCESSING and not self.lease_expired(now):
                raise ConcurrencyError("EvidenceRecord", self.hash, f"lease held by {self.lease_owner}")
            return
        if self.lease_owner != worker_id or self.lease_expired(now):
            raise ConcurrencyError("EvidenceRecord", self.hash, f"claim not held by {worker_id}")

    # -- Queries ------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def lease_expired(self, now: datetime | None = None) -> bool:
        if self.lease_expires_at is None:
            return True
        return self.lease_expires_at <= (now or utcnow())

    def is_due(self, now: datetime | None = None) -> bool:
        return self.next_retry_at is None or self.next_retry_at <= (now or utcnow())
