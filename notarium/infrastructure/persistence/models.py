"""SQLAlchemy ORM models -- infrastructure persistence layer.

Maps domain entities to relational tables using SQLAlchemy 2.0
``mapped_column`` style. Mutable rows carry a ``version`` integer used for
optimistic-concurrency control in the repository layer; the audit tables are
insert-only and have none.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from notarium.infrastructure.persistence.database import Base


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend.

    SQLite has no timestamp type and drops offsets, so values are stored as
    naive UTC there and re-tagged as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# AttestationBatchModel
# ---------------------------------------------------------------------------

class AttestationBatchModel(Base):
    """``attestation_batches`` table -- maps to ``AttestationBatch``."""

    __tablename__ = "attestation_batches"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    batch_digest: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    member_hashes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    member_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    tx_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("member_count >= 0", name="ck_batches_member_count"),
    )

    def __repr__(self) -> str:
        return f"<AttestationBatchModel id={self.id!r} status={self.status!r} members={self.member_count}>"


# ---------------------------------------------------------------------------
# EvidenceRecordModel
# ---------------------------------------------------------------------------

class EvidenceRecordModel(Base):
    """``evidence_records`` table -- maps to ``EvidenceRecord``.

    ``hash`` is the content address; its unique constraint is the only
    uniqueness check the ledger performs.
    """

    __tablename__ = "evidence_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    original_reference: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    capture_timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    submitter_identity: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    batch_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("attestation_batches.id"), nullable=True, index=True,
    )
    attestation_tx_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    confirmation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    risk_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quality_score: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    last_error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    lease_owner: Mapped[str | None] = mapped_column(String(100), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    extra: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_evidence_status_next_retry", "status", "next_retry_at"),
        Index("ix_evidence_created_at", "created_at"),
        CheckConstraint("confirmation_count >= 0", name="ck_evidence_confirmation_count"),
        CheckConstraint("retry_count >= 0", name="ck_evidence_retry_count"),
        CheckConstraint("risk_score BETWEEN 0 AND 100", name="ck_evidence_risk_score"),
        CheckConstraint("quality_score BETWEEN 0 AND 100", name="ck_evidence_quality_score"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'confirmed', 'failed', 'rejected')",
            name="ck_evidence_status",
        ),
    )

    def __repr__(self) -> str:
        return f"<EvidenceRecordModel hash={self.hash[:12]!r} status={self.status!r} v{self.version}>"


# ---------------------------------------------------------------------------
# AttestationTransactionModel
# ---------------------------------------------------------------------------

class AttestationTransactionModel(Base):
    """``attestation_transactions`` table -- one row per submission attempt."""

    __tablename__ = "attestation_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tx_ref: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    evidence_hash: Mapped[str] = mapped_column(
        String(64), ForeignKey("evidence_records.hash"), nullable=False, index=True,
    )
    batch_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("attestation_batches.id"), nullable=True,
    )
    network_name: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    submitted_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    confirmed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    is_confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    confirmation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    superseded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    receipt: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index(
            "uq_attestation_tx_one_confirmed",
            "evidence_hash",
            unique=True,
            sqlite_where=text("is_confirmed = 1"),
            postgresql_where=text("is_confirmed"),
        ),
        CheckConstraint("retry_attempt >= 0", name="ck_attestation_tx_retry_attempt"),
    )

    def __repr__(self) -> str:
        return (
            f"<AttestationTransactionModel hash={self.evidence_hash[:12]!r} "
            f"attempt={self.retry_attempt} confirmed={self.is_confirmed}>"
        )


# ---------------------------------------------------------------------------
# VerificationCacheModel
# ---------------------------------------------------------------------------

class VerificationCacheModel(Base):
    """``verification_cache`` table -- derived view, rebuilt from the ledger on demand."""

    __tablename__ = "verification_cache"

    hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    evidence_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    cached_result: Mapped[str] = mapped_column(String(20), nullable=False)
    source_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    attestation_tx_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    confirmation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quality_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    risk_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_refreshed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class _AuditColumns:
    action: Mapped[str] = mapped_column(String(120), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(60), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(255), nullable=False)
    actor_identity: Mapped[str] = mapped_column(String(255), nullable=False)
    actor_type: Mapped[str] = mapped_column(String(30), nullable=False, default="system")
    before_state: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    after_state: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    changed_fields: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    change_magnitude: Mapped[str] = mapped_column(String(20), nullable=False)
    compliance_flags: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    compliance_level: Mapped[str] = mapped_column(String(20), nullable=False, default="standard")
    context: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    previous_digest: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entry_digest: Mapped[str | None] = mapped_column(String(64), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class AuditLogModel(_AuditColumns, Base):
    """``audit_logs`` table -- insert-only, no uniqueness beyond the sequence."""

    __tablename__ = "audit_logs"

    sequence: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    __table_args__ = (
        Index("ix_audit_logs_resource", "resource_type", "resource_id", "sequence"),
        Index("ix_audit_logs_occurred_at", "occurred_at"),
        Index("ix_audit_logs_magnitude", "change_magnitude"),
    )

    def __repr__(self) -> str:
        return f"<AuditLogModel #{self.sequence} {self.action} {self.resource_id!r} {self.change_magnitude}>"


class AuditLogArchiveModel(_AuditColumns, Base):
    """``audit_logs_archive`` table -- entries moved out of the hot log by retention."""

    __tablename__ = "audit_logs_archive"

    sequence: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    archived_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)


# ---------------------------------------------------------------------------
# NetworkStateModel
# ---------------------------------------------------------------------------

class NetworkStateModel(Base):
    """``network_states`` table -- one row per notary network."""

    __tablename__ = "network_states"

    id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    network_name: Mapped[str] = mapped_column(String(50), primary_key=True)
    last_known_height: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_sync_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    is_synced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    active_peers: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_peers: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    health: Mapped[str] = mapped_column(String(20), nullable=False, default="offline")
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_now)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


__all__ = [
    "AttestationBatchModel",
    "AttestationTransactionModel",
    "AuditLogArchiveModel",
    "AuditLogModel",
    "EvidenceRecordModel",
    "NetworkStateModel",
    "UTCDateTime",
    "VerificationCacheModel",
]
