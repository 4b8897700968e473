"""Domain entities and value objects."""
from .attestation import (
    AttestationBatch,
    AttestationStatus,
    AttestationTransaction,
    BatchStatus,
    ErrorCode,
    NetworkSnapshot,
    StatusReport,
    SubmissionReceipt,
)
from .audit import (
    SYSTEM_ACTOR,
    ActorContext,
    AuditConfiguration,
    AuditLogEntry,
    AuditOperation,
    AuditSummary,
    ChangeMagnitude,
    ComplianceLevel,
)
from .base import AggregateRoot, DomainEvent, Entity, ValueObject, utcnow
from .evidence import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    EvidenceMetadata,
    EvidenceRecord,
    EvidenceStatus,
    TransitionContext,
    normalize_hash,
)
from .network import NetworkHealth, NetworkState, health_from_peers
from .verification import VerificationCacheEntry, VerificationResult

__all__ = [
    "ALLOWED_TRANSITIONS",
    "SYSTEM_ACTOR",
    "TERMINAL_STATUSES",
    "ActorContext",
    "AggregateRoot",
    "AttestationBatch",
    "AttestationStatus",
    "AttestationTransaction",
    "AuditConfiguration",
    "AuditLogEntry",
    "AuditOperation",
    "AuditSummary",
    "BatchStatus",
    "ChangeMagnitude",
    "ComplianceLevel",
    "DomainEvent",
    "Entity",
    "ErrorCode",
    "EvidenceMetadata",
    "EvidenceRecord",
    "EvidenceStatus",
    "NetworkHealth",
    "NetworkSnapshot",
    "NetworkState",
    "StatusReport",
    "SubmissionReceipt",
    "TransitionContext",
    "ValueObject",
    "VerificationCacheEntry",
    "VerificationResult",
    "health_from_peers",
    "normalize_hash",
    "utcnow",
]
