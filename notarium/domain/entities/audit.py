"""Audit trail entities: actor context, per-entity configuration and log entries."""
from __future__ import annotations

import hashlib
import json
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .base import ValueObject, utcnow


class AuditOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ChangeMagnitude(str, Enum):
    MINOR = "minor"
    MODERATE = "moderate"
    MAJOR = "major"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _MAGNITUDE_RANK[self]

    @classmethod
    def highest(cls, *magnitudes: ChangeMagnitude | None) -> ChangeMagnitude:
        present = [m for m in magnitudes if m is not None]
        return max(present, key=lambda m: m.rank) if present else cls.MINOR


_MAGNITUDE_RANK = {
    ChangeMagnitude.MINOR: 0,
    ChangeMagnitude.MODERATE: 1,
    ChangeMagnitude.MAJOR: 2,
    ChangeMagnitude.CRITICAL: 3,
}


class ComplianceLevel(str, Enum):
    MINIMAL = "minimal"
    STANDARD = "standard"
    STRICT = "strict"


class ActorContext(ValueObject):
    """Who performed a mutation. Passed explicitly through every write path."""

    identity: str = Field(default="system", min_length=1, max_length=255)
    actor_type: str = "system"
    session_id: str | None = None
    source_ip: str | None = None
    user_agent: str | None = None

    @classmethod
    def worker(cls, worker_id: str) -> ActorContext:
        return cls(identity=f"worker:{worker_id}", actor_type="worker")


SYSTEM_ACTOR = ActorContext()


class AuditConfiguration(BaseModel):
    """How mutations of one entity type are captured and classified."""
    model_config = ConfigDict(frozen=True)

    entity_type: str
    audit_on_create: bool = True
    audit_on_update: bool = True
    audit_on_delete: bool = True
    sensitive_fields: frozenset[str] = frozenset()
    excluded_fields: frozenset[str] = frozenset()
    identity_fields: frozenset[str] = frozenset()
    flag_rules: dict[str, frozenset[str]] = Field(default_factory=dict)
    compliance_level: ComplianceLevel = ComplianceLevel.STANDARD
    baseline_magnitude: ChangeMagnitude | None = None
    retention_days: int = Field(default=2555, ge=1)
    is_active: bool = True

    def audits(self, operation: AuditOperation) -> bool:
        if not self.is_active:
            return False
        return {
            AuditOperation.CREATE: self.audit_on_create,
            AuditOperation.UPDATE: self.audit_on_update,
            AuditOperation.DELETE: self.audit_on_delete,
        }[operation]


REDACTED = "[REDACTED]"


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


class AuditLogEntry(BaseModel):
    """Immutable record of one mutation attempt against a monitored entity."""
    model_config = ConfigDict(from_attributes=True)

    sequence: int | None = None
    action: str
    resource_type: str
    resource_id: str
    actor_identity: str
    actor_type: str = "system"
    before_state: dict[str, Any] | None = None
    after_state: dict[str, Any] | None = None
    changed_fields: list[str] = Field(default_factory=list)
    change_magnitude: ChangeMagnitude
    compliance_flags: dict[str, bool] = Field(default_factory=dict)
    compliance_level: ComplianceLevel = ComplianceLevel.STANDARD
    context: dict[str, Any] = Field(default_factory=dict)
    previous_digest: str | None = None
    entry_digest: str | None = None
    occurred_at: datetime = Field(default_factory=utcnow)

    def compute_digest(self, previous_digest: str | None) -> str:
        body = {
            "action": self.action,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "actor_identity": self.actor_identity,
            "actor_type": self.actor_type,
            "before_state": self.before_state,
            "after_state": self.after_state,
            "changed_fields": self.changed_fields,
            "change_magnitude": self.change_magnitude.value,
            "compliance_flags": self.compliance_flags,
            "compliance_level": self.compliance_level.value,
            "context": self.context,
            "occurred_at": self.occurred_at.isoformat(),
            "previous_digest": previous_digest,
        }
        return hashlib.sha256(_canonical(body).encode("utf-8")).hexdigest()

    def seal(self, previous_digest: str | None) -> None:
        """Link this entry to the resource's chain."""
        self.previous_digest = previous_digest
        self.entry_digest = self.compute_digest(previous_digest)

    @property
    def failed(self) -> bool:
        return self.compliance_flags.get("operation_failed", False)


class AuditSummary(ValueObject):
    resource_type: str
    resource_id: str
    total_changes: int = 0
    by_operation: dict[str, int] = Field(default_factory=dict)
    by_magnitude: dict[str, int] = Field(default_factory=dict)
    last_change_at: datetime | None = None
    unique_actors: int = 0
