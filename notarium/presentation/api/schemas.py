from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from notarium.domain.entities import EvidenceMetadata


class EvidenceCreateRequest(BaseModel):
    """Evidence handed in by the capture collaborator."""

    hash: str = Field(
        ...,
        description="sha256 of the captured content, 64 hex characters",
        examples=["9f86d081884c7d659a2feaa0c55ad015a3bf4f1b2b0b822cd15d6c15b0f00a08"],
    )
    original_reference: str = Field(..., min_length=1, max_length=2048, description="Source URL or locator")
    title: str | None = Field(default=None, max_length=500)
    capture_timestamp: datetime | None = None
    submitter_identity: str = Field(..., min_length=1, max_length=255)
    risk_score: int = Field(default=0, ge=0, le=100)
    quality_score: int = Field(default=100, ge=0, le=100)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("original_reference", "submitter_identity")
    @classmethod
    def strip(cls, v: str) -> str:
        return v.strip()

    def to_metadata(self) -> EvidenceMetadata:
        values: dict[str, Any] = {
            "original_reference": self.original_reference,
            "title": self.title,
            "submitter_identity": self.submitter_identity,
            "risk_score": self.risk_score,
            "quality_score": self.quality_score,
            "extra": self.metadata,
        }
        if self.capture_timestamp is not None:
            values["capture_timestamp"] = self.capture_timestamp
        return EvidenceMetadata(**values)


class EvidenceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    hash: str
    original_reference: str
    title: str | None = None
    capture_timestamp: datetime
    submitter_identity: str
    status: str
    batch_id: str | None = None
    attestation_tx_ref: str | None = None
    confirmation_count: int = 0
    risk_score: int
    quality_score: int
    retry_count: int = 0
    next_retry_at: datetime | None = None
    last_error_code: str | None = None
    last_error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tx_ref: str | None = None
    evidence_hash: str
    batch_id: str | None = None
    network_name: str
    submitted_at: datetime
    confirmed_at: datetime | None = None
    is_confirmed: bool
    confirmation_count: int
    error_code: str | None = None
    error_message: str | None = None
    retry_attempt: int
    next_retry_at: datetime | None = None
    superseded: bool


class TransactionListResponse(BaseModel):
    hash: str
    transactions: list[TransactionResponse]


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sequence: int | None = None
    action: str
    actor_identity: str
    actor_type: str
    before_state: dict[str, Any] | None = None
    after_state: dict[str, Any] | None = None
    changed_fields: list[str] = Field(default_factory=list)
    change_magnitude: str
    compliance_flags: dict[str, bool] = Field(default_factory=dict)
    compliance_level: str
    context: dict[str, Any] = Field(default_factory=dict)
    entry_digest: str | None = None
    occurred_at: datetime


class AuditTrailResponse(BaseModel):
    hash: str
    chain_valid: bool
    entries: list[AuditEntryResponse]


class VerificationResponse(BaseModel):
    hash: str
    result: str
    source_status: str | None = None
    attestation_tx_ref: str | None = None
    confirmation_count: int = 0
    last_refreshed_at: datetime | None = None


class NetworkStatusResponse(BaseModel):
    network_name: str
    health: str
    is_synced: bool
    is_stale: bool
    last_known_height: int = 0
    active_peers: int = 0
    total_peers: int = 0
    last_sync_at: datetime | None = None
    last_error: str | None = None


class InconsistencyResponse(BaseModel):
    kind: str
    hash: str
    detail: str
    healed: bool = False


class ConsistencyStatusResponse(BaseModel):
    status: str
    score: int | None = None
    checked: int = 0
    healed: int = 0
    checked_at: datetime | None = None
    inconsistencies: list[InconsistencyResponse] = Field(default_factory=list)
