"""Verification cache entry: the denormalized answer to "is this hash attested?"."""
from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from .base import utcnow
from .evidence import EvidenceStatus


class VerificationResult(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    NOT_FOUND = "not_found"


class VerificationCacheEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    hash: str
    evidence_id: str | None = None
    cached_result: VerificationResult = VerificationResult.NOT_FOUND
    source_status: EvidenceStatus | None = None
    attestation_tx_ref: str | None = None
    confirmation_count: int = Field(default=0, ge=0)
    quality_score: int | None = None
    risk_score: int | None = None
    last_refreshed_at: datetime = Field(default_factory=utcnow)
