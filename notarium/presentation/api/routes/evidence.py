"""Evidence API routes: ingest for the capture collaborator, reads for the dashboard."""
from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, status

from notarium.bootstrap import Services
from notarium.domain.entities import ActorContext, normalize_hash
from notarium.presentation.api.dependencies import get_actor, get_services
from notarium.presentation.api.schemas import (
    AuditEntryResponse,
    AuditTrailResponse,
    EvidenceCreateRequest,
    EvidenceResponse,
    TransactionListResponse,
    TransactionResponse,
    VerificationResponse,
)

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post(
    "/evidence",
    response_model=EvidenceResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register evidence for attestation",
)
async def create_evidence(
    body: EvidenceCreateRequest,
    services: Services = Depends(get_services),
    actor: ActorContext = Depends(get_actor),
) -> EvidenceResponse:
    """Insert a ``pending`` record. 409 when the hash is already in the ledger."""
    record = await services.ledger.insert(body.hash, body.to_metadata(), actor)
    return EvidenceResponse.model_validate(record.snapshot())


@router.get("/evidence/{hash}", response_model=EvidenceResponse, summary="Get an evidence record")
async def get_evidence(hash: str, services: Services = Depends(get_services)) -> EvidenceResponse:
    record = await services.ledger.get(hash)
    return EvidenceResponse.model_validate(record.snapshot())


@router.get(
    "/evidence/{hash}/transactions",
    response_model=TransactionListResponse,
    summary="List attestation attempts for a record",
)
async def list_transactions(hash: str, services: Services = Depends(get_services)) -> TransactionListResponse:
    transactions = await services.ledger.transactions(hash)
    return TransactionListResponse(
        hash=normalize_hash(hash),
        transactions=[TransactionResponse.model_validate(tx.snapshot()) for tx in transactions],
    )


@router.get("/evidence/{hash}/audit", response_model=AuditTrailResponse, summary="Audit trail of a record")
async def get_audit_trail(hash: str, services: Services = Depends(get_services)) -> AuditTrailResponse:
    key = (await services.ledger.get(hash)).hash
    entries = await services.audit.history("evidence_records", key)
    chain = await services.audit.verify_chain("evidence_records", key)
    return AuditTrailResponse(
        hash=key,
        chain_valid=chain.valid,
        entries=[AuditEntryResponse.model_validate(entry.model_dump(mode="json")) for entry in entries],
    )


@router.get("/verify/{hash}", response_model=VerificationResponse, summary="Verify a hash from the cache")
async def verify(hash: str, services: Services = Depends(get_services)) -> VerificationResponse:
    """Answered from the verification cache only; the notary is never called."""
    key = normalize_hash(hash)
    entry = await services.cache.lookup_entry(key)
    if entry is None:
        return VerificationResponse(hash=key, result="not_found")
    return VerificationResponse(
        hash=key,
        result=entry.cached_result.value,
        source_status=entry.source_status.value if entry.source_status else None,
        attestation_tx_ref=entry.attestation_tx_ref,
        confirmation_count=entry.confirmation_count,
        last_refreshed_at=entry.last_refreshed_at,
    )
