"""Verification cache: answers "is this hash attested?" without calling the notary.

Entries are recomputed from the ledger inside the unit of work that made the
record terminal, and wholesale by :meth:`VerificationCache.rebuild`.
"""
from __future__ import annotations

import structlog

from notarium.application.services.ledger import Clock
from notarium.domain.entities import (
    AttestationTransaction,
    EvidenceRecord,
    EvidenceStatus,
    VerificationCacheEntry,
    VerificationResult,
    normalize_hash,
    utcnow,
)
from notarium.infrastructure.persistence.unit_of_work import UnitOfWork, UnitOfWorkFactory

logger = structlog.get_logger(__name__)


class VerificationCache:

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        *,
        quality_threshold: int = 80,
        risk_threshold: int = 50,
        page_size: int = 500,
        clock: Clock = utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self.quality_threshold = quality_threshold
        self.risk_threshold = risk_threshold
        self._page_size = page_size
        self._clock = clock

    def evaluate(
        self,
        record: EvidenceRecord,
        confirmed_tx: AttestationTransaction | None,
    ) -> VerificationResult:
        """Derive the cached answer for ``record``.

        A risk score above the threshold is ``invalid`` even for a confirmed
        record.
        """
        if record.status in (EvidenceStatus.FAILED, EvidenceStatus.REJECTED):
            return VerificationResult.INVALID
        if record.risk_score > self.risk_threshold:
            return VerificationResult.INVALID
        if (
            record.status == EvidenceStatus.CONFIRMED
            and confirmed_tx is not None
            and record.quality_score >= self.quality_threshold
        ):
            return VerificationResult.VALID
        return VerificationResult.NOT_FOUND

    async def refresh_in(self, uow: UnitOfWork, hash: str) -> VerificationCacheEntry | None:
        record = await uow.evidence.find_by_hash(hash)
        if record is None:
            return None
        confirmed = await uow.transactions.find_confirmed(hash)
        entry = VerificationCacheEntry(
            hash=record.hash,
            evidence_id=record.id,
            cached_result=self.evaluate(record, confirmed),
            source_status=record.status,
            attestation_tx_ref=record.attestation_tx_ref,
            confirmation_count=record.confirmation_count,
            quality_score=record.quality_score,
            risk_score=record.risk_score,
            last_refreshed_at=self._clock(),
        )
        return await uow.cache.upsert(entry)

    async def refresh(self, hash: str) -> VerificationCacheEntry | None:
        key = normalize_hash(hash)
        async with self._uow_factory() as uow:
            return await self.refresh_in(uow, key)

    async def lookup(self, hash: str) -> VerificationResult:
        entry = await self.lookup_entry(hash)
        return entry.cached_result if entry else VerificationResult.NOT_FOUND

    async def lookup_entry(self, hash: str) -> VerificationCacheEntry | None:
        key = normalize_hash(hash)
        async with self._uow_factory() as uow:
            return await uow.cache.get(key)

    async def rebuild(self) -> int:
        """Recompute every entry from the ledger, one page per transaction."""
        count = 0
        after: str | None = None
        while True:
            async with self._uow_factory() as uow:
                page = await uow.evidence.page_hashes(after, self._page_size)
                for hash in page:
                    if await self.refresh_in(uow, hash) is not None:
                        count += 1
            if len(page) < self._page_size:
                break
            after = page[-1]
        logger.info("verification_cache_rebuilt", entries=count)
        return count


__all__ = ["VerificationCache"]
