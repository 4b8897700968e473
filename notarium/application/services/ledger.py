"""Evidence ledger: the append-only, content-addressed store of evidence records.

``transition`` is the only write path for status. The ``apply_*`` variants
run inside a caller-owned unit of work so the reconciliation engine can
combine a transition with its attestation transaction and cache refresh.
"""
from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta

import structlog

from notarium.application.events import EventBus
from notarium.domain.entities import (
    SYSTEM_ACTOR,
    ActorContext,
    AttestationTransaction,
    AuditOperation,
    EvidenceMetadata,
    EvidenceRecord,
    EvidenceStatus,
    TransitionContext,
    normalize_hash,
    utcnow,
)
from notarium.domain.exceptions import ConcurrencyError, DomainException, NotFoundError
from notarium.infrastructure.persistence.unit_of_work import UnitOfWork, UnitOfWorkFactory

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]


class EvidenceLedger:

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        event_bus: EventBus,
        *,
        lease_seconds: float,
        clock: Clock = utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self._event_bus = event_bus
        self._lease = timedelta(seconds=lease_seconds)
        self._clock = clock

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, hash: str) -> EvidenceRecord:
        key = normalize_hash(hash)
        async with self._uow_factory() as uow:
            record = await uow.evidence.find_by_hash(key)
        if record is None:
            raise NotFoundError("EvidenceRecord", key)
        return record

    async def transactions(self, hash: str) -> list[AttestationTransaction]:
        key = normalize_hash(hash)
        async with self._uow_factory() as uow:
            if not await uow.evidence.exists(key):
                raise NotFoundError("EvidenceRecord", key)
            return await uow.transactions.list_for_hash(key)

    async def claimable(self, limit: int, include_fresh: bool = True) -> list[str]:
        async with self._uow_factory() as uow:
            return await uow.evidence.find_claimable(self._clock(), limit, include_fresh)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def insert(self, hash: str, metadata: EvidenceMetadata, actor: ActorContext) -> EvidenceRecord:
        """Create a ``pending`` record.

        Raises ``ValidationError`` for a malformed hash and ``DuplicateError``
        when the hash is already in the ledger.
        """
        record = EvidenceRecord.ingest(hash, metadata)
        async with self._uow_factory() as uow:
            await uow.evidence.save(record, actor)
            uow.track(record)
        await self._event_bus.publish_all(uow.events)
        return record

    async def transition(
        self,
        hash: str,
        new_status: EvidenceStatus,
        context: TransitionContext,
        actor: ActorContext,
    ) -> EvidenceRecord:
        async with self._uow_factory() as uow:
            record = await self.apply_transition(uow, hash, new_status, context, actor)
        await self._event_bus.publish_all(uow.events)
        return record

    async def claim(self, hash: str, worker_id: str, actor: ActorContext | None = None) -> EvidenceRecord:
        """Lease a record to ``worker_id``.

        Due ``pending`` records move to ``processing``; ``processing`` records
        whose lease has lapsed are re-leased. Anything else, or losing the
        version race to another worker, raises ``ConcurrencyError``.
        """
        actor = actor or ActorContext.worker(worker_id)
        key = normalize_hash(hash)
        now = self._clock()
        expires = now + self._lease
        async with self._uow_factory() as uow:
            record = await self._require(uow, key)
            before = record.snapshot()
            previous_owner = record.lease_owner
            try:
                self._take_lease(record, worker_id, now, expires)
            except DomainException as exc:
                uow.recorder.defer_failure(
                    "evidence_records", AuditOperation.UPDATE, before, None, actor, key, exc,
                )
                raise
            if previous_owner is not None:
                logger.warning("lease_reclaimed", hash=key, previous_owner=previous_owner, worker_id=worker_id)
            await uow.evidence.update(record, actor)
            uow.track(record)
        await self._event_bus.publish_all(uow.events)
        return record

    async def record_submission(self, hash: str, tx_ref: str, worker_id: str, actor: ActorContext) -> EvidenceRecord:
        async with self._uow_factory() as uow:
            return await self.apply_submission(uow, normalize_hash(hash), tx_ref, worker_id, actor)

    async def assign_batch(
        self, hash: str, batch_id: str | None, worker_id: str, actor: ActorContext
    ) -> EvidenceRecord:
        async with self._uow_factory() as uow:
            return await self.apply_batch_assignment(uow, normalize_hash(hash), batch_id, worker_id, actor)

    async def delete(self, hash: str, actor: ActorContext = SYSTEM_ACTOR) -> None:
        """Always refused; the attempt itself is audited."""
        key = normalize_hash(hash)
        async with self._uow_factory() as uow:
            await uow.evidence.delete(key, actor)

    # ------------------------------------------------------------------
    # Unit-of-work scoped operations
    # ------------------------------------------------------------------

    async def apply_transition(
        self,
        uow: UnitOfWork,
        hash: str,
        new_status: EvidenceStatus,
        context: TransitionContext,
        actor: ActorContext,
    ) -> EvidenceRecord:
        record = await self._require(uow, normalize_hash(hash))
        before = record.snapshot()
        try:
            record.transition_to(new_status, context, now=self._clock())
        except DomainException as exc:
            # A refused transition leaves the row untouched; only the attempt is logged.
            uow.recorder.defer_failure(
                "evidence_records", AuditOperation.UPDATE, before, None, actor, record.hash, exc,
            )
            raise
        await uow.evidence.update(record, actor)
        uow.track(record)
        return record

    async def apply_submission(
        self, uow: UnitOfWork, hash: str, tx_ref: str, worker_id: str, actor: ActorContext
    ) -> EvidenceRecord:
        record = await self._require(uow, hash)
        if record.attestation_tx_ref == tx_ref:
            return record
        record.record_submission(tx_ref, worker_id, now=self._clock())
        await uow.evidence.update(record, actor)
        return record

    async def apply_batch_assignment(
        self, uow: UnitOfWork, hash: str, batch_id: str | None, worker_id: str, actor: ActorContext
    ) -> EvidenceRecord:
        record = await self._require(uow, hash)
        record.assign_batch(batch_id, worker_id, now=self._clock())
        await uow.evidence.update(record, actor)
        return record

    @staticmethod
    def _take_lease(record: EvidenceRecord, worker_id: str, now: datetime, expires: datetime) -> None:
        if record.status == EvidenceStatus.PENDING:
            if not record.is_due(now):
                raise ConcurrencyError("EvidenceRecord", record.hash, "retry not yet due")
            record.transition_to(
                EvidenceStatus.PROCESSING,
                TransitionContext(lease_owner=worker_id, lease_expires_at=expires),
                now=now,
            )
        elif record.status == EvidenceStatus.PROCESSING:
            record.reclaim(worker_id, expires, now=now)
        else:
            raise ConcurrencyError("EvidenceRecord", record.hash, f"record is {record.status.value}")

    @staticmethod
    async def _require(uow: UnitOfWork, hash: str) -> EvidenceRecord:
        record = await uow.evidence.find_by_hash(hash)
        if record is None:
            raise NotFoundError("EvidenceRecord", hash)
        return record


__all__ = ["Clock", "EvidenceLedger"]
