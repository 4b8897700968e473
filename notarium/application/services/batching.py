"""Batch coordinator: attests many evidence hashes under one combined digest.

The digest is the sha256 of the sorted, de-duplicated member hashes joined
without a separator, so the same set of hashes always produces the same
batch regardless of the order they were gathered in.
"""
from __future__ import annotations

import asyncio
import hashlib
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import structlog

from notarium.application.events import EventBus
from notarium.application.services.ledger import Clock, EvidenceLedger
from notarium.application.services.reconciliation import (
    Outcome,
    ReconciliationEngine,
    ReconciliationResult,
)
from notarium.domain.entities import (
    ActorContext,
    AttestationBatch,
    AttestationTransaction,
    BatchStatus,
    ErrorCode,
    EvidenceStatus,
    StatusReport,
    TransitionContext,
    normalize_hash,
    utcnow,
)
from notarium.domain.exceptions import (
    AttestationError,
    ConcurrencyError,
    DuplicateError,
    InvalidTransitionError,
    NotFoundError,
    RejectedError,
    TransientError,
    ValidationError,
)
from notarium.domain.repositories import AttestationClient
from notarium.infrastructure.persistence.unit_of_work import UnitOfWorkFactory

logger = structlog.get_logger(__name__)

BATCH_NAMESPACE = uuid.UUID("6f1c9a52-3b8e-5d47-9a0e-2c4b7f8d1e63")

_LOST_CLAIM = (ConcurrencyError, InvalidTransitionError, DuplicateError, NotFoundError)


def batch_digest(member_hashes: Iterable[str]) -> tuple[str, list[str]]:
    """Return ``(digest, members)`` with members validated, de-duplicated and sorted."""
    members = sorted({normalize_hash(h) for h in member_hashes})
    if not members:
        raise ValidationError("a batch needs at least one member", field="member_hashes")
    return hashlib.sha256("".join(members).encode("ascii")).hexdigest(), members


def form_batch(candidate_hashes: Iterable[str]) -> AttestationBatch:
    """Build a pending batch. Pure; the batch id is derived from the digest."""
    digest, members = batch_digest(candidate_hashes)
    return AttestationBatch(
        id=str(uuid.uuid5(BATCH_NAMESPACE, digest)),
        batch_digest=digest,
        member_hashes=members,
    )


@dataclass(frozen=True)
class BatchWindow:
    target_size: int
    flush_interval: timedelta

    def should_flush(self, count: int, oldest_created_at: datetime | None, now: datetime) -> bool:
        if count == 0:
            return False
        if count >= self.target_size:
            return True
        return oldest_created_at is not None and now - oldest_created_at >= self.flush_interval


@dataclass(frozen=True)
class BatchCycleResult:
    batch_id: str
    batch_digest: str
    status: BatchStatus
    members: list[ReconciliationResult] = field(default_factory=list)


class BatchCoordinator:

    def __init__(
        self,
        ledger: EvidenceLedger,
        engine: ReconciliationEngine,
        notary: AttestationClient,
        uow_factory: UnitOfWorkFactory,
        event_bus: EventBus,
        window: BatchWindow,
        *,
        attempt_timeout_seconds: float = 60.0,
        clock: Clock = utcnow,
    ) -> None:
        self._ledger = ledger
        self._engine = engine
        self._notary = notary
        self._uow_factory = uow_factory
        self._event_bus = event_bus
        self.window = window
        self._attempt_timeout = attempt_timeout_seconds
        self._clock = clock

    async def run_cycle(self, worker_id: str = "batcher") -> BatchCycleResult | None:
        """Gather, claim, submit and settle one batch if the window is due."""
        now = self._clock()
        async with self._uow_factory() as uow:
            candidates = await uow.evidence.find_batch_candidates(now, self.window.target_size)
        oldest = min((record.created_at for record in candidates), default=None)
        if not self.window.should_flush(len(candidates), oldest, now):
            return None

        actor = ActorContext.worker(worker_id)
        claimed: list[str] = []
        for record in candidates:
            try:
                await self._ledger.claim(record.hash, worker_id, actor)
            except (ConcurrencyError, NotFoundError):
                continue
            claimed.append(record.hash)
        if not claimed:
            return None

        batch = form_batch(claimed)
        try:
            async with self._uow_factory() as uow:
                await uow.batches.save(batch, actor)
                for hash in batch.member_hashes:
                    await self._ledger.apply_batch_assignment(uow, hash, batch.id, worker_id, actor)
        except _LOST_CLAIM as exc:
            logger.warning("batch_not_formed", batch_digest=batch.batch_digest, reason=exc.message)
            await self._release(batch.member_hashes, worker_id, actor, error=None)
            return None
        logger.info("batch_formed", batch_id=batch.id, batch_digest=batch.batch_digest, members=batch.member_count)

        try:
            report = await asyncio.wait_for(self._attest(batch, actor), timeout=self._attempt_timeout)
        except asyncio.TimeoutError:
            error = TransientError(f"batch attempt exceeded {self._attempt_timeout}s deadline", ErrorCode.TIMEOUT.value)
            return await self._fail(batch, worker_id, actor, error)
        except TransientError as exc:
            return await self._fail(batch, worker_id, actor, exc)
        except RejectedError as exc:
            return await self._reject(batch, worker_id, actor, exc)
        return await self._confirm(batch, worker_id, actor, report)

    async def _attest(self, batch: AttestationBatch, actor: ActorContext) -> StatusReport:
        receipt = await self._notary.submit_batch(
            batch.batch_digest, batch.member_hashes, {"memberCount": batch.member_count}
        )
        async with self._uow_factory() as uow:
            batch.mark_submitted(receipt.tx_ref, self._clock())
            await uow.batches.update(batch, actor)
            uow.track(batch)
        await self._event_bus.publish_all(uow.events)
        return await self._engine.poll(receipt.tx_ref)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def _confirm(
        self, batch: AttestationBatch, worker_id: str, actor: ActorContext, report: StatusReport
    ) -> BatchCycleResult:
        members: list[ReconciliationResult] = []
        try:
            async with self._uow_factory() as uow:
                for hash in batch.member_hashes:
                    record = await self._engine.confirm_in(
                        uow, hash, worker_id, report, actor, batch_id=batch.id
                    )
                    members.append(ReconciliationResult(
                        hash, Outcome.CONFIRMED, retry_count=record.retry_count, tx_ref=report.tx_ref
                    ))
                batch.settle(BatchStatus.CONFIRMED, now=self._clock())
                await uow.batches.update(batch, actor)
                uow.track(batch)
        except _LOST_CLAIM as exc:
            # Members fall back to individual attempts once their leases lapse.
            logger.error("batch_confirmation_not_applied", batch_id=batch.id, reason=exc.message)
            return BatchCycleResult(batch.id, batch.batch_digest, BatchStatus.SUBMITTED)
        await self._event_bus.publish_all(uow.events)
        return BatchCycleResult(batch.id, batch.batch_digest, BatchStatus.CONFIRMED, members)

    async def _reject(
        self, batch: AttestationBatch, worker_id: str, actor: ActorContext, error: AttestationError
    ) -> BatchCycleResult:
        """Members go back to ``pending`` for individual submission, without a retry penalty."""
        await self._settle(batch, BatchStatus.REJECTED, error.message, actor)
        batch_error = AttestationError(error.message, ErrorCode.BATCH_REJECTED.value)
        members = await self._release(batch.member_hashes, worker_id, actor, error=batch_error)
        logger.warning("batch_rejected", batch_id=batch.id, members=len(members), reason=error.message)
        return BatchCycleResult(batch.id, batch.batch_digest, BatchStatus.REJECTED, members)

    async def _fail(
        self, batch: AttestationBatch, worker_id: str, actor: ActorContext, error: AttestationError
    ) -> BatchCycleResult:
        await self._settle(batch, BatchStatus.FAILED, error.message, actor)
        members = []
        for hash in batch.member_hashes:
            tx = await self._open_member_attempt(batch, hash, actor)
            members.append(await self._engine.resolve_transient(hash, worker_id, error, tx))
        logger.warning("batch_failed", batch_id=batch.id, error_code=error.error_code)
        return BatchCycleResult(batch.id, batch.batch_digest, BatchStatus.FAILED, members)

    async def _open_member_attempt(
        self, batch: AttestationBatch, hash: str, actor: ActorContext
    ) -> AttestationTransaction | None:
        """Record the member's share of a failed batch so its retry history is complete."""
        async with self._uow_factory() as uow:
            record = await uow.evidence.find_by_hash(hash)
            if record is None:
                return None
            tx = AttestationTransaction(
                tx_ref=batch.tx_ref,
                evidence_hash=hash,
                batch_id=batch.id,
                network_name=self._engine.network_name,
                submitted_at=batch.submitted_at or self._clock(),
                retry_attempt=record.retry_count,
            )
            await uow.transactions.supersede_open(hash, actor)
            await uow.transactions.save(tx, actor)
        return tx

    async def _settle(
        self, batch: AttestationBatch, status: BatchStatus, error_message: str, actor: ActorContext
    ) -> None:
        async with self._uow_factory() as uow:
            batch.settle(status, error_message, now=self._clock())
            await uow.batches.update(batch, actor)
            uow.track(batch)
        await self._event_bus.publish_all(uow.events)

    async def _release(
        self,
        hashes: list[str],
        worker_id: str,
        actor: ActorContext,
        error: AttestationError | None,
    ) -> list[ReconciliationResult]:
        results = []
        for hash in hashes:
            context = TransitionContext(
                lease_owner=worker_id,
                next_retry_at=self._clock(),
                error_code=error.error_code if error else None,
                error_message=error.message if error else None,
            )
            try:
                record = await self._ledger.transition(hash, EvidenceStatus.PENDING, context, actor)
            except _LOST_CLAIM as exc:
                logger.warning("claim_lost", hash=hash, worker_id=worker_id, reason=exc.message)
                results.append(ReconciliationResult(hash, Outcome.SKIPPED))
                continue
            results.append(ReconciliationResult(
                hash, Outcome.RETRY_SCHEDULED, retry_count=record.retry_count,
                error_code=context.error_code,
            ))
        return results


__all__ = [
    "BATCH_NAMESPACE",
    "BatchCoordinator",
    "BatchCycleResult",
    "BatchWindow",
    "batch_digest",
    "form_batch",
]
