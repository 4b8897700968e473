"""Reconciliation engine: drives evidence records through the attestation lifecycle.

A worker claims a record, submits it to the notary (or reuses the reference
of an earlier submission), polls for confirmation and writes the outcome
back. Every outcome is expressed as a :class:`ReconciliationResult`; notary
errors never escape :meth:`ReconciliationEngine.process`.
"""
from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import structlog

from notarium.application.events import EventBus
from notarium.application.services.ledger import Clock, EvidenceLedger
from notarium.application.services.network import NetworkStateTracker
from notarium.application.services.verification import VerificationCache
from notarium.domain.entities import (
    ActorContext,
    AttestationStatus,
    AttestationTransaction,
    ErrorCode,
    EvidenceRecord,
    EvidenceStatus,
    StatusReport,
    TransitionContext,
    utcnow,
)
from notarium.domain.exceptions import (
    AttestationError,
    AuditWriteError,
    ConcurrencyError,
    DuplicateError,
    InvalidTransitionError,
    NotFoundError,
    RejectedError,
    TransientError,
)
from notarium.domain.repositories import AttestationClient
from notarium.infrastructure.persistence.unit_of_work import UnitOfWork, UnitOfWorkFactory
from notarium.infrastructure.tasks import TaskRunner

logger = structlog.get_logger(__name__)

Sleep = Callable[[float], Awaitable[Any]]

# Losing the claim between read and write surfaces as one of these.
_LOST_CLAIM = (ConcurrencyError, InvalidTransitionError, DuplicateError)


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryDecision:
    status: EvidenceStatus
    retry_count: int
    next_retry_at: datetime | None = None


@dataclass
class RetryPolicy:
    """Exponential backoff with jitter, bounded by ``max_retries``."""
    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    rng: random.Random = field(default_factory=random.Random)

    def get_delay(self, attempt: int) -> float:
        delay = self.base_delay_seconds * (2 ** attempt) + self.rng.uniform(0, self.base_delay_seconds)
        return min(delay, self.max_delay_seconds)

    def next_step(self, retry_count: int, now: datetime) -> RetryDecision:
        """Where a record with ``retry_count`` goes after another transient failure."""
        attempts = retry_count + 1
        if attempts >= self.max_retries:
            return RetryDecision(EvidenceStatus.FAILED, max(retry_count, self.max_retries))
        return RetryDecision(
            EvidenceStatus.PENDING,
            attempts,
            now + timedelta(seconds=self.get_delay(retry_count)),
        )


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

class Outcome(str, Enum):
    CONFIRMED = "confirmed"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    REJECTED = "rejected"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ReconciliationResult:
    hash: str
    outcome: Outcome
    retry_count: int = 0
    error_code: str | None = None
    tx_ref: str | None = None


@dataclass
class _Attempt:
    record: EvidenceRecord
    tx: AttestationTransaction | None = None


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ReconciliationEngine:

    def __init__(
        self,
        ledger: EvidenceLedger,
        cache: VerificationCache,
        notary: AttestationClient,
        uow_factory: UnitOfWorkFactory,
        event_bus: EventBus,
        policy: RetryPolicy,
        *,
        network_name: str,
        attempt_timeout_seconds: float = 60.0,
        poll_attempts: int = 5,
        poll_interval_seconds: float = 2.0,
        clock: Clock = utcnow,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._ledger = ledger
        self._cache = cache
        self._notary = notary
        self._uow_factory = uow_factory
        self._event_bus = event_bus
        self.policy = policy
        self._network_name = network_name
        self._attempt_timeout = attempt_timeout_seconds
        self._poll_attempts = poll_attempts
        self._poll_interval = poll_interval_seconds
        self._clock = clock
        self._sleep = sleep

    @property
    def network_name(self) -> str:
        return self._network_name

    async def process(self, hash: str, worker_id: str) -> ReconciliationResult:
        """Run one attestation attempt for ``hash`` on behalf of ``worker_id``."""
        actor = ActorContext.worker(worker_id)
        try:
            record = await self._ledger.claim(hash, worker_id, actor)
        except (ConcurrencyError, NotFoundError) as exc:
            logger.debug("claim_skipped", hash=hash, worker_id=worker_id, reason=exc.message)
            return ReconciliationResult(hash, Outcome.SKIPPED)

        attempt = _Attempt(record)
        try:
            report = await asyncio.wait_for(self._attest(attempt, worker_id, actor), timeout=self._attempt_timeout)
        except asyncio.TimeoutError:
            logger.warning("attempt_deadline_exceeded", hash=record.hash, timeout=self._attempt_timeout)
            error = TransientError(
                f"attempt exceeded {self._attempt_timeout}s deadline", ErrorCode.TIMEOUT.value
            )
            return await self.resolve_transient(record.hash, worker_id, error, attempt.tx)
        except TransientError as exc:
            return await self.resolve_transient(record.hash, worker_id, exc, attempt.tx)
        except RejectedError as exc:
            return await self.resolve_rejected(record.hash, worker_id, exc, attempt.tx)
        except _LOST_CLAIM as exc:
            logger.warning("claim_lost", hash=record.hash, worker_id=worker_id, reason=exc.message)
            return ReconciliationResult(record.hash, Outcome.SKIPPED)
        return await self.resolve_confirmed(record.hash, worker_id, report, attempt.tx)

    # ------------------------------------------------------------------
    # Attempt
    # ------------------------------------------------------------------

    async def _attest(self, attempt: _Attempt, worker_id: str, actor: ActorContext) -> StatusReport:
        record = attempt.record
        attempt.tx = await self._reusable_tx(record)
        if attempt.tx is not None:
            logger.info("submission_reused", hash=record.hash, tx_ref=attempt.tx.tx_ref)
        else:
            try:
                receipt = await self._notary.submit(record.hash, self.submission_metadata(record))
            except AttestationError:
                attempt.tx = await self._open_attempt(record, worker_id, actor, tx_ref=None)
                raise
            attempt.tx = await self._open_attempt(record, worker_id, actor, tx_ref=receipt.tx_ref)
        return await self.poll(attempt.tx.tx_ref)

    async def poll(self, tx_ref: str) -> StatusReport:
        """Poll until confirmed or rejected, at most ``poll_attempts`` times."""
        for i in range(self._poll_attempts):
            report = await self._notary.poll_status(tx_ref)
            if report.status == AttestationStatus.CONFIRMED:
                return report
            if report.status == AttestationStatus.REJECTED:
                raise RejectedError(report.error or "notary rejected the attestation", ErrorCode.REJECTED.value)
            if i + 1 < self._poll_attempts:
                await self._sleep(self._poll_interval)
        raise TransientError(
            f"{tx_ref} unconfirmed after {self._poll_attempts} polls", ErrorCode.CONFIRMATION_PENDING.value
        )

    async def _reusable_tx(self, record: EvidenceRecord) -> AttestationTransaction | None:
        if not record.attestation_tx_ref:
            return None
        async with self._uow_factory() as uow:
            latest = await uow.transactions.latest_for_hash(record.hash)
        if (
            latest is None
            or not latest.is_open
            or latest.tx_ref != record.attestation_tx_ref
            or latest.error_code == ErrorCode.TX_NOT_FOUND.value
        ):
            return None
        return latest

    async def _open_attempt(
        self,
        record: EvidenceRecord,
        worker_id: str,
        actor: ActorContext,
        tx_ref: str | None,
    ) -> AttestationTransaction:
        tx = AttestationTransaction(
            tx_ref=tx_ref,
            evidence_hash=record.hash,
            network_name=self._network_name,
            submitted_at=self._clock(),
            retry_attempt=record.retry_count,
        )
        async with self._uow_factory() as uow:
            await uow.transactions.supersede_open(record.hash, actor)
            await uow.transactions.save(tx, actor)
            if tx_ref is not None:
                await self._ledger.apply_submission(uow, record.hash, tx_ref, worker_id, actor)
        return tx

    def submission_metadata(self, record: EvidenceRecord) -> dict[str, Any]:
        return {
            "originalReference": record.original_reference,
            "title": record.title,
            "captureTimestamp": record.capture_timestamp.isoformat(),
            "submitter": record.submitter_identity,
        }

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve_confirmed(
        self,
        hash: str,
        worker_id: str,
        report: StatusReport,
        tx: AttestationTransaction | None,
    ) -> ReconciliationResult:
        actor = ActorContext.worker(worker_id)
        try:
            async with self._uow_factory() as uow:
                record = await self.confirm_in(uow, hash, worker_id, report, actor, tx=tx)
        except _LOST_CLAIM as exc:
            logger.warning("claim_lost", hash=hash, worker_id=worker_id, reason=exc.message)
            return ReconciliationResult(hash, Outcome.SKIPPED)
        await self._event_bus.publish_all(uow.events)
        return ReconciliationResult(
            hash, Outcome.CONFIRMED, retry_count=record.retry_count, tx_ref=record.attestation_tx_ref
        )

    async def confirm_in(
        self,
        uow: UnitOfWork,
        hash: str,
        worker_id: str,
        report: StatusReport,
        actor: ActorContext,
        *,
        tx: AttestationTransaction | None = None,
        batch_id: str | None = None,
    ) -> EvidenceRecord:
        """Confirm the transaction and the record, then refresh the cache entry."""
        now = self._clock()
        if tx is None:
            await uow.transactions.supersede_open(hash, actor)
            record = await uow.evidence.find_by_hash(hash)
            tx = AttestationTransaction(
                tx_ref=report.tx_ref,
                evidence_hash=hash,
                batch_id=batch_id,
                network_name=self._network_name,
                submitted_at=now,
                retry_attempt=record.retry_count if record else 0,
            )
            tx.confirm(report, now)
            await uow.transactions.save(tx, actor)
        else:
            tx.confirm(report, now)
            await uow.transactions.update(tx, actor)
        record = await self._ledger.apply_transition(
            uow,
            hash,
            EvidenceStatus.CONFIRMED,
            TransitionContext(
                lease_owner=worker_id,
                attestation_tx_ref=report.tx_ref,
                confirmation_count=report.confirmations,
            ),
            actor,
        )
        await self._cache.refresh_in(uow, hash)
        return record

    async def resolve_rejected(
        self,
        hash: str,
        worker_id: str,
        error: AttestationError,
        tx: AttestationTransaction | None,
    ) -> ReconciliationResult:
        actor = ActorContext.worker(worker_id)
        try:
            async with self._uow_factory() as uow:
                if tx is not None:
                    tx.record_failure(error.error_code, error.message, now=self._clock())
                    await uow.transactions.update(tx, actor)
                record = await self._ledger.apply_transition(
                    uow,
                    hash,
                    EvidenceStatus.REJECTED,
                    TransitionContext(
                        lease_owner=worker_id, error_code=error.error_code, error_message=error.message
                    ),
                    actor,
                )
                await self._cache.refresh_in(uow, hash)
        except _LOST_CLAIM as exc:
            logger.warning("claim_lost", hash=hash, worker_id=worker_id, reason=exc.message)
            return ReconciliationResult(hash, Outcome.SKIPPED)
        await self._event_bus.publish_all(uow.events)
        logger.warning("evidence_rejected", hash=hash, error_code=error.error_code, reason=error.message)
        return ReconciliationResult(hash, Outcome.REJECTED, retry_count=record.retry_count, error_code=error.error_code)

    async def resolve_transient(
        self,
        hash: str,
        worker_id: str,
        error: AttestationError,
        tx: AttestationTransaction | None,
    ) -> ReconciliationResult:
        """Schedule a retry, or fail the record once the retry budget is spent.

        Also releases the claim, which is how a timed-out worker gives the
        record back.
        """
        actor = ActorContext.worker(worker_id)
        try:
            async with self._uow_factory() as uow:
                record = await self.retry_in(uow, hash, worker_id, error, actor, tx=tx)
        except _LOST_CLAIM as exc:
            logger.warning("claim_lost", hash=hash, worker_id=worker_id, reason=exc.message)
            return ReconciliationResult(hash, Outcome.SKIPPED)
        await self._event_bus.publish_all(uow.events)
        if record.status == EvidenceStatus.FAILED:
            logger.warning("evidence_failed", hash=hash, retry_count=record.retry_count, error_code=error.error_code)
            outcome = Outcome.FAILED
        else:
            logger.info(
                "retry_scheduled",
                hash=hash,
                retry_count=record.retry_count,
                next_retry_at=record.next_retry_at.isoformat() if record.next_retry_at else None,
                error_code=error.error_code,
            )
            outcome = Outcome.RETRY_SCHEDULED
        return ReconciliationResult(hash, outcome, retry_count=record.retry_count, error_code=error.error_code)

    async def retry_in(
        self,
        uow: UnitOfWork,
        hash: str,
        worker_id: str,
        error: AttestationError,
        actor: ActorContext,
        *,
        tx: AttestationTransaction | None = None,
    ) -> EvidenceRecord:
        now = self._clock()
        current = await uow.evidence.find_by_hash(hash)
        if current is None:
            raise NotFoundError("EvidenceRecord", hash)
        decision = self.policy.next_step(current.retry_count, now)
        if tx is not None:
            tx.record_failure(error.error_code, error.message, decision.next_retry_at, now)
            await uow.transactions.update(tx, actor)
        record = await self._ledger.apply_transition(
            uow,
            hash,
            decision.status,
            TransitionContext(
                lease_owner=worker_id,
                retry_count=decision.retry_count,
                next_retry_at=decision.next_retry_at,
                error_code=error.error_code,
                error_message=error.message,
            ),
            actor,
        )
        if record.is_terminal:
            await self._cache.refresh_in(uow, hash)
        return record


# ---------------------------------------------------------------------------
# Worker pool
# ---------------------------------------------------------------------------

class WorkerPool:
    """N asyncio workers pulling claimable records through the engine."""

    def __init__(
        self,
        engine: ReconciliationEngine,
        ledger: EvidenceLedger,
        tracker: NetworkStateTracker,
        runner: TaskRunner,
        *,
        workers: int = 4,
        claim_batch_size: int = 50,
        idle_sleep_seconds: float = 1.0,
        include_fresh: bool = True,
    ) -> None:
        self._engine = engine
        self._ledger = ledger
        self._tracker = tracker
        self._runner = runner
        self._workers = workers
        self._claim_batch_size = claim_batch_size
        self._idle_sleep = idle_sleep_seconds
        self._include_fresh = include_fresh

    @property
    def task_names(self) -> list[str]:
        return [f"reconciliation-worker-{i}" for i in range(self._workers)]

    def start(self) -> None:
        for i, name in enumerate(self.task_names):
            self._runner.submit(name, self._loop(f"w{i}"), kind="worker")
        logger.info("worker_pool_started", workers=self._workers, include_fresh=self._include_fresh)

    def stop(self) -> None:
        for name in self.task_names:
            self._runner.cancel(name)
        logger.info("worker_pool_stopped", workers=self._workers)

    async def run_once(self, worker_id: str) -> list[ReconciliationResult]:
        """One pass over the currently claimable records."""
        hashes = await self._ledger.claimable(self._claim_batch_size, self._include_fresh)
        results = []
        for hash in hashes:
            result = await self._engine.process(hash, worker_id)
            if result.outcome != Outcome.SKIPPED:
                results.append(result)
        return results

    async def _loop(self, worker_id: str) -> None:
        structlog.contextvars.bind_contextvars(worker_id=worker_id)
        logger.info("worker_started")
        while True:
            if not self._tracker.is_available():
                logger.info("worker_paused", reason="notary offline")
                await asyncio.sleep(self._idle_sleep)
                continue
            try:
                results = await self.run_once(worker_id)
            except AuditWriteError:
                logger.critical("worker_stopped_audit_failure", exc_info=True)
                raise
            except Exception as e:
                logger.error("worker_iteration_failed", error=str(e), exc_info=True)
                results = []
            if not results:
                await asyncio.sleep(self._idle_sleep)


__all__ = [
    "Outcome",
    "ReconciliationEngine",
    "ReconciliationResult",
    "RetryDecision",
    "RetryPolicy",
    "WorkerPool",
]
