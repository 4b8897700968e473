"""Composition root: wires settings, persistence, the notary client and services."""
from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from datetime import timedelta

import structlog

from notarium.application.events import EventBus, create_event_bus
from notarium.application.services.audit import AuditTrail
from notarium.application.services.batching import BatchCoordinator, BatchWindow
from notarium.application.services.consistency import ConsistencyChecker
from notarium.application.services.ledger import Clock, EvidenceLedger
from notarium.application.services.network import NetworkStateTracker
from notarium.application.services.reconciliation import (
    ReconciliationEngine,
    RetryPolicy,
    Sleep,
    WorkerPool,
)
from notarium.application.services.verification import VerificationCache
from notarium.domain.entities import utcnow
from notarium.domain.exceptions import AuditWriteError
from notarium.domain.repositories import AttestationClient
from notarium.domain.services.change_capture import ChangeCapture
from notarium.infrastructure.config import Settings, get_settings
from notarium.infrastructure.external.notary import NotaryClient
from notarium.infrastructure.persistence.database import Database
from notarium.infrastructure.persistence.unit_of_work import UnitOfWork
from notarium.infrastructure.tasks import TaskRunner

logger = structlog.get_logger(__name__)

# Background jobs stop on these instead of logging and carrying on.
FATAL_ERRORS = (AuditWriteError,)


@dataclass
class Services:
    settings: Settings
    database: Database
    event_bus: EventBus
    capture: ChangeCapture
    notary: AttestationClient
    ledger: EvidenceLedger
    cache: VerificationCache
    consistency: ConsistencyChecker
    engine: ReconciliationEngine
    tracker: NetworkStateTracker
    audit: AuditTrail
    batcher: BatchCoordinator | None
    runner: TaskRunner
    workers: WorkerPool

    def uow(self) -> UnitOfWork:
        return UnitOfWork(self.database.session_factory, self.capture, self.database.write_lock)

    def start_background(self) -> None:
        s = self.settings
        self.workers.start()
        self.runner.submit_periodic(
            "network-sync", s.network.sync_interval_seconds, self.tracker.sync, fatal=FATAL_ERRORS
        )
        self.runner.submit_periodic(
            "verification-sweep", s.verification.sweep_interval_seconds, self.cache.rebuild, fatal=FATAL_ERRORS
        )
        self.runner.submit_periodic(
            "consistency-check", s.consistency.check_interval_seconds, self.consistency.run, fatal=FATAL_ERRORS
        )
        self.runner.submit_periodic(
            "audit-archive", s.audit.archive_interval_seconds, self.audit.archive, fatal=FATAL_ERRORS
        )
        if self.batcher is not None:
            self.runner.submit_periodic(
                "batch-cycle", s.batching.cycle_interval_seconds, self.batcher.run_cycle, fatal=FATAL_ERRORS
            )
        logger.info("background_started", tasks=[task["name"] for task in self.runner.list_tasks()])

    async def shutdown(self) -> None:
        await self.runner.shutdown()
        await self.notary.close()
        await self.database.dispose()
        logger.info("services_stopped")


def build_services(
    settings: Settings | None = None,
    *,
    notary: AttestationClient | None = None,
    rng: random.Random | None = None,
    clock: Clock = utcnow,
    sleep: Sleep = asyncio.sleep,
) -> Services:
    settings = settings or get_settings()
    database = Database(settings.database)
    capture = ChangeCapture()
    event_bus = create_event_bus()
    notary = notary or NotaryClient(settings.notary)

    def uow_factory() -> UnitOfWork:
        return UnitOfWork(database.session_factory, capture, database.write_lock)

    rc = settings.reconciliation
    ledger = EvidenceLedger(uow_factory, event_bus, lease_seconds=rc.lease_seconds, clock=clock)
    cache = VerificationCache(
        uow_factory,
        quality_threshold=settings.verification.quality_threshold,
        risk_threshold=settings.verification.risk_threshold,
        page_size=settings.verification.rebuild_page_size,
        clock=clock,
    )
    consistency = ConsistencyChecker(
        uow_factory,
        cache,
        event_bus,
        auto_heal=settings.consistency.auto_heal,
        page_size=settings.consistency.page_size,
        clock=clock,
    )
    policy = RetryPolicy(
        max_retries=rc.max_retries,
        base_delay_seconds=rc.backoff_base_seconds,
        max_delay_seconds=rc.backoff_max_seconds,
        rng=rng or random.Random(),
    )
    engine = ReconciliationEngine(
        ledger,
        cache,
        notary,
        uow_factory,
        event_bus,
        policy,
        network_name=settings.notary.network_name,
        attempt_timeout_seconds=rc.attempt_timeout_seconds,
        poll_attempts=rc.poll_attempts,
        poll_interval_seconds=rc.poll_interval_seconds,
        clock=clock,
        sleep=sleep,
    )
    tracker = NetworkStateTracker(
        notary,
        uow_factory,
        network_name=settings.notary.network_name,
        staleness_seconds=settings.network.staleness_seconds,
        clock=clock,
    )
    audit = AuditTrail(uow_factory, retention_days=settings.audit.retention_days, clock=clock)

    batcher = None
    if settings.batching.enabled:
        batcher = BatchCoordinator(
            ledger,
            engine,
            notary,
            uow_factory,
            event_bus,
            BatchWindow(
                target_size=settings.batching.target_size,
                flush_interval=timedelta(seconds=settings.batching.flush_interval_seconds),
            ),
            attempt_timeout_seconds=rc.attempt_timeout_seconds,
            clock=clock,
        )

    runner = TaskRunner()
    workers = WorkerPool(
        engine,
        ledger,
        tracker,
        runner,
        workers=rc.workers,
        claim_batch_size=rc.claim_batch_size,
        idle_sleep_seconds=rc.idle_sleep_seconds,
        include_fresh=not settings.batching.enabled,
    )
    logger.info(
        "services_built",
        environment=settings.environment,
        workers=rc.workers,
        batching=settings.batching.enabled,
        notary=settings.notary.base_url,
    )
    return Services(
        settings=settings,
        database=database,
        event_bus=event_bus,
        capture=capture,
        notary=notary,
        ledger=ledger,
        cache=cache,
        consistency=consistency,
        engine=engine,
        tracker=tracker,
        audit=audit,
        batcher=batcher,
        runner=runner,
        workers=workers,
    )


__all__ = ["FATAL_ERRORS", "Services", "build_services"]
