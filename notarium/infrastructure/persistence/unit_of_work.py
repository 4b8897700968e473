"""Unit of work -- one session, one transaction, one audit recorder."""
from __future__ import annotations

import asyncio
from collections.abc import Callable
from types import TracebackType

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notarium.domain.entities import DomainEvent
from notarium.domain.entities.base import AggregateRoot
from notarium.domain.exceptions import AuditWriteError
from notarium.domain.services.change_capture import ChangeCapture
from notarium.infrastructure.persistence.auditing import AuditRecorder
from notarium.infrastructure.persistence.repositories import (
    SQLAlchemyAttestationTransactionRepository,
    SQLAlchemyAuditLogRepository,
    SQLAlchemyBatchRepository,
    SQLAlchemyEvidenceRepository,
    SQLAlchemyNetworkStateRepository,
    SQLAlchemyVerificationCacheRepository,
)

logger = structlog.get_logger(__name__)


class UnitOfWork:
    """Async context manager scoping repositories to a single transaction.

    Commits on clean exit and rolls back on error. Audit entries for failed
    mutations are written afterwards in their own transaction; if that write
    fails, ``AuditWriteError`` replaces whatever was being raised.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        capture: ChangeCapture,
        lock: asyncio.Lock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._capture = capture
        self._lock = lock
        self._aggregates: list[AggregateRoot] = []
        self.events: list[DomainEvent] = []

    async def __aenter__(self) -> UnitOfWork:
        if self._lock is not None:
            await self._lock.acquire()
        self.session = self._session_factory()
        self.audit_log = SQLAlchemyAuditLogRepository(self.session)
        self.recorder = AuditRecorder(self.audit_log, self._capture)
        self.evidence = SQLAlchemyEvidenceRepository(self.session, self.recorder)
        self.transactions = SQLAlchemyAttestationTransactionRepository(self.session, self.recorder)
        self.batches = SQLAlchemyBatchRepository(self.session, self.recorder)
        self.network = SQLAlchemyNetworkStateRepository(self.session, self.recorder)
        self.cache = SQLAlchemyVerificationCacheRepository(self.session)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        try:
            if exc_type is None:
                try:
                    await self.session.commit()
                except SQLAlchemyError as commit_error:
                    await self.session.rollback()
                    self.recorder.demote_recorded(commit_error)
                    await self._write_deferred()
                    raise
                self.events = [event for agg in self._aggregates for event in agg.collect_events()]
            else:
                await self.session.rollback()
                await self._write_deferred()
        finally:
            try:
                await self.session.close()
            finally:
                if self._lock is not None:
                    self._lock.release()

    def track(self, aggregate: AggregateRoot) -> None:
        """Publish ``aggregate``'s pending domain events once the commit succeeds."""
        self._aggregates.append(aggregate)

    async def _write_deferred(self) -> None:
        entries = self.recorder.take_deferred()
        if not entries:
            return
        try:
            async with self._session_factory() as session:
                audit_log = SQLAlchemyAuditLogRepository(session)
                for entry in entries:
                    await audit_log.append(entry)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.critical("audit_failure_entry_lost", count=len(entries), error=str(exc))
            raise AuditWriteError(f"could not persist {len(entries)} failed-operation audit entries") from exc
        logger.info(
            "audit_failure_entries_written",
            count=len(entries),
            actions=[entry.action for entry in entries],
        )


UnitOfWorkFactory = Callable[[], UnitOfWork]


__all__ = ["UnitOfWork", "UnitOfWorkFactory"]
