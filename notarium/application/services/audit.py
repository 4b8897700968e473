"""Audit trail queries: history, summaries, chain verification and archival."""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import timedelta

import structlog

from notarium.application.services.ledger import Clock
from notarium.domain.entities import (
    SYSTEM_ACTOR,
    ActorContext,
    AuditLogEntry,
    AuditOperation,
    AuditSummary,
    utcnow,
)
from notarium.infrastructure.persistence.unit_of_work import UnitOfWorkFactory

logger = structlog.get_logger(__name__)

ARCHIVE_RESOURCE = "audit_logs"


@dataclass(frozen=True)
class ChainVerification:
    resource_type: str
    resource_id: str
    valid: bool
    entries: int
    broken_at: int | None = None
    reason: str | None = None


class AuditTrail:

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        *,
        retention_days: int = 2555,
        clock: Clock = utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self._retention_days = retention_days
        self._clock = clock

    async def history(self, resource_type: str, resource_id: str) -> list[AuditLogEntry]:
        async with self._uow_factory() as uow:
            return await uow.audit_log.list_for_resource(resource_type, resource_id)

    async def summary(self, resource_type: str, resource_id: str, days_back: int = 30) -> AuditSummary:
        since = self._clock() - timedelta(days=days_back)
        async with self._uow_factory() as uow:
            entries = await uow.audit_log.list_since(resource_type, resource_id, since)
        return AuditSummary(
            resource_type=resource_type,
            resource_id=resource_id,
            total_changes=len(entries),
            by_operation=dict(Counter(entry.action.split("_", 1)[0] for entry in entries)),
            by_magnitude=dict(Counter(entry.change_magnitude.value for entry in entries)),
            last_change_at=max((entry.occurred_at for entry in entries), default=None),
            unique_actors=len({entry.actor_identity for entry in entries}),
        )

    async def verify_chain(self, resource_type: str, resource_id: str) -> ChainVerification:
        """Recompute every digest of the resource's chain and check the links.

        The oldest surviving entry anchors the chain, so archival does not
        break verification.
        """
        entries = await self.history(resource_type, resource_id)
        previous = entries[0].previous_digest if entries else None
        for entry in entries:
            if entry.previous_digest != previous:
                return self._broken(resource_type, resource_id, entries, entry, "link mismatch")
            if entry.compute_digest(entry.previous_digest) != entry.entry_digest:
                return self._broken(resource_type, resource_id, entries, entry, "digest mismatch")
            previous = entry.entry_digest
        return ChainVerification(resource_type, resource_id, valid=True, entries=len(entries))

    @staticmethod
    def _broken(
        resource_type: str,
        resource_id: str,
        entries: list[AuditLogEntry],
        entry: AuditLogEntry,
        reason: str,
    ) -> ChainVerification:
        logger.error(
            "audit_chain_broken",
            resource_type=resource_type,
            resource_id=resource_id,
            sequence=entry.sequence,
            reason=reason,
        )
        return ChainVerification(
            resource_type, resource_id, valid=False, entries=len(entries), broken_at=entry.sequence, reason=reason
        )

    async def archive(self, actor: ActorContext = SYSTEM_ACTOR, older_than_days: int | None = None) -> int:
        """Move entries past retention into ``audit_logs_archive``.

        The move is itself recorded as a deletion against ``audit_logs``.
        """
        days = self._retention_days if older_than_days is None else older_than_days
        cutoff = self._clock() - timedelta(days=days)
        async with self._uow_factory() as uow:
            moved = await uow.audit_log.archive_before(cutoff)
            if moved:
                await uow.recorder.record(
                    ARCHIVE_RESOURCE,
                    AuditOperation.DELETE,
                    {"archived_entries": moved, "cutoff": cutoff.isoformat()},
                    None,
                    actor,
                    resource_id=ARCHIVE_RESOURCE,
                )
        logger.info("audit_archived", entries=moved, cutoff=cutoff.isoformat())
        return moved


__all__ = ["AuditTrail", "ChainVerification"]
