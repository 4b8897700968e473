"""Consistency checker: cross-checks evidence records against their attestation transactions.

Three checks run on every pass:

* transaction integrity -- every ``confirmed`` record has a confirmed
  transaction carrying the same reference
* settled confirmations -- no confirmed transaction belongs to a record that
  is not ``confirmed``
* duplicates -- no hash is stored twice, ignoring case

A record whose reference drifted from its confirmed transaction is pointed
back at it when ``auto_heal`` is on; every other finding is reported only.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

import structlog

from notarium.application.events import EventBus
from notarium.application.services.ledger import Clock
from notarium.application.services.verification import VerificationCache
from notarium.domain.entities import ActorContext, EvidenceStatus, utcnow
from notarium.domain.exceptions import ConcurrencyError
from notarium.infrastructure.persistence.unit_of_work import UnitOfWorkFactory

logger = structlog.get_logger(__name__)

CONSISTENCY_ACTOR = ActorContext(identity="consistency-checker", actor_type="system")

ALERT_SCORE = 95
HIGH_SEVERITY_SCORE = 90


class InconsistencyKind(str, Enum):
    MISSING_TRANSACTION = "missing_transaction"
    TX_REF_MISMATCH = "tx_ref_mismatch"
    STATUS_MISMATCH = "status_mismatch"
    DUPLICATE_HASH = "duplicate_hash"


@dataclass(frozen=True)
class Inconsistency:
    kind: InconsistencyKind
    hash: str
    detail: str
    healed: bool = False


@dataclass(frozen=True)
class ConsistencyReport:
    checked: int
    checked_at: datetime
    duration_ms: float
    inconsistencies: list[Inconsistency] = field(default_factory=list)

    @property
    def score(self) -> int:
        """Percentage of checked items found consistent; 100 when nothing was checked."""
        if self.checked == 0:
            return 100
        return max(0, round((self.checked - len(self.inconsistencies)) / self.checked * 100))

    @property
    def healed(self) -> int:
        return sum(1 for item in self.inconsistencies if item.healed)

    def by_kind(self, kind: InconsistencyKind) -> list[Inconsistency]:
        return [item for item in self.inconsistencies if item.kind == kind]


class ConsistencyChecker:

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        cache: VerificationCache,
        event_bus: EventBus,
        *,
        auto_heal: bool = True,
        page_size: int = 500,
        clock: Clock = utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self._cache = cache
        self._event_bus = event_bus
        self.auto_heal = auto_heal
        self._page_size = page_size
        self._clock = clock
        self.last_report: ConsistencyReport | None = None

    async def run(self) -> ConsistencyReport:
        """Run every check once and keep the result as ``last_report``."""
        started = time.perf_counter()
        checked = 0
        found: list[Inconsistency] = []
        for check in (self._check_transaction_integrity, self._check_settled_confirmations, self._check_duplicates):
            count, items = await check()
            checked += count
            found.extend(items)

        report = ConsistencyReport(
            checked=checked,
            checked_at=self._clock(),
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
            inconsistencies=found,
        )
        self.last_report = report
        for item in found:
            logger.warning(
                "inconsistency_found", kind=item.kind.value, hash=item.hash, detail=item.detail, healed=item.healed
            )
        logger.info(
            "consistency_checked",
            checked=report.checked,
            inconsistencies=len(found),
            healed=report.healed,
            score=report.score,
            duration_ms=report.duration_ms,
        )
        if report.score < ALERT_SCORE:
            logger.error(
                "consistency_alert",
                severity="high" if report.score < HIGH_SEVERITY_SCORE else "medium",
                score=report.score,
                inconsistencies=len(found),
            )
        return report

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    async def _check_transaction_integrity(self) -> tuple[int, list[Inconsistency]]:
        checked = 0
        found: list[Inconsistency] = []
        drifted: list[tuple[str, str]] = []
        after: str | None = None
        while True:
            async with self._uow_factory() as uow:
                page = await uow.evidence.page_by_status(EvidenceStatus.CONFIRMED, after, self._page_size)
                for record in page:
                    checked += 1
                    tx = await uow.transactions.find_confirmed(record.hash)
                    if tx is None or not tx.tx_ref:
                        found.append(Inconsistency(
                            InconsistencyKind.MISSING_TRANSACTION,
                            record.hash,
                            "record confirmed without a confirmed attestation transaction",
                        ))
                    elif tx.tx_ref != record.attestation_tx_ref:
                        detail = f"record ref {record.attestation_tx_ref!r} != tx ref {tx.tx_ref!r}"
                        drifted.append((record.hash, detail))
            if len(page) < self._page_size:
                break
            after = page[-1].hash

        for hash, detail in drifted:
            healed = self.auto_heal and await self._restore_ref(hash)
            found.append(Inconsistency(InconsistencyKind.TX_REF_MISMATCH, hash, detail, healed=healed))
        return checked, found

    async def _check_settled_confirmations(self) -> tuple[int, list[Inconsistency]]:
        async with self._uow_factory() as uow:
            transactions = await uow.transactions.find_confirmed_for_unconfirmed(self._page_size)
            found = []
            for tx in transactions:
                record = await uow.evidence.find_by_hash(tx.evidence_hash)
                status = record.status.value if record else "missing"
                found.append(Inconsistency(
                    InconsistencyKind.STATUS_MISMATCH,
                    tx.evidence_hash,
                    f"transaction {tx.tx_ref} confirmed but record is {status}",
                ))
        return len(transactions), found

    async def _check_duplicates(self) -> tuple[int, list[Inconsistency]]:
        async with self._uow_factory() as uow:
            duplicates = await uow.evidence.duplicate_hashes()
        found = [
            Inconsistency(InconsistencyKind.DUPLICATE_HASH, hash, f"stored {count} times")
            for hash, count in sorted(duplicates.items())
        ]
        return len(duplicates), found

    # ------------------------------------------------------------------
    # Healing
    # ------------------------------------------------------------------

    async def _restore_ref(self, hash: str) -> bool:
        try:
            async with self._uow_factory() as uow:
                record = await uow.evidence.find_by_hash(hash)
                tx = await uow.transactions.find_confirmed(hash)
                if record is None or tx is None or not tx.tx_ref or record.status != EvidenceStatus.CONFIRMED:
                    return False
                previous = record.attestation_tx_ref
                record.restore_attestation_ref(tx.tx_ref, now=self._clock())
                await uow.evidence.update(record, CONSISTENCY_ACTOR)
                await self._cache.refresh_in(uow, hash)
                uow.track(record)
        except ConcurrencyError as exc:
            logger.warning("auto_heal_skipped", hash=hash, reason=exc.message)
            return False
        await self._event_bus.publish_all(uow.events)
        logger.info("record_auto_healed", hash=hash, previous_tx_ref=previous, tx_ref=tx.tx_ref)
        return True


__all__ = [
    "CONSISTENCY_ACTOR",
    "ConsistencyChecker",
    "ConsistencyReport",
    "Inconsistency",
    "InconsistencyKind",
]
