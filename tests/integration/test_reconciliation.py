"""Integration tests for the reconciliation engine and worker pool.

Covers:
- happy path: submit, poll, confirm, cache refreshed, audit flags
- transient failures: backoff schedule, retry budget, terminal failure
- rejection: terminal, never retried
- idempotent resubmission: pending reference reused, lost reference resubmitted
- leases: a worker whose lease was reclaimed cannot write its outcome
- confirmation count monotonicity
- per-attempt deadline
- worker pool: run_once, pause while the notary is offline
"""
from __future__ import annotations

import asyncio
import random

import pytest
from support import make_hash

from notarium.application.services.reconciliation import (
    Outcome,
    ReconciliationEngine,
    RetryPolicy,
)
from notarium.domain.entities import (
    AttestationStatus,
    ChangeMagnitude,
    EvidenceStatus,
    NetworkSnapshot,
    StatusReport,
    VerificationResult,
)
from notarium.domain.exceptions import RejectedError, TransientError

pytestmark = [pytest.mark.asyncio, pytest.mark.integration]


def _timeout() -> TransientError:
    return TransientError("notary timed out", "timeout")


class TestHappyPath:

    async def test_confirms_and_refreshes_cache(self, services, notary, ingest) -> None:
        await ingest("a")
        result = await services.engine.process(make_hash("a"), "w1")

        assert result.outcome == Outcome.CONFIRMED
        assert result.tx_ref == "tx-1"
        record = await services.ledger.get(make_hash("a"))
        assert record.status == EvidenceStatus.CONFIRMED
        assert record.attestation_tx_ref == "tx-1"
        assert record.confirmation_count == 1
        assert record.lease_owner is None
        assert notary.submissions == [make_hash("a")]

        assert await services.cache.lookup(make_hash("a")) == VerificationResult.VALID

        transactions = await services.ledger.transactions(make_hash("a"))
        assert len(transactions) == 1
        assert transactions[0].is_confirmed
        assert transactions[0].tx_ref == "tx-1"

    async def test_confirmation_is_audited_as_critical(self, services, ingest) -> None:
        await ingest("a")
        await services.engine.process(make_hash("a"), "w1")
        entries = await services.audit.history("evidence_records", make_hash("a"))
        confirmed = entries[-1]
        assert confirmed.after_state["status"] == "confirmed"
        assert confirmed.change_magnitude == ChangeMagnitude.CRITICAL
        assert confirmed.compliance_flags["status_change"] is True
        assert confirmed.actor_identity == "worker:w1"

    async def test_high_risk_confirmed_record_is_invalid(self, services, ingest) -> None:
        await ingest("a", risk_score=90)
        await services.engine.process(make_hash("a"), "w1")
        assert await services.cache.lookup(make_hash("a")) == VerificationResult.INVALID

    async def test_low_quality_confirmed_record_is_not_found(self, services, ingest) -> None:
        await ingest("a", quality_score=40)
        await services.engine.process(make_hash("a"), "w1")
        assert await services.cache.lookup(make_hash("a")) == VerificationResult.NOT_FOUND

    async def test_reported_confirmations_are_kept(self, services, notary, ingest) -> None:
        await ingest("a")
        notary.poll_script.append(
            StatusReport(tx_ref="tx-1", status=AttestationStatus.CONFIRMED, confirmations=5)
        )
        await services.engine.process(make_hash("a"), "w1")
        record = await services.ledger.get(make_hash("a"))
        assert record.confirmation_count == 5


class TestTransientFailures:

    async def test_timeout_schedules_retry(self, services, notary, clock, ingest) -> None:
        await ingest("a")
        notary.submit_script.append(_timeout())
        result = await services.engine.process(make_hash("a"), "w1")

        assert result.outcome == Outcome.RETRY_SCHEDULED
        assert result.retry_count == 1
        assert result.error_code == "timeout"
        record = await services.ledger.get(make_hash("a"))
        assert record.status == EvidenceStatus.PENDING
        assert record.next_retry_at > clock()
        assert record.last_error_code == "timeout"

        # Not due yet: a second pass skips it.
        assert (await services.engine.process(make_hash("a"), "w1")).outcome == Outcome.SKIPPED

    async def test_three_timeouts_fail_the_record(self, services, notary, clock, ingest) -> None:
        await ingest("a")
        notary.submit_script.extend([_timeout(), _timeout(), _timeout()])

        outcomes = []
        for _ in range(3):
            outcomes.append(await services.engine.process(make_hash("a"), "w1"))
            clock.advance(60)

        assert [r.outcome for r in outcomes] == [
            Outcome.RETRY_SCHEDULED,
            Outcome.RETRY_SCHEDULED,
            Outcome.FAILED,
        ]
        record = await services.ledger.get(make_hash("a"))
        assert record.status == EvidenceStatus.FAILED
        assert record.retry_count == 3
        assert record.next_retry_at is None
        assert len(notary.submissions) == 3
        assert await services.cache.lookup(make_hash("a")) == VerificationResult.INVALID

        # Terminal: never picked up again.
        assert (await services.engine.process(make_hash("a"), "w1")).outcome == Outcome.SKIPPED
        assert len(notary.submissions) == 3

    async def test_failed_attempts_are_kept_as_transactions(self, services, notary, clock, ingest) -> None:
        await ingest("a")
        notary.submit_script.append(_timeout())
        await services.engine.process(make_hash("a"), "w1")
        clock.advance(60)
        await services.engine.process(make_hash("a"), "w1")

        transactions = await services.ledger.transactions(make_hash("a"))
        assert len(transactions) == 2
        assert transactions[0].error_code == "timeout"
        assert transactions[0].superseded
        assert transactions[0].retry_attempt == 0
        assert transactions[1].is_confirmed
        assert transactions[1].retry_attempt == 1


class TestRejection:

    async def test_poll_rejection_is_terminal(self, services, notary, ingest) -> None:
        await ingest("a")
        notary.poll_script.append(AttestationStatus.REJECTED)
        result = await services.engine.process(make_hash("a"), "w1")

        assert result.outcome == Outcome.REJECTED
        record = await services.ledger.get(make_hash("a"))
        assert record.status == EvidenceStatus.REJECTED
        assert record.retry_count == 0
        assert await services.cache.lookup(make_hash("a")) == VerificationResult.INVALID

        assert (await services.engine.process(make_hash("a"), "w1")).outcome == Outcome.SKIPPED
        assert len(notary.submissions) == 1

    async def test_submit_rejection_is_terminal(self, services, notary, ingest) -> None:
        await ingest("a")
        notary.submit_script.append(RejectedError("malformed evidence", "rejected"))
        result = await services.engine.process(make_hash("a"), "w1")

        assert result.outcome == Outcome.REJECTED
        assert result.error_code == "rejected"
        record = await services.ledger.get(make_hash("a"))
        assert record.last_error_message == "malformed evidence"


class TestIdempotentResubmission:

    async def test_pending_reference_is_reused(self, services, notary, clock, ingest) -> None:
        await ingest("a")
        notary.poll_script.extend([AttestationStatus.PENDING] * 3)
        first = await services.engine.process(make_hash("a"), "w1")
        assert first.outcome == Outcome.RETRY_SCHEDULED
        assert first.error_code == "confirmation_pending"

        clock.advance(60)
        second = await services.engine.process(make_hash("a"), "w2")
        assert second.outcome == Outcome.CONFIRMED
        assert second.tx_ref == "tx-1"
        assert notary.submissions == [make_hash("a")]

        transactions = await services.ledger.transactions(make_hash("a"))
        assert len(transactions) == 1
        assert transactions[0].is_confirmed

    async def test_lost_reference_is_resubmitted(self, services, notary, clock, ingest) -> None:
        await ingest("a")
        notary.poll_script.append(TransientError("unknown tx", "tx_not_found"))
        first = await services.engine.process(make_hash("a"), "w1")
        assert first.error_code == "tx_not_found"

        clock.advance(60)
        second = await services.engine.process(make_hash("a"), "w1")
        assert second.outcome == Outcome.CONFIRMED
        assert second.tx_ref == "tx-2"
        assert len(notary.submissions) == 2

        transactions = await services.ledger.transactions(make_hash("a"))
        assert [tx.is_confirmed for tx in transactions] == [False, True]
        assert transactions[0].superseded


class TestLeases:

    async def test_reclaimed_worker_cannot_resolve(self, services, clock, ingest) -> None:
        await ingest("a")
        await services.ledger.claim(make_hash("a"), "w1")
        clock.advance(services.settings.reconciliation.lease_seconds + 1)
        await services.ledger.claim(make_hash("a"), "w2")

        stale = await services.engine.resolve_transient(make_hash("a"), "w1", _timeout(), None)
        assert stale.outcome == Outcome.SKIPPED

        record = await services.ledger.get(make_hash("a"))
        assert record.status == EvidenceStatus.PROCESSING
        assert record.lease_owner == "w2"
        assert record.retry_count == 0

    async def test_lapsed_claim_is_finished_by_another_worker(self, services, clock, ingest) -> None:
        await ingest("a")
        await services.ledger.claim(make_hash("a"), "w1")
        clock.advance(services.settings.reconciliation.lease_seconds + 1)

        result = await services.engine.process(make_hash("a"), "w2")
        assert result.outcome == Outcome.CONFIRMED

        late = await services.engine.resolve_transient(make_hash("a"), "w1", _timeout(), None)
        assert late.outcome == Outcome.SKIPPED
        assert (await services.ledger.get(make_hash("a"))).status == EvidenceStatus.CONFIRMED


class TestDeadline:

    async def test_attempt_deadline_schedules_retry(self, services, notary, clock, ingest) -> None:
        engine = ReconciliationEngine(
            services.ledger,
            services.cache,
            notary,
            services.uow,
            services.event_bus,
            RetryPolicy(rng=random.Random(1)),
            network_name="testnet",
            attempt_timeout_seconds=0.05,
            poll_attempts=1,
            poll_interval_seconds=0,
            clock=clock,
        )
        notary.submit_delay = 1.0
        await ingest("a")

        result = await engine.process(make_hash("a"), "w1")
        assert result.outcome == Outcome.RETRY_SCHEDULED
        assert result.error_code == "timeout"
        record = await services.ledger.get(make_hash("a"))
        assert record.status == EvidenceStatus.PENDING
        assert record.lease_owner is None


class TestWorkerPool:

    async def test_run_once_processes_claimable(self, services, ingest) -> None:
        for seed in ("a", "b", "c"):
            await ingest(seed)
        results = await services.workers.run_once("w1")
        assert sorted(r.hash for r in results) == sorted(make_hash(s) for s in ("a", "b", "c"))
        assert {r.outcome for r in results} == {Outcome.CONFIRMED}
        assert await services.workers.run_once("w1") == []

    async def test_workers_pause_while_notary_offline(self, services, notary, ingest) -> None:
        notary.network = TransientError("down", "network_error")
        await services.tracker.sync()
        await ingest("a")

        services.workers.start()
        await asyncio.sleep(0.1)
        services.workers.stop()
        await asyncio.sleep(0.05)
        assert notary.submissions == []

        notary.network = NetworkSnapshot(network_name="testnet", height=5, active_peers=3, total_peers=3)
        await services.tracker.sync()
        services.workers.start()
        for _ in range(50):
            if (await services.ledger.get(make_hash("a"))).status == EvidenceStatus.CONFIRMED:
                break
            await asyncio.sleep(0.02)
        services.workers.stop()
        assert (await services.ledger.get(make_hash("a"))).status == EvidenceStatus.CONFIRMED
