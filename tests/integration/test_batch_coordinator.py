"""Integration tests for the batch coordinator.

Covers:
- full batch: one notary submission, every member confirmed, batch settled
- partial batch: waits for the flush interval
- rejection: members fall back to individual attestation without a retry penalty
- transient failure: every member gets a retry scheduled and a failed
  attestation transaction tied to the batch
"""
from __future__ import annotations

from datetime import timedelta

import pytest
from support import make_hash

from notarium.application.services.batching import BatchCoordinator, BatchWindow, batch_digest
from notarium.application.services.reconciliation import Outcome
from notarium.domain.entities import (
    AttestationStatus,
    BatchStatus,
    EvidenceStatus,
    VerificationResult,
)
from notarium.domain.exceptions import RejectedError, TransientError

pytestmark = [pytest.mark.asyncio, pytest.mark.integration]

SEEDS = ("a", "b", "c")


def _make_coordinator(services, notary, clock) -> BatchCoordinator:
    return BatchCoordinator(
        services.ledger,
        services.engine,
        notary,
        services.uow,
        services.event_bus,
        BatchWindow(target_size=3, flush_interval=timedelta(seconds=60)),
        attempt_timeout_seconds=5.0,
        clock=clock,
    )


async def _load_batch(services, batch_id: str):
    async with services.uow() as uow:
        return await uow.batches.find_by_id(batch_id)


class TestBatchConfirmation:

    async def test_full_batch_confirms_every_member(self, services, notary, clock, ingest) -> None:
        for seed in SEEDS:
            await ingest(seed)
        coordinator = _make_coordinator(services, notary, clock)

        result = await coordinator.run_cycle()

        assert result is not None
        assert result.status == BatchStatus.CONFIRMED
        assert {m.outcome for m in result.members} == {Outcome.CONFIRMED}
        expected_digest, members = batch_digest(make_hash(s) for s in SEEDS)
        assert result.batch_digest == expected_digest
        assert notary.batch_submissions == [(expected_digest, members)]
        assert notary.submissions == []

        for seed in SEEDS:
            record = await services.ledger.get(make_hash(seed))
            assert record.status == EvidenceStatus.CONFIRMED
            assert record.batch_id == result.batch_id
            assert record.attestation_tx_ref == "btx-1"
            assert await services.cache.lookup(make_hash(seed)) == VerificationResult.VALID
            transactions = await services.ledger.transactions(make_hash(seed))
            assert [tx.batch_id for tx in transactions] == [result.batch_id]

        batch = await _load_batch(services, result.batch_id)
        assert batch.status == BatchStatus.CONFIRMED
        assert batch.tx_ref == "btx-1"
        assert batch.member_count == 3

    async def test_partial_batch_waits_for_flush_interval(self, services, notary, clock, ingest) -> None:
        await ingest("a")
        await ingest("b")
        coordinator = _make_coordinator(services, notary, clock)

        assert await coordinator.run_cycle() is None
        assert notary.batch_submissions == []

        clock.advance(61)
        result = await coordinator.run_cycle()
        assert result is not None
        assert result.status == BatchStatus.CONFIRMED
        assert len(result.members) == 2

    async def test_nothing_to_batch(self, services, notary, clock) -> None:
        assert await _make_coordinator(services, notary, clock).run_cycle() is None


class TestBatchFallback:

    async def test_rejected_batch_falls_back_to_individual(self, services, notary, clock, ingest) -> None:
        for seed in SEEDS:
            await ingest(seed)
        coordinator = _make_coordinator(services, notary, clock)
        notary.batch_script.append(RejectedError("batch too large", "rejected"))

        result = await coordinator.run_cycle()

        assert result.status == BatchStatus.REJECTED
        assert {m.outcome for m in result.members} == {Outcome.RETRY_SCHEDULED}
        for seed in SEEDS:
            record = await services.ledger.get(make_hash(seed))
            assert record.status == EvidenceStatus.PENDING
            assert record.retry_count == 0
            assert record.last_error_code == "batch_rejected"
        batch = await _load_batch(services, result.batch_id)
        assert batch.status == BatchStatus.REJECTED
        assert batch.error_message == "batch too large"

        # Not re-batched; individual workers pick the members up instead.
        assert await coordinator.run_cycle() is None
        claimable = await services.ledger.claimable(10, include_fresh=False)
        assert sorted(claimable) == sorted(make_hash(s) for s in SEEDS)
        for hash in claimable:
            assert (await services.engine.process(hash, "w1")).outcome == Outcome.CONFIRMED
        assert len(notary.submissions) == 3

    async def test_pending_batch_confirmation_then_rejection(self, services, notary, clock, ingest) -> None:
        for seed in SEEDS:
            await ingest(seed)
        notary.poll_script.append(AttestationStatus.REJECTED)

        result = await _make_coordinator(services, notary, clock).run_cycle()

        assert result.status == BatchStatus.REJECTED
        assert notary.polls == ["btx-1"]

    async def test_transient_batch_failure_schedules_member_retries(
        self, services, notary, clock, ingest
    ) -> None:
        for seed in SEEDS:
            await ingest(seed)
        notary.batch_script.append(TransientError("notary returned 503", "service_unavailable"))

        result = await _make_coordinator(services, notary, clock).run_cycle()

        assert result.status == BatchStatus.FAILED
        assert {m.outcome for m in result.members} == {Outcome.RETRY_SCHEDULED}
        for seed in SEEDS:
            record = await services.ledger.get(make_hash(seed))
            assert record.status == EvidenceStatus.PENDING
            assert record.retry_count == 1
            assert record.last_error_code == "service_unavailable"

    async def test_transient_batch_failure_records_member_transactions(
        self, services, notary, clock, ingest
    ) -> None:
        for seed in SEEDS:
            await ingest(seed)
        notary.batch_script.append(TransientError("notary returned 503", "service_unavailable"))

        result = await _make_coordinator(services, notary, clock).run_cycle()

        for seed in SEEDS:
            transactions = await services.ledger.transactions(make_hash(seed))
            assert len(transactions) == 1
            tx = transactions[0]
            assert tx.batch_id == result.batch_id
            assert tx.tx_ref is None
            assert tx.error_code == "service_unavailable"
            assert tx.next_retry_at is not None
            assert not tx.is_confirmed

    async def test_unconfirmed_batch_keeps_its_reference_on_member_transactions(
        self, services, notary, clock, ingest
    ) -> None:
        for seed in SEEDS:
            await ingest(seed)
        notary.poll_script.extend([AttestationStatus.PENDING] * 3)

        result = await _make_coordinator(services, notary, clock).run_cycle()

        assert result.status == BatchStatus.FAILED
        for seed in SEEDS:
            (tx,) = await services.ledger.transactions(make_hash(seed))
            assert tx.tx_ref == "btx-1"
            assert tx.error_code == "confirmation_pending"
