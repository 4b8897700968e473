"""Integration tests for the evidence ledger against SQLite.

Covers:
- insert: pending record, duplicate hash, concurrent duplicates, normalization,
  validation, audit entry
- get / transactions: not found
- transition: audited status change, invalid edge leaves the row untouched,
  refused transitions audited as failed operations
- delete: always refused, refusal audited as a failed critical deletion
- optimistic concurrency: stale version update rejected and audited
- claim: concurrent claims, retry not yet due, refused claim audited, lease reclaim
"""
from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select
from support import make_hash, make_metadata

from notarium.domain.entities import (
    SYSTEM_ACTOR,
    ActorContext,
    ChangeMagnitude,
    EvidenceStatus,
    TransitionContext,
)
from notarium.domain.exceptions import (
    AppendOnlyViolation,
    ConcurrencyError,
    DuplicateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from notarium.infrastructure.persistence.models import EvidenceRecordModel

pytestmark = [pytest.mark.asyncio, pytest.mark.integration]

USER = ActorContext(identity="capture-service", actor_type="user", session_id="sess-1")


class TestInsert:

    async def test_insert_creates_pending_record(self, services) -> None:
        record = await services.ledger.insert(make_hash("a"), make_metadata(), USER)
        stored = await services.ledger.get(make_hash("a"))
        assert stored.id == record.id
        assert stored.status == EvidenceStatus.PENDING
        assert stored.retry_count == 0
        assert stored.title == "Captured article"

    async def test_duplicate_hash_rejected(self, services, ingest) -> None:
        await ingest("a")
        with pytest.raises(DuplicateError):
            await services.ledger.insert(make_hash("a"), make_metadata(), USER)

    async def test_concurrent_inserts_of_one_hash_have_one_winner(self, services) -> None:
        results = await asyncio.gather(
            *(services.ledger.insert(make_hash("a"), make_metadata(), USER) for _ in range(5)),
            return_exceptions=True,
        )
        created = [r for r in results if not isinstance(r, Exception)]
        refused = [r for r in results if isinstance(r, Exception)]
        assert len(created) == 1
        assert len(refused) == 4
        assert all(isinstance(r, DuplicateError) for r in refused)

        stored = await services.ledger.get(make_hash("a"))
        assert stored.id == created[0].id
        async with services.database.session_factory() as session:
            rows = await session.scalar(select(func.count()).select_from(EvidenceRecordModel))
        assert rows == 1

    async def test_uppercase_duplicate_rejected(self, services, ingest) -> None:
        await ingest("a")
        with pytest.raises(DuplicateError):
            await services.ledger.insert(make_hash("a").upper(), make_metadata(), USER)

    async def test_malformed_hash_rejected(self, services) -> None:
        with pytest.raises(ValidationError):
            await services.ledger.insert("xyz", make_metadata(), USER)

    async def test_insert_is_audited_with_actor(self, services) -> None:
        await services.ledger.insert(make_hash("a"), make_metadata(), USER)
        entries = await services.audit.history("evidence_records", make_hash("a"))
        assert len(entries) == 1
        entry = entries[0]
        assert entry.action == "create_evidence_records"
        assert entry.actor_identity == "capture-service"
        assert entry.context["session_id"] == "sess-1"
        assert entry.compliance_flags == {"data_creation": True}
        assert entry.after_state["submitter_identity"] == "[REDACTED]"

    async def test_failed_duplicate_insert_is_audited(self, services, ingest) -> None:
        await ingest("a")
        with pytest.raises(DuplicateError):
            await services.ledger.insert(make_hash("a"), make_metadata(), USER)
        entries = await services.audit.history("evidence_records", make_hash("a"))
        assert [e.failed for e in entries] == [False, True]


class TestQueries:

    async def test_get_missing_raises(self, services) -> None:
        with pytest.raises(NotFoundError):
            await services.ledger.get(make_hash("missing"))

    async def test_transactions_for_missing_hash_raises(self, services) -> None:
        with pytest.raises(NotFoundError):
            await services.ledger.transactions(make_hash("missing"))

    async def test_transactions_empty_for_new_record(self, services, ingest) -> None:
        await ingest("a")
        assert await services.ledger.transactions(make_hash("a")) == []


class TestTransitions:

    async def test_claim_then_transition_is_audited(self, services, ingest) -> None:
        await ingest("a")
        await services.ledger.claim(make_hash("a"), "w1")
        record = await services.ledger.transition(
            make_hash("a"),
            EvidenceStatus.FAILED,
            TransitionContext(lease_owner="w1", retry_count=3, error_code="timeout", error_message="slow"),
            SYSTEM_ACTOR,
        )
        assert record.status == EvidenceStatus.FAILED

        entries = await services.audit.history("evidence_records", make_hash("a"))
        last = entries[-1]
        assert last.action == "update_evidence_records"
        assert last.change_magnitude == ChangeMagnitude.CRITICAL
        assert last.compliance_flags["status_change"] is True
        assert last.before_state["status"] == "processing"
        assert last.after_state["status"] == "failed"

    async def test_invalid_transition_leaves_record_unchanged(self, services, ingest) -> None:
        await ingest("a")
        with pytest.raises(InvalidTransitionError):
            await services.ledger.transition(
                make_hash("a"),
                EvidenceStatus.CONFIRMED,
                TransitionContext(attestation_tx_ref="tx-1"),
                SYSTEM_ACTOR,
            )
        stored = await services.ledger.get(make_hash("a"))
        assert stored.status == EvidenceStatus.PENDING
        assert stored.version == 0

    async def test_refused_transition_is_audited(self, services, ingest) -> None:
        await ingest("a")
        assert len(await services.audit.history("evidence_records", make_hash("a"))) == 1
        with pytest.raises(InvalidTransitionError):
            await services.ledger.transition(
                make_hash("a"),
                EvidenceStatus.CONFIRMED,
                TransitionContext(attestation_tx_ref="tx-1"),
                USER,
            )

        entries = await services.audit.history("evidence_records", make_hash("a"))
        assert len(entries) == 2
        refused = entries[-1]
        assert refused.action == "update_evidence_records"
        assert refused.compliance_flags["operation_failed"] is True
        assert refused.context["error_type"] == "InvalidTransitionError"
        assert refused.before_state["status"] == "pending"
        assert refused.actor_identity == "capture-service"

    async def test_transition_past_a_live_lease_is_refused_and_audited(self, services, ingest) -> None:
        await ingest("a")
        await services.ledger.claim(make_hash("a"), "w1")
        with pytest.raises(ConcurrencyError):
            await services.ledger.transition(
                make_hash("a"), EvidenceStatus.REJECTED, TransitionContext(error_code="manual"), USER
            )

        stored = await services.ledger.get(make_hash("a"))
        assert stored.status == EvidenceStatus.PROCESSING
        assert stored.lease_owner == "w1"
        entries = await services.audit.history("evidence_records", make_hash("a"))
        assert entries[-1].failed
        assert entries[-1].context["error_type"] == "ConcurrencyError"


class TestAppendOnly:

    async def test_delete_is_refused_and_audited(self, services, ingest) -> None:
        await ingest("a")
        with pytest.raises(AppendOnlyViolation):
            await services.ledger.delete(make_hash("a"), USER)

        assert (await services.ledger.get(make_hash("a"))).status == EvidenceStatus.PENDING
        entries = await services.audit.history("evidence_records", make_hash("a"))
        refused = entries[-1]
        assert refused.action == "delete_evidence_records"
        assert refused.change_magnitude == ChangeMagnitude.CRITICAL
        assert refused.failed
        assert refused.compliance_flags["data_deletion"] is True
        assert refused.actor_identity == "capture-service"


class TestConcurrency:

    async def test_stale_version_update_rejected_and_audited(self, services, clock, ingest) -> None:
        await ingest("a")
        first = await services.ledger.get(make_hash("a"))
        second = await services.ledger.get(make_hash("a"))
        lease = TransitionContext(lease_owner="w1", lease_expires_at=clock() + timedelta(seconds=60))

        async with services.uow() as uow:
            first.transition_to(EvidenceStatus.PROCESSING, lease, now=clock())
            await uow.evidence.update(first, SYSTEM_ACTOR)

        with pytest.raises(ConcurrencyError):
            async with services.uow() as uow:
                second.transition_to(EvidenceStatus.PROCESSING, lease, now=clock())
                await uow.evidence.update(second, SYSTEM_ACTOR)

        stored = await services.ledger.get(make_hash("a"))
        assert stored.version == 1
        entries = await services.audit.history("evidence_records", make_hash("a"))
        assert entries[-1].failed
        assert entries[-1].context["error_type"] == "ConcurrencyError"

    async def test_concurrent_claims_have_one_winner(self, services, ingest) -> None:
        await ingest("a")
        results = await asyncio.gather(
            services.ledger.claim(make_hash("a"), "w1"),
            services.ledger.claim(make_hash("a"), "w2"),
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], ConcurrencyError)

        stored = await services.ledger.get(make_hash("a"))
        assert stored.status == EvidenceStatus.PROCESSING
        assert stored.lease_owner == winners[0].lease_owner

    async def test_claim_before_retry_due_refused(self, services, clock, ingest) -> None:
        await ingest("a")
        await services.ledger.claim(make_hash("a"), "w1")
        await services.ledger.transition(
            make_hash("a"),
            EvidenceStatus.PENDING,
            TransitionContext(lease_owner="w1", retry_count=1, next_retry_at=clock() + timedelta(seconds=30)),
            SYSTEM_ACTOR,
        )
        with pytest.raises(ConcurrencyError):
            await services.ledger.claim(make_hash("a"), "w2")
        clock.advance(31)
        record = await services.ledger.claim(make_hash("a"), "w2")
        assert record.lease_owner == "w2"

    async def test_refused_claim_is_audited(self, services, ingest) -> None:
        await ingest("a")
        await services.ledger.claim(make_hash("a"), "w1")
        with pytest.raises(ConcurrencyError):
            await services.ledger.claim(make_hash("a"), "w2")

        entries = await services.audit.history("evidence_records", make_hash("a"))
        refused = entries[-1]
        assert refused.failed
        assert refused.actor_identity == "worker:w2"
        assert refused.before_state["status"] == "processing"

    async def test_lapsed_lease_is_reclaimed(self, services, clock, ingest) -> None:
        await ingest("a")
        await services.ledger.claim(make_hash("a"), "w1")
        with pytest.raises(ConcurrencyError):
            await services.ledger.claim(make_hash("a"), "w2")
        clock.advance(services.settings.reconciliation.lease_seconds + 1)
        record = await services.ledger.claim(make_hash("a"), "w2")
        assert record.status == EvidenceStatus.PROCESSING
        assert record.lease_owner == "w2"

    async def test_claimable_lists_due_and_lapsed(self, services, clock, ingest) -> None:
        await ingest("a")
        await ingest("b")
        await services.ledger.claim(make_hash("a"), "w1")
        assert await services.ledger.claimable(10) == [make_hash("b")]
        clock.advance(services.settings.reconciliation.lease_seconds + 1)
        assert set(await services.ledger.claimable(10)) == {make_hash("a"), make_hash("b")}
