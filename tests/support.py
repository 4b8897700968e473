"""Test doubles and builders shared by unit and integration tests."""
from __future__ import annotations

import asyncio
import hashlib
from collections import deque
from datetime import datetime, timedelta
from typing import Any

from notarium.domain.entities import (
    AttestationStatus,
    EvidenceMetadata,
    EvidenceRecord,
    NetworkSnapshot,
    StatusReport,
    SubmissionReceipt,
    utcnow,
)
from notarium.domain.repositories import AttestationClient


def make_hash(seed: str) -> str:
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()


def make_metadata(**overrides: Any) -> EvidenceMetadata:
    values: dict[str, Any] = {
        "original_reference": "https://example.org/article/1",
        "title": "Captured article",
        "submitter_identity": "alice@example.org",
        "risk_score": 10,
        "quality_score": 95,
    }
    values.update(overrides)
    return EvidenceMetadata(**values)


def make_record(seed: str = "evidence", **overrides: Any) -> EvidenceRecord:
    record = EvidenceRecord.ingest(make_hash(seed), make_metadata(**overrides))
    record.collect_events()
    return record


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeNotary(AttestationClient):
    """In-memory notary whose answers are scripted per call.

    Script entries are consumed in order; an exception instance is raised, a
    receipt/report is returned as is, and an ``AttestationStatus`` becomes a
    report for the polled reference. An empty script means success.
    """

    def __init__(self) -> None:
        self.submit_script: deque[Any] = deque()
        self.batch_script: deque[Any] = deque()
        self.poll_script: deque[Any] = deque()
        self.network: NetworkSnapshot | Exception = NetworkSnapshot(
            network_name="testnet", height=100, active_peers=9, total_peers=10
        )
        self.submit_delay = 0.0
        self.submissions: list[str] = []
        self.batch_submissions: list[tuple[str, list[str]]] = []
        self.polls: list[str] = []
        self.closed = False

    async def submit(self, hash: str, metadata: dict[str, Any]) -> SubmissionReceipt:
        self.submissions.append(hash)
        if self.submit_delay:
            await asyncio.sleep(self.submit_delay)
        outcome = self.submit_script.popleft() if self.submit_script else None
        if isinstance(outcome, Exception):
            raise outcome
        return outcome or SubmissionReceipt(tx_ref=f"tx-{len(self.submissions)}")

    async def submit_batch(
        self, batch_digest: str, member_hashes: list[str], metadata: dict[str, Any]
    ) -> SubmissionReceipt:
        self.batch_submissions.append((batch_digest, list(member_hashes)))
        outcome = self.batch_script.popleft() if self.batch_script else None
        if isinstance(outcome, Exception):
            raise outcome
        return outcome or SubmissionReceipt(tx_ref=f"btx-{len(self.batch_submissions)}")

    async def poll_status(self, tx_ref: str) -> StatusReport:
        self.polls.append(tx_ref)
        outcome = self.poll_script.popleft() if self.poll_script else AttestationStatus.CONFIRMED
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, AttestationStatus):
            confirmations = 1 if outcome == AttestationStatus.CONFIRMED else 0
            return StatusReport(
                tx_ref=tx_ref, status=outcome, confirmations=confirmations, raw={"status": outcome.value}
            )
        return outcome

    async def network_info(self) -> NetworkSnapshot:
        if isinstance(self.network, Exception):
            raise self.network
        return self.network

    async def close(self) -> None:
        self.closed = True


async def no_sleep(_: float) -> None:
    return None
