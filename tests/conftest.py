"""Shared fixtures: a file-backed SQLite database per test, a scripted notary,
a controllable clock and the fully wired service graph."""
from __future__ import annotations

import random
from collections.abc import AsyncIterator
from typing import Any

import pytest
import pytest_asyncio
from support import FakeClock, FakeNotary, make_hash, make_metadata, no_sleep

from notarium.bootstrap import Services, build_services
from notarium.domain.entities import SYSTEM_ACTOR, EvidenceRecord
from notarium.infrastructure.config import (
    BatchSettings,
    DatabaseSettings,
    NotarySettings,
    ReconciliationSettings,
    Settings,
)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        environment="test",
        database=DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'notarium.db'}"),
        notary=NotarySettings(base_url="http://notary.test", network_name="testnet", timeout_seconds=2.0),
        reconciliation=ReconciliationSettings(
            workers=2,
            max_retries=3,
            attempt_timeout_seconds=5.0,
            poll_attempts=3,
            poll_interval_seconds=0,
            idle_sleep_seconds=0.01,
        ),
        batching=BatchSettings(enabled=False, target_size=3, flush_interval_seconds=60.0),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notary() -> FakeNotary:
    return FakeNotary()


@pytest_asyncio.fixture
async def services(settings: Settings, notary: FakeNotary, clock: FakeClock) -> AsyncIterator[Services]:
    svc = build_services(settings, notary=notary, rng=random.Random(7), clock=clock, sleep=no_sleep)
    await svc.database.init_schema()
    yield svc
    await svc.shutdown()


@pytest.fixture
def ingest(services: Services):
    """Insert a record by seed and return it."""

    async def _ingest(seed: str, **metadata: Any) -> EvidenceRecord:
        return await services.ledger.insert(make_hash(seed), make_metadata(**metadata), SYSTEM_ACTOR)

    return _ingest
