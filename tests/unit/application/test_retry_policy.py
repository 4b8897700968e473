"""Unit tests for RetryPolicy backoff and retry budget."""
from __future__ import annotations

import random

import pytest

from notarium.application.services.reconciliation import RetryPolicy
from notarium.domain.entities import EvidenceStatus, utcnow


def _policy(**kwargs) -> RetryPolicy:
    kwargs.setdefault("rng", random.Random(42))
    return RetryPolicy(**kwargs)


class TestRetryPolicy:

    @pytest.mark.parametrize("attempt", [0, 1, 2, 3])
    def test_delay_grows_exponentially_with_bounded_jitter(self, attempt: int) -> None:
        policy = _policy(base_delay_seconds=1.0, max_delay_seconds=100.0)
        delay = policy.get_delay(attempt)
        assert 2 ** attempt <= delay <= 2 ** attempt + 1.0

    def test_delay_is_capped(self) -> None:
        policy = _policy(base_delay_seconds=1.0, max_delay_seconds=5.0)
        assert policy.get_delay(10) == 5.0

    def test_first_failures_schedule_retries(self) -> None:
        policy = _policy(max_retries=3)
        now = utcnow()
        first = policy.next_step(0, now)
        assert first.status == EvidenceStatus.PENDING
        assert first.retry_count == 1
        assert first.next_retry_at > now

        second = policy.next_step(1, now)
        assert second.status == EvidenceStatus.PENDING
        assert second.retry_count == 2

    def test_budget_exhaustion_fails(self) -> None:
        decision = _policy(max_retries=3).next_step(2, utcnow())
        assert decision.status == EvidenceStatus.FAILED
        assert decision.retry_count == 3
        assert decision.next_retry_at is None

    def test_retry_count_never_exceeds_budget_or_decreases(self) -> None:
        policy = _policy(max_retries=3)
        assert policy.next_step(7, utcnow()).retry_count == 7
        assert policy.next_step(5, utcnow()).status == EvidenceStatus.FAILED

    def test_single_attempt_budget(self) -> None:
        decision = _policy(max_retries=1).next_step(0, utcnow())
        assert decision.status == EvidenceStatus.FAILED
        assert decision.retry_count == 1
