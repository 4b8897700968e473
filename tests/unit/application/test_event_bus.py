"""Unit tests for the application event bus and its default handlers."""
from __future__ import annotations

from datetime import timedelta

import pytest
from support import make_record

from notarium.application.events import EventBus, create_event_bus
from notarium.domain.entities import DomainEvent, EvidenceStatus, TransitionContext, utcnow

pytestmark = pytest.mark.asyncio


class TestEventBus:

    async def test_aggregate_events_reach_subscribers_in_order(self) -> None:
        bus = EventBus()
        received: list[str] = []

        async def handler(event: DomainEvent) -> None:
            received.append(event.payload["to"])

        bus.subscribe("evidence.status_changed", handler)
        record = make_record()
        now = utcnow()
        record.transition_to(
            EvidenceStatus.PROCESSING,
            TransitionContext(lease_owner="w1", lease_expires_at=now + timedelta(seconds=30)),
            now=now,
        )
        record.transition_to(EvidenceStatus.PENDING, TransitionContext(lease_owner="w1", retry_count=1), now=now)
        await bus.publish_all(record.collect_events())

        assert received == ["processing", "pending"]

    async def test_unsubscribe(self) -> None:
        bus = EventBus()
        received = []

        async def handler(event: DomainEvent) -> None:
            received.append(event)

        bus.subscribe("evidence.confirmed", handler)
        bus.unsubscribe("evidence.confirmed", handler)
        await bus.publish(DomainEvent(event_type="evidence.confirmed"))

        assert received == []

    async def test_failing_handler_does_not_block_others(self) -> None:
        bus = EventBus()
        results = []

        async def bad_handler(event: DomainEvent) -> None:
            raise ValueError("handler error")

        async def good_handler(event: DomainEvent) -> None:
            results.append(event.aggregate_id)

        bus.subscribe("batch.settled", bad_handler)
        bus.subscribe("batch.settled", good_handler)
        await bus.publish(DomainEvent(event_type="batch.settled", aggregate_id="batch-1"))

        assert results == ["batch-1"]

    async def test_default_bus_accepts_lifecycle_events(self) -> None:
        bus = create_event_bus()
        record = make_record()
        await bus.publish_all([
            DomainEvent(event_type="evidence.ingested", aggregate_id=record.id, payload={"hash": record.hash}),
            DomainEvent(event_type="no.handler"),
        ])

    async def test_wildcard_subscription_sees_the_whole_family(self) -> None:
        bus = EventBus()
        seen: list[str] = []

        async def handler(event: DomainEvent) -> None:
            seen.append(event.event_type)

        bus.subscribe("batch.*", handler)
        assert await bus.publish(DomainEvent(event_type="batch.submitted")) == 1
        assert await bus.publish(DomainEvent(event_type="batch.settled")) == 1
        assert await bus.publish(DomainEvent(event_type="evidence.confirmed")) == 0

        assert seen == ["batch.submitted", "batch.settled"]

    async def test_failed_handler_is_not_counted(self) -> None:
        bus = EventBus()

        async def bad_handler(event: DomainEvent) -> None:
            raise RuntimeError("down")

        bus.subscribe("evidence.confirmed", bad_handler)
        assert await bus.publish(DomainEvent(event_type="evidence.confirmed")) == 0
