"""Post-commit dispatch of ledger and batch events."""
from __future__ import annotations

from collections import defaultdict
from typing import Any, Callable, Coroutine

import structlog

from notarium.domain.entities.base import DomainEvent

logger = structlog.get_logger(__name__)

EventHandler = Callable[[DomainEvent], Coroutine[Any, Any, None]]


class EventBus:
    """In-process async event bus.

    Handlers subscribe to an exact ``event_type`` or to a family with a
    trailing wildcard (``"evidence.*"``). Events are published only after
    the unit of work that raised them has committed, so a failing handler is
    logged and never undoes ledger state.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        self._handlers[pattern].append(handler)
        logger.debug("event_handler_registered", pattern=pattern, handler=handler.__name__)

    def unsubscribe(self, pattern: str, handler: EventHandler) -> None:
        if pattern in self._handlers:
            self._handlers[pattern] = [h for h in self._handlers[pattern] if h != handler]

    def handlers_for(self, event_type: str) -> list[EventHandler]:
        family = event_type.split(".", 1)[0] + ".*"
        return [*self._handlers.get(event_type, []), *self._handlers.get(family, [])]

    async def publish(self, event: DomainEvent) -> int:
        """Deliver ``event``; returns how many handlers completed."""
        delivered = 0
        for handler in self.handlers_for(event.event_type):
            try:
                await handler(event)
            except Exception as e:
                logger.error(
                    "event_handler_failed",
                    event_type=event.event_type,
                    aggregate_id=event.aggregate_id,
                    handler=handler.__name__,
                    error=str(e),
                )
            else:
                delivered += 1
        logger.debug("event_published", event_type=event.event_type, event_id=event.event_id, delivered=delivered)
        return delivered

    async def publish_all(self, events: list[DomainEvent]) -> None:
        for event in events:
            await self.publish(event)


async def _log_evidence(event: DomainEvent) -> None:
    p = event.payload
    if event.event_type == "evidence.confirmed":
        logger.info(
            "evidence_confirmed",
            hash=p.get("hash"),
            tx_ref=p.get("attestation_tx_ref"),
            confirmations=p.get("confirmation_count"),
        )
    elif event.event_type == "evidence.status_changed":
        logger.info(
            "evidence_status_changed",
            hash=p.get("hash"),
            from_status=p.get("from"),
            to_status=p.get("to"),
            retry_count=p.get("retry_count"),
            error_code=p.get("error_code"),
        )
    else:
        logger.info(event.event_type.replace(".", "_"), hash=p.get("hash"), evidence_id=event.aggregate_id)


async def _log_batch(event: DomainEvent) -> None:
    logger.info(event.event_type.replace(".", "_"), batch_id=event.aggregate_id, **event.payload)


def create_event_bus() -> EventBus:
    """A bus with the lifecycle log handlers operators rely on."""
    bus = EventBus()
    bus.subscribe("evidence.*", _log_evidence)
    bus.subscribe("batch.*", _log_batch)
    return bus


__all__ = ["EventBus", "EventHandler", "create_event_bus"]
