"""Entity, aggregate and value-object bases shared by the ledger models."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class DomainEvent(BaseModel):
    """Something that happened to an aggregate, published after commit."""
    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=new_id)
    event_type: str = ""
    aggregate_id: str = ""
    aggregate_type: str = ""
    occurred_at: datetime = Field(default_factory=utcnow)
    payload: dict[str, Any] = Field(default_factory=dict)


class Entity(BaseModel):
    """Identity-compared model with creation and update stamps."""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def __eq__(self, other: object) -> bool:
        return type(other) is type(self) and self.id == other.id  # type: ignore[attr-defined]

    def __hash__(self) -> int:
        return hash((type(self).__name__, self.id))

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe state used for audit diffs."""
        return self.model_dump(mode="json")


class AggregateRoot(Entity):
    """Versioned entity that buffers domain events until its unit of work commits."""

    version: int = 0
    _events: list[DomainEvent] = PrivateAttr(default_factory=list)

    def raise_event(self, event: DomainEvent) -> None:
        self._events.append(event)

    @property
    def pending_events(self) -> tuple[DomainEvent, ...]:
        return tuple(self._events)

    def collect_events(self) -> list[DomainEvent]:
        events, self._events = self._events, []
        return events

    def increment_version(self, now: datetime | None = None) -> None:
        """Bump the optimistic-lock version; ``now`` stamps ``updated_at``."""
        self.version += 1
        self.updated_at = now or utcnow()


class ValueObject(BaseModel):
    model_config = ConfigDict(frozen=True)
