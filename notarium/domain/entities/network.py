"""NetworkState: the engine's last-known view of the notary network."""
from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum

from pydantic import Field

from .attestation import NetworkSnapshot
from .base import Entity, utcnow


class NetworkHealth(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    OFFLINE = "offline"


def health_from_peers(active_peers: int, total_peers: int) -> NetworkHealth:
    if total_peers <= 0:
        return NetworkHealth.UNHEALTHY
    score = active_peers / total_peers
    if score > 0.7:
        return NetworkHealth.HEALTHY
    if score > 0.3:
        return NetworkHealth.DEGRADED
    return NetworkHealth.UNHEALTHY


class NetworkState(Entity):
    network_name: str
    last_known_height: int = Field(default=0, ge=0)
    last_sync_at: datetime | None = None
    is_synced: bool = False
    active_peers: int = Field(default=0, ge=0)
    total_peers: int = Field(default=0, ge=0)
    health: NetworkHealth = NetworkHealth.OFFLINE
    last_error: str | None = None
    version: int = 0

    def apply_snapshot(self, snapshot: NetworkSnapshot, now: datetime | None = None) -> None:
        now = now or utcnow()
        self.last_known_height = max(self.last_known_height, snapshot.height)
        self.active_peers = snapshot.active_peers
        self.total_peers = snapshot.total_peers
        self.health = health_from_peers(snapshot.active_peers, snapshot.total_peers)
        self.is_synced = self.health != NetworkHealth.UNHEALTHY
        self.last_sync_at = now
        self.last_error = None
        self._touch(now)

    def mark_unreachable(self, error: str, now: datetime | None = None) -> None:
        now = now or utcnow()
        self.is_synced = False
        self.health = NetworkHealth.OFFLINE
        self.last_error = error
        self._touch(now)

    def is_stale(self, staleness: timedelta, now: datetime | None = None) -> bool:
        if self.last_sync_at is None:
            return True
        return (now or utcnow()) - self.last_sync_at > staleness

    def _touch(self, now: datetime) -> None:
        self.version += 1
        self.updated_at = now
