"""Network state tracker: the engine's view of the notary network's health."""
from __future__ import annotations

from datetime import datetime, timedelta

import structlog

from notarium.application.services.ledger import Clock
from notarium.domain.entities import SYSTEM_ACTOR, NetworkHealth, NetworkSnapshot, NetworkState, utcnow
from notarium.domain.exceptions import AttestationError
from notarium.domain.repositories import AttestationClient
from notarium.infrastructure.persistence.unit_of_work import UnitOfWorkFactory

logger = structlog.get_logger(__name__)


class NetworkStateTracker:

    def __init__(
        self,
        notary: AttestationClient,
        uow_factory: UnitOfWorkFactory,
        *,
        network_name: str,
        staleness_seconds: float = 120.0,
        clock: Clock = utcnow,
    ) -> None:
        self._notary = notary
        self._uow_factory = uow_factory
        self.network_name = network_name
        self._staleness = timedelta(seconds=staleness_seconds)
        self._clock = clock
        self._current: NetworkState | None = None

    async def sync(self) -> NetworkState:
        """Query the notary and persist what it reports.

        An unreachable notary is recorded as ``offline``; the error is not
        raised.
        """
        now = self._clock()
        snapshot: NetworkSnapshot | None = None
        error: str | None = None
        try:
            snapshot = await self._notary.network_info()
        except AttestationError as exc:
            error = exc.message
            logger.warning("network_sync_failed", network=self.network_name, error_code=exc.error_code)

        async with self._uow_factory() as uow:
            state = await uow.network.find(self.network_name)
            if state is None:
                state = NetworkState(network_name=self.network_name, created_at=now, updated_at=now)
                self._apply(state, snapshot, error, now)
                await uow.network.save(state, SYSTEM_ACTOR)
            else:
                self._apply(state, snapshot, error, now)
                await uow.network.update(state, SYSTEM_ACTOR)

        self._current = state
        logger.info(
            "network_synced",
            network=state.network_name,
            height=state.last_known_height,
            health=state.health.value,
            peers=f"{state.active_peers}/{state.total_peers}",
        )
        return state

    @staticmethod
    def _apply(state: NetworkState, snapshot: NetworkSnapshot | None, error: str | None, now: datetime) -> None:
        if snapshot is not None:
            state.apply_snapshot(snapshot, now)
        else:
            state.mark_unreachable(error or "unreachable", now)

    async def current(self) -> NetworkState | None:
        if self._current is None:
            async with self._uow_factory() as uow:
                self._current = await uow.network.find(self.network_name)
        return self._current

    def is_stale(self, now: datetime | None = None) -> bool:
        if self._current is None:
            return True
        return self._current.is_stale(self._staleness, now or self._clock())

    def is_available(self) -> bool:
        """False only while the notary is known to be offline."""
        if self._current is None:
            return True
        return self._current.health != NetworkHealth.OFFLINE


__all__ = ["NetworkStateTracker"]
