"""Health check, notary network status and ledger consistency endpoints."""
from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError

from notarium import __version__
from notarium.bootstrap import Services
from notarium.presentation.api.dependencies import get_services
from notarium.presentation.api.schemas import (
    ConsistencyStatusResponse,
    InconsistencyResponse,
    NetworkStatusResponse,
)

router = APIRouter()

_START_TIME = time.time()


@router.get("/health")
async def health_check(services: Services = Depends(get_services)) -> dict[str, Any]:
    """Liveness plus database reachability and background task states."""
    try:
        await services.database.ping()
        database = {"status": "healthy"}
    except SQLAlchemyError as e:
        database = {"status": "unhealthy", "error": str(e)}
    return {
        "status": "healthy" if database["status"] == "healthy" else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": __version__,
        "uptime_seconds": round(time.time() - _START_TIME, 2),
        "checks": {"database": database},
        "tasks": services.runner.list_tasks(),
    }


@router.get("/health/network", response_model=NetworkStatusResponse)
async def network_health(services: Services = Depends(get_services)) -> NetworkStatusResponse:
    state = await services.tracker.current()
    if state is None:
        return NetworkStatusResponse(
            network_name=services.tracker.network_name,
            health="offline",
            is_synced=False,
            is_stale=True,
        )
    return NetworkStatusResponse(
        network_name=state.network_name,
        health=state.health.value,
        is_synced=state.is_synced,
        is_stale=services.tracker.is_stale(),
        last_known_height=state.last_known_height,
        active_peers=state.active_peers,
        total_peers=state.total_peers,
        last_sync_at=state.last_sync_at,
        last_error=state.last_error,
    )


@router.get("/health/consistency", response_model=ConsistencyStatusResponse)
async def consistency_health(services: Services = Depends(get_services)) -> ConsistencyStatusResponse:
    """Result of the most recent consistency pass."""
    report = services.consistency.last_report
    if report is None:
        return ConsistencyStatusResponse(status="unchecked")
    return ConsistencyStatusResponse(
        status="consistent" if not report.inconsistencies else "inconsistent",
        score=report.score,
        checked=report.checked,
        healed=report.healed,
        checked_at=report.checked_at,
        inconsistencies=[
            InconsistencyResponse(kind=item.kind.value, hash=item.hash, detail=item.detail, healed=item.healed)
            for item in report.inconsistencies
        ],
    )
