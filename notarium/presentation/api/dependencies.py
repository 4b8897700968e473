"""FastAPI dependency providers."""
from __future__ import annotations

from fastapi import Header, Request

from notarium.bootstrap import Services
from notarium.domain.entities import ActorContext


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_client_ip(request: Request) -> str:
    """Extract the real client IP, respecting ``X-Forwarded-For``."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    x_real_ip = request.headers.get("X-Real-IP")
    if x_real_ip:
        return x_real_ip.strip()
    return request.client.host if request.client else "unknown"


def get_actor(
    request: Request,
    x_actor_identity: str | None = Header(default=None),
    x_session_id: str | None = Header(default=None),
) -> ActorContext:
    """The caller as asserted by the upstream collaborator; authentication happens there."""
    identity = (x_actor_identity or "").strip()
    return ActorContext(
        identity=identity or "anonymous",
        actor_type="user" if identity else "anonymous",
        session_id=x_session_id,
        source_ip=get_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
