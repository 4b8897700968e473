"""Audit interception for repository mutations.

``@audited(...)`` wraps a mutating repository method. Before the call it
snapshots the persisted state, after the call it hands the before/after pair
to :class:`~notarium.domain.services.change_capture.ChangeCapture` and appends
the entry in the *same* session, so the mutation and its audit entry commit
or roll back together.

When the wrapped call raises, the entry is flagged ``operation_failed`` and
deferred: the unit of work writes deferred entries in a fresh transaction
after rolling the failed one back.
"""
from __future__ import annotations

import functools
import inspect
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, TypeVar

import structlog
from sqlalchemy.exc import SQLAlchemyError

from notarium.domain.entities import SYSTEM_ACTOR, ActorContext, AuditLogEntry, AuditOperation
from notarium.domain.entities.base import Entity
from notarium.domain.exceptions import AuditWriteError
from notarium.domain.services.change_capture import ChangeCapture

if TYPE_CHECKING:
    from notarium.domain.repositories import AuditLogRepository

logger = structlog.get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])


class AuditRecorder:
    """Collects the audit entries produced inside one unit of work."""

    def __init__(self, audit_log: AuditLogRepository, capture: ChangeCapture) -> None:
        self._audit_log = audit_log
        self._capture = capture
        self.recorded: list[AuditLogEntry] = []
        self.deferred: list[AuditLogEntry] = []

    async def record(
        self,
        entity_type: str,
        operation: AuditOperation,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
        actor: ActorContext,
        resource_id: str,
    ) -> AuditLogEntry | None:
        if not self._capture.should_audit(entity_type, operation):
            return None
        entry = self._capture.capture(
            entity_type, operation, before, after, actor, resource_id=resource_id,
        )
        try:
            stored = await self._audit_log.append(entry)
        except SQLAlchemyError as exc:
            logger.critical(
                "audit_write_failed",
                action=entry.action,
                resource_id=resource_id,
                error=str(exc),
            )
            raise AuditWriteError(f"could not persist audit entry {entry.action} for {resource_id}") from exc
        self.recorded.append(stored)
        return stored

    def defer_failure(
        self,
        entity_type: str,
        operation: AuditOperation,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
        actor: ActorContext,
        resource_id: str,
        error: BaseException,
    ) -> None:
        if not self._capture.should_audit(entity_type, operation):
            return
        self.deferred.append(self._capture.capture(
            entity_type, operation, before, after, actor, resource_id=resource_id, error=error,
        ))

    def demote_recorded(self, error: BaseException) -> None:
        """The transaction holding ``recorded`` was lost; keep a failure trace of each."""
        for entry in self.recorded:
            context = dict(entry.context)
            context.update(error_type=type(error).__name__, error_message=str(error))
            self.deferred.append(entry.model_copy(update={
                "sequence": None,
                "previous_digest": None,
                "entry_digest": None,
                "compliance_flags": {**entry.compliance_flags, "operation_failed": True},
                "context": context,
            }))
        self.recorded.clear()

    def take_deferred(self) -> list[AuditLogEntry]:
        entries, self.deferred = self.deferred, []
        return entries


def audited(operation: AuditOperation, *, target: str = "entity") -> Callable[[F], F]:
    """Mirror a repository mutation into the audit log.

    The decorated method's class provides ``entity_type``, ``_recorder``,
    ``_identity(subject)`` and ``async _snapshot(key)``. The argument named
    ``target`` holds either the entity or its key; ``actor`` is optional and
    defaults to the system actor.
    """

    def decorator(func: F) -> F:
        signature = inspect.signature(func)

        @functools.wraps(func)
        async def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
            bound = signature.bind(self, *args, **kwargs)
            actor = bound.arguments.get("actor") or SYSTEM_ACTOR
            subject = bound.arguments[target]
            key = self._identity(subject)

            before = None
            if operation != AuditOperation.CREATE:
                before = await self._snapshot(key)
            intended = subject.snapshot() if isinstance(subject, Entity) else None

            try:
                result = await func(self, *args, **kwargs)
            except AuditWriteError:
                raise
            except Exception as exc:
                self._recorder.defer_failure(
                    self.entity_type, operation, before, intended, actor, key, exc,
                )
                raise

            after = result.snapshot() if isinstance(result, Entity) else None
            await self._recorder.record(self.entity_type, operation, before, after, actor, key)
            return result

        return wrapper  # type: ignore[return-value]

    return decorator


__all__ = ["AuditRecorder", "audited"]
