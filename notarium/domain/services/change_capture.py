"""Change capture: turns a before/after pair into a classified audit entry.

Pure domain logic: no I/O happens here. The persistence layer calls
:meth:`ChangeCapture.capture` from the ``audited`` repository decorator and
stores whatever comes back.

Classification rules:

* delete                                      -> ``critical``
* update touching a sensitive or identity field -> ``critical``
* update with more than 5 changed fields        -> ``major``
* update with 3-5 changed fields, or any create -> ``moderate``
* anything else                                 -> ``minor``

Each configuration may also set a ``baseline_magnitude`` floor.
"""
from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from datetime import datetime
from typing import Any

from notarium.domain.entities.audit import (
    REDACTED,
    ActorContext,
    AuditConfiguration,
    AuditLogEntry,
    AuditOperation,
    ChangeMagnitude,
    ComplianceLevel,
)
from notarium.domain.entities.base import utcnow
from notarium.domain.exceptions import DomainException

BOOKKEEPING_FIELDS = frozenset({"updated_at", "version"})

MAJOR_CHANGE_THRESHOLD = 5
MODERATE_CHANGE_THRESHOLD = 3


def _config(entity_type: str, **kwargs: Any) -> AuditConfiguration:
    excluded = frozenset(kwargs.pop("excluded_fields", ())) | BOOKKEEPING_FIELDS
    return AuditConfiguration(entity_type=entity_type, excluded_fields=excluded, **kwargs)


DEFAULT_AUDIT_CONFIGURATIONS: tuple[AuditConfiguration, ...] = (
    _config(
        "evidence_records",
        sensitive_fields=frozenset({"submitter_identity"}),
        excluded_fields={"lease_owner", "lease_expires_at"},
        identity_fields=frozenset({"hash", "status"}),
        flag_rules={
            "status_change": frozenset({"status"}),
            "critical_hash_change": frozenset({"hash"}),
            "attestation_change": frozenset({"attestation_tx_ref", "confirmation_count"}),
        },
        compliance_level=ComplianceLevel.STRICT,
    ),
    _config(
        "attestation_transactions",
        sensitive_fields=frozenset({"receipt"}),
        flag_rules={"confirmation_change": frozenset({"is_confirmed"})},
    ),
    _config(
        "attestation_batches",
        flag_rules={"status_change": frozenset({"status"})},
    ),
    _config(
        "users",
        sensitive_fields=frozenset({"api_key_hash", "email"}),
        identity_fields=frozenset({"api_key_hash", "is_active"}),
        flag_rules={"security_change": frozenset({"api_key_hash", "is_active"})},
        compliance_level=ComplianceLevel.STRICT,
    ),
    _config(
        "network_states",
        audit_on_create=False,
        audit_on_delete=False,
        compliance_level=ComplianceLevel.MINIMAL,
    ),
    _config(
        "system_config",
        flag_rules={"system_configuration_change": frozenset({"value"})},
        compliance_level=ComplianceLevel.STRICT,
        baseline_magnitude=ChangeMagnitude.MAJOR,
    ),
    _config(
        "audit_logs",
        audit_on_create=False,
        audit_on_update=False,
        compliance_level=ComplianceLevel.STRICT,
    ),
)


class AuditConfigRegistry:
    """Lookup of :class:`AuditConfiguration` keyed by entity type."""

    def __init__(self, configurations: Iterable[AuditConfiguration] | None = None) -> None:
        self._configs: dict[str, AuditConfiguration] = {}
        for config in DEFAULT_AUDIT_CONFIGURATIONS if configurations is None else configurations:
            self.register(config)

    def register(self, config: AuditConfiguration) -> None:
        self._configs[config.entity_type] = config

    def get(self, entity_type: str) -> AuditConfiguration:
        config = self._configs.get(entity_type)
        if config is None:
            return _config(entity_type)
        return config

    def __iter__(self) -> Iterator[AuditConfiguration]:
        return iter(self._configs.values())

    def __contains__(self, entity_type: object) -> bool:
        return entity_type in self._configs


def diff_fields(before: Mapping[str, Any] | None, after: Mapping[str, Any] | None) -> list[str]:
    """Names of fields whose values differ, sorted for stable output."""
    if before is None and after is None:
        return []
    if before is None:
        return sorted(after or {})
    if after is None:
        return sorted(before)
    keys = set(before) | set(after)
    return sorted(k for k in keys if before.get(k) != after.get(k))


def classify(
    config: AuditConfiguration,
    operation: AuditOperation,
    changed_fields: list[str],
) -> ChangeMagnitude:
    if operation == AuditOperation.DELETE:
        magnitude = ChangeMagnitude.CRITICAL
    elif operation == AuditOperation.CREATE:
        magnitude = ChangeMagnitude.MODERATE
    else:
        changed = set(changed_fields)
        if changed & (config.sensitive_fields | config.identity_fields):
            magnitude = ChangeMagnitude.CRITICAL
        elif len(changed) > MAJOR_CHANGE_THRESHOLD:
            magnitude = ChangeMagnitude.MAJOR
        elif len(changed) >= MODERATE_CHANGE_THRESHOLD:
            magnitude = ChangeMagnitude.MODERATE
        else:
            magnitude = ChangeMagnitude.MINOR
    return ChangeMagnitude.highest(magnitude, config.baseline_magnitude)


class ChangeCapture:
    """Builds :class:`AuditLogEntry` objects according to the registry."""

    def __init__(self, registry: AuditConfigRegistry | None = None) -> None:
        self.registry = registry or AuditConfigRegistry()

    def should_audit(self, entity_type: str, operation: AuditOperation) -> bool:
        return self.registry.get(entity_type).audits(operation)

    def capture(
        self,
        entity_type: str,
        operation: AuditOperation,
        before: Mapping[str, Any] | None,
        after: Mapping[str, Any] | None,
        actor: ActorContext,
        *,
        resource_id: str | None = None,
        error: BaseException | None = None,
        occurred_at: datetime | None = None,
    ) -> AuditLogEntry:
        config = self.registry.get(entity_type)
        before_view = self._strip(config, before)
        after_view = self._strip(config, after)

        if operation == AuditOperation.UPDATE and (before_view is None or after_view is None):
            changed: list[str] = []
        else:
            changed = diff_fields(before_view, after_view)

        magnitude = classify(config, operation, changed)
        flags = self._flags(config, operation, changed)
        if error is not None:
            flags["operation_failed"] = True

        context: dict[str, Any] = {"compliance_level": config.compliance_level.value}
        for key in ("session_id", "source_ip", "user_agent"):
            value = getattr(actor, key)
            if value is not None:
                context[key] = value
        if error is not None:
            context["error_type"] = type(error).__name__
            context["error_message"] = str(error)
            if isinstance(error, DomainException):
                context["error_code"] = error.code

        return AuditLogEntry(
            action=f"{operation.value}_{entity_type}",
            resource_type=entity_type,
            resource_id=resource_id or self._resource_id(before, after),
            actor_identity=actor.identity,
            actor_type=actor.actor_type,
            before_state=self._redact(config, before_view),
            after_state=self._redact(config, after_view),
            changed_fields=changed,
            change_magnitude=magnitude,
            compliance_flags=flags,
            compliance_level=config.compliance_level,
            context=context,
            occurred_at=occurred_at or utcnow(),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _strip(config: AuditConfiguration, state: Mapping[str, Any] | None) -> dict[str, Any] | None:
        if state is None:
            return None
        return {k: v for k, v in state.items() if k not in config.excluded_fields}

    @staticmethod
    def _redact(config: AuditConfiguration, state: dict[str, Any] | None) -> dict[str, Any] | None:
        if state is None:
            return None
        return {
            k: (REDACTED if k in config.sensitive_fields and v is not None else v)
            for k, v in state.items()
        }

    @staticmethod
    def _flags(config: AuditConfiguration, operation: AuditOperation, changed: list[str]) -> dict[str, bool]:
        if operation == AuditOperation.CREATE:
            return {"data_creation": True}
        if operation == AuditOperation.DELETE:
            return {"data_deletion": True}
        changed_set = set(changed)
        flags = {"sensitive_data_changed": bool(changed_set & config.sensitive_fields)}
        for flag, fields in config.flag_rules.items():
            if changed_set & fields:
                flags[flag] = True
        return flags

    @staticmethod
    def _resource_id(before: Mapping[str, Any] | None, after: Mapping[str, Any] | None) -> str:
        for state in (after, before):
            if state and state.get("id") is not None:
                return str(state["id"])
        return "unknown"


__all__ = [
    "AuditConfigRegistry",
    "BOOKKEEPING_FIELDS",
    "ChangeCapture",
    "DEFAULT_AUDIT_CONFIGURATIONS",
    "classify",
    "diff_fields",
]
