"""Domain repository interfaces (ports): abstract contracts for persistence and the notary."""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Generic, TypeVar

from notarium.domain.entities import (
    ActorContext,
    AttestationBatch,
    AttestationTransaction,
    AuditLogEntry,
    EvidenceRecord,
    EvidenceStatus,
    NetworkSnapshot,
    NetworkState,
    StatusReport,
    SubmissionReceipt,
    VerificationCacheEntry,
)
from notarium.domain.entities.base import Entity

T = TypeVar("T", bound=Entity)


class Repository(ABC, Generic[T]):
    """Base repository interface. Every mutation names its actor."""

    @abstractmethod
    async def find_by_id(self, entity_id: str) -> T | None: ...

    @abstractmethod
    async def save(self, entity: T, actor: ActorContext) -> T: ...

    @abstractmethod
    async def update(self, entity: T, actor: ActorContext) -> T: ...


class EvidenceRepository(Repository[EvidenceRecord]):
    """Evidence ledger port. Append-only: ``delete`` must always refuse."""

    @abstractmethod
    async def find_by_hash(self, hash: str) -> EvidenceRecord | None: ...

    @abstractmethod
    async def delete(self, hash: str, actor: ActorContext) -> None: ...

    @abstractmethod
    async def find_claimable(self, now: datetime, limit: int, include_fresh: bool = True) -> list[str]: ...

    @abstractmethod
    async def find_batch_candidates(self, now: datetime, limit: int) -> list[EvidenceRecord]: ...

    @abstractmethod
    async def page_hashes(self, after: str | None, limit: int) -> list[str]: ...

    @abstractmethod
    async def page_by_status(
        self, status: EvidenceStatus, after: str | None, limit: int
    ) -> list[EvidenceRecord]: ...

    @abstractmethod
    async def duplicate_hashes(self) -> dict[str, int]:
        """Hashes stored more than once, ignoring case, with their row counts."""


class AttestationTransactionRepository(Repository[AttestationTransaction]):

    @abstractmethod
    async def list_for_hash(self, evidence_hash: str) -> list[AttestationTransaction]: ...

    @abstractmethod
    async def latest_for_hash(self, evidence_hash: str) -> AttestationTransaction | None: ...

    @abstractmethod
    async def find_confirmed(self, evidence_hash: str) -> AttestationTransaction | None: ...

    @abstractmethod
    async def find_confirmed_for_unconfirmed(self, limit: int) -> list[AttestationTransaction]:
        """Confirmed transactions whose evidence record is not ``confirmed``."""


class BatchRepository(Repository[AttestationBatch]):

    @abstractmethod
    async def find_by_digest(self, batch_digest: str) -> AttestationBatch | None: ...


class VerificationCacheRepository(ABC):
    """Derived, unaudited projection of the ledger."""

    @abstractmethod
    async def get(self, hash: str) -> VerificationCacheEntry | None: ...

    @abstractmethod
    async def upsert(self, entry: VerificationCacheEntry) -> VerificationCacheEntry: ...


class AuditLogRepository(ABC):
    """Append-only audit trail."""

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> AuditLogEntry: ...

    @abstractmethod
    async def list_for_resource(self, resource_type: str, resource_id: str) -> list[AuditLogEntry]: ...

    @abstractmethod
    async def list_since(
        self, resource_type: str, resource_id: str, since: datetime
    ) -> list[AuditLogEntry]: ...

    @abstractmethod
    async def archive_before(self, cutoff: datetime) -> int: ...


class NetworkStateRepository(ABC):

    @abstractmethod
    async def find(self, network_name: str) -> NetworkState | None: ...

    @abstractmethod
    async def save(self, state: NetworkState, actor: ActorContext) -> NetworkState: ...

    @abstractmethod
    async def update(self, state: NetworkState, actor: ActorContext) -> NetworkState: ...


class AttestationClient(ABC):
    """Port to the external notary. Every call must be bounded by a timeout.

    Implementations raise ``TransientError`` for retryable faults and
    ``RejectedError`` for definitive refusals.
    """

    @abstractmethod
    async def submit(self, hash: str, metadata: dict[str, Any]) -> SubmissionReceipt: ...

    @abstractmethod
    async def submit_batch(
        self, batch_digest: str, member_hashes: list[str], metadata: dict[str, Any]
    ) -> SubmissionReceipt: ...

    @abstractmethod
    async def poll_status(self, tx_ref: str) -> StatusReport: ...

    @abstractmethod
    async def network_info(self) -> NetworkSnapshot: ...

    async def close(self) -> None:
        return None


__all__ = [
    "AttestationClient",
    "AttestationTransactionRepository",
    "AuditLogRepository",
    "BatchRepository",
    "EvidenceRepository",
    "NetworkStateRepository",
    "Repository",
    "VerificationCacheRepository",
]
