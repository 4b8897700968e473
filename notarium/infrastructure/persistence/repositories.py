"""SQLAlchemy repository implementations -- infrastructure adapters for domain ports.

Each repository:
* Accepts an ``AsyncSession`` (unit-of-work boundary managed by the caller).
* Converts between ORM models and domain entities.
* Enforces optimistic concurrency via the ``version`` column.
* Routes every mutation through ``@audited`` so the audit entry lands in the
  same transaction as the change.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from sqlalchemy import and_, delete, func, insert, literal, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from notarium.domain.entities import (
    ActorContext,
    AttestationBatch,
    AttestationTransaction,
    AuditLogEntry,
    AuditOperation,
    BatchStatus,
    ChangeMagnitude,
    ComplianceLevel,
    EvidenceRecord,
    EvidenceStatus,
    NetworkHealth,
    NetworkState,
    VerificationCacheEntry,
    VerificationResult,
)
from notarium.domain.entities.base import utcnow
from notarium.domain.exceptions import (
    AppendOnlyViolation,
    ConcurrencyError,
    DuplicateError,
    NotFoundError,
)
from notarium.domain.repositories import (
    AttestationTransactionRepository,
    AuditLogRepository,
    BatchRepository,
    EvidenceRepository,
    NetworkStateRepository,
    VerificationCacheRepository,
)
from notarium.infrastructure.persistence.auditing import AuditRecorder, audited
from notarium.infrastructure.persistence.models import (
    AttestationBatchModel,
    AttestationTransactionModel,
    AuditLogArchiveModel,
    AuditLogModel,
    EvidenceRecordModel,
    NetworkStateModel,
    UTCDateTime,
    VerificationCacheModel,
)


class _AuditedRepository(ABC):
    """Shared plumbing for repositories whose mutations are audited."""

    entity_type: str = ""

    def __init__(self, session: AsyncSession, recorder: AuditRecorder) -> None:
        self._session = session
        self._recorder = recorder

    def _identity(self, subject: Any) -> str:
        return subject if isinstance(subject, str) else subject.id

    async def _snapshot(self, key: str) -> dict[str, Any] | None:
        entity = await self._load(key)
        return entity.snapshot() if entity else None

    @abstractmethod
    async def _load(self, key: str) -> Any:
        """Return the persisted entity for ``key``, or ``None``."""

    async def _flush_insert(self, model: Any, field: str, value: str) -> None:
        self._session.add(model)
        try:
            await self._session.flush()
        except IntegrityError as exc:
            raise DuplicateError(type(model).__name__.removesuffix("Model"), field, value) from exc


# ===================================================================
# SQLAlchemyEvidenceRepository
# ===================================================================

class SQLAlchemyEvidenceRepository(_AuditedRepository, EvidenceRepository):
    """Append-only evidence ledger backed by the ``evidence_records`` table."""

    entity_type = "evidence_records"

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def find_by_id(self, entity_id: str) -> EvidenceRecord | None:
        result = await self._session.execute(
            select(EvidenceRecordModel).where(EvidenceRecordModel.id == entity_id)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def find_by_hash(self, hash: str) -> EvidenceRecord | None:
        result = await self._session.execute(
            select(EvidenceRecordModel)
            .where(EvidenceRecordModel.hash == hash)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def exists(self, hash: str) -> bool:
        result = await self._session.execute(
            select(func.count()).select_from(EvidenceRecordModel).where(EvidenceRecordModel.hash == hash)
        )
        return (result.scalar() or 0) > 0

    async def find_claimable(self, now: datetime, limit: int, include_fresh: bool = True) -> list[str]:
        m = EvidenceRecordModel
        due_pending = and_(
            m.status == EvidenceStatus.PENDING.value,
            or_(m.next_retry_at.is_(None), m.next_retry_at <= now),
        )
        lapsed_processing = and_(
            m.status == EvidenceStatus.PROCESSING.value,
            or_(m.lease_expires_at.is_(None), m.lease_expires_at <= now),
        )
        query = select(m.hash).where(or_(due_pending, lapsed_processing))
        if not include_fresh:
            # Fresh, never-batched records belong to the batch coordinator.
            query = query.where(or_(
                m.status == EvidenceStatus.PROCESSING.value,
                m.retry_count > 0,
                m.batch_id.is_not(None),
            ))
        query = query.order_by(m.created_at, m.hash).limit(limit)
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def find_batch_candidates(self, now: datetime, limit: int) -> list[EvidenceRecord]:
        m = EvidenceRecordModel
        result = await self._session.execute(
            select(m)
            .where(
                m.status == EvidenceStatus.PENDING.value,
                m.batch_id.is_(None),
                m.retry_count == 0,
                or_(m.next_retry_at.is_(None), m.next_retry_at <= now),
            )
            .order_by(m.created_at, m.hash)
            .limit(limit)
        )
        return [self._to_entity(model) for model in result.scalars().all()]

    async def page_hashes(self, after: str | None, limit: int) -> list[str]:
        query = select(EvidenceRecordModel.hash).order_by(EvidenceRecordModel.hash).limit(limit)
        if after is not None:
            query = query.where(EvidenceRecordModel.hash > after)
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def page_by_status(
        self, status: EvidenceStatus, after: str | None, limit: int
    ) -> list[EvidenceRecord]:
        m = EvidenceRecordModel
        query = select(m).where(m.status == status.value).order_by(m.hash).limit(limit)
        if after is not None:
            query = query.where(m.hash > after)
        result = await self._session.execute(query)
        return [self._to_entity(model) for model in result.scalars().all()]

    async def duplicate_hashes(self) -> dict[str, int]:
        key = func.lower(EvidenceRecordModel.hash)
        result = await self._session.execute(
            select(key, func.count()).group_by(key).having(func.count() > 1)
        )
        return {hash: count for hash, count in result.all()}

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    @audited(AuditOperation.CREATE)
    async def save(self, entity: EvidenceRecord, actor: ActorContext) -> EvidenceRecord:
        """Insert a new record. The unique index on ``hash`` is the duplicate check."""
        await self._flush_insert(self._to_model(entity), "hash", entity.hash)
        return entity

    @audited(AuditOperation.UPDATE)
    async def update(self, entity: EvidenceRecord, actor: ActorContext) -> EvidenceRecord:
        """Persist a mutated record if nobody else changed it since it was read.

        The caller has already bumped ``entity.version``; the row must still
        carry the previous value.
        """
        expected_version = entity.version - 1
        stmt = (
            update(EvidenceRecordModel)
            .where(
                EvidenceRecordModel.hash == entity.hash,
                EvidenceRecordModel.version == expected_version,
            )
            .values(
                status=entity.status.value,
                batch_id=entity.batch_id,
                attestation_tx_ref=entity.attestation_tx_ref,
                confirmation_count=entity.confirmation_count,
                retry_count=entity.retry_count,
                next_retry_at=entity.next_retry_at,
                last_error_code=entity.last_error_code,
                last_error_message=entity.last_error_message,
                lease_owner=entity.lease_owner,
                lease_expires_at=entity.lease_expires_at,
                updated_at=entity.updated_at,
                version=entity.version,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            if not await self.exists(entity.hash):
                raise NotFoundError("EvidenceRecord", entity.hash)
            raise ConcurrencyError("EvidenceRecord", entity.hash)
        return entity

    @audited(AuditOperation.DELETE, target="hash")
    async def delete(self, hash: str, actor: ActorContext) -> None:
        raise AppendOnlyViolation("EvidenceRecord", hash)

    # ------------------------------------------------------------------
    # Mappers
    # ------------------------------------------------------------------

    def _identity(self, subject: Any) -> str:
        return subject if isinstance(subject, str) else subject.hash

    async def _load(self, key: str) -> EvidenceRecord | None:
        return await self.find_by_hash(key)

    @staticmethod
    def _to_entity(model: EvidenceRecordModel) -> EvidenceRecord:
        return EvidenceRecord(
            id=model.id,
            hash=model.hash,
            original_reference=model.original_reference,
            title=model.title,
            capture_timestamp=model.capture_timestamp,
            submitter_identity=model.submitter_identity,
            status=EvidenceStatus(model.status),
            batch_id=model.batch_id,
            attestation_tx_ref=model.attestation_tx_ref,
            confirmation_count=model.confirmation_count,
            risk_score=model.risk_score,
            quality_score=model.quality_score,
            retry_count=model.retry_count,
            next_retry_at=model.next_retry_at,
            last_error_code=model.last_error_code,
            last_error_message=model.last_error_message,
            lease_owner=model.lease_owner,
            lease_expires_at=model.lease_expires_at,
            metadata=model.extra or {},
            version=model.version,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    @staticmethod
    def _to_model(entity: EvidenceRecord) -> EvidenceRecordModel:
        return EvidenceRecordModel(
            id=entity.id,
            hash=entity.hash,
            original_reference=entity.original_reference,
            title=entity.title,
            capture_timestamp=entity.capture_timestamp,
            submitter_identity=entity.submitter_identity,
            status=entity.status.value,
            batch_id=entity.batch_id,
            attestation_tx_ref=entity.attestation_tx_ref,
            confirmation_count=entity.confirmation_count,
            risk_score=entity.risk_score,
            quality_score=entity.quality_score,
            retry_count=entity.retry_count,
            next_retry_at=entity.next_retry_at,
            last_error_code=entity.last_error_code,
            last_error_message=entity.last_error_message,
            lease_owner=entity.lease_owner,
            lease_expires_at=entity.lease_expires_at,
            extra=entity.metadata,
            version=entity.version,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
        )


# ===================================================================
# SQLAlchemyAttestationTransactionRepository
# ===================================================================

class SQLAlchemyAttestationTransactionRepository(_AuditedRepository, AttestationTransactionRepository):
    """Submission attempts. Superseded, never deleted."""

    entity_type = "attestation_transactions"

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def find_by_id(self, entity_id: str) -> AttestationTransaction | None:
        result = await self._session.execute(
            select(AttestationTransactionModel)
            .where(AttestationTransactionModel.id == entity_id)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def list_for_hash(self, evidence_hash: str) -> list[AttestationTransaction]:
        m = AttestationTransactionModel
        result = await self._session.execute(
            select(m)
            .where(m.evidence_hash == evidence_hash)
            .order_by(m.retry_attempt, m.submitted_at, m.created_at)
        )
        return [self._to_entity(model) for model in result.scalars().all()]

    async def latest_for_hash(self, evidence_hash: str) -> AttestationTransaction | None:
        m = AttestationTransactionModel
        result = await self._session.execute(
            select(m)
            .where(m.evidence_hash == evidence_hash)
            .order_by(m.submitted_at.desc(), m.retry_attempt.desc(), m.created_at.desc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def find_confirmed(self, evidence_hash: str) -> AttestationTransaction | None:
        m = AttestationTransactionModel
        result = await self._session.execute(
            select(m).where(m.evidence_hash == evidence_hash, m.is_confirmed.is_(True))
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def find_confirmed_for_unconfirmed(self, limit: int) -> list[AttestationTransaction]:
        m = AttestationTransactionModel
        result = await self._session.execute(
            select(m)
            .join(EvidenceRecordModel, EvidenceRecordModel.hash == m.evidence_hash)
            .where(m.is_confirmed.is_(True), EvidenceRecordModel.status != EvidenceStatus.CONFIRMED.value)
            .order_by(m.evidence_hash)
            .limit(limit)
        )
        return [self._to_entity(model) for model in result.scalars().all()]

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    @audited(AuditOperation.CREATE)
    async def save(self, entity: AttestationTransaction, actor: ActorContext) -> AttestationTransaction:
        await self._flush_insert(self._to_model(entity), "id", entity.id)
        return entity

    @audited(AuditOperation.UPDATE)
    async def update(self, entity: AttestationTransaction, actor: ActorContext) -> AttestationTransaction:
        if entity.is_confirmed:
            confirmed = await self.find_confirmed(entity.evidence_hash)
            if confirmed is not None and confirmed.id != entity.id:
                raise DuplicateError("AttestationTransaction", "evidence_hash", entity.evidence_hash)
        stmt = (
            update(AttestationTransactionModel)
            .where(
                AttestationTransactionModel.id == entity.id,
                AttestationTransactionModel.version == entity.version - 1,
            )
            .values(
                tx_ref=entity.tx_ref,
                confirmed_at=entity.confirmed_at,
                is_confirmed=entity.is_confirmed,
                confirmation_count=entity.confirmation_count,
                error_code=entity.error_code,
                error_message=entity.error_message,
                next_retry_at=entity.next_retry_at,
                superseded=entity.superseded,
                receipt=entity.receipt,
                updated_at=entity.updated_at,
                version=entity.version,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            if await self._load(entity.id) is None:
                raise NotFoundError("AttestationTransaction", entity.id)
            raise ConcurrencyError("AttestationTransaction", entity.id)
        return entity

    async def supersede_open(self, evidence_hash: str, actor: ActorContext, keep: str | None = None) -> int:
        count = 0
        for tx in await self.list_for_hash(evidence_hash):
            if tx.is_open and tx.id != keep:
                tx.supersede()
                await self.update(tx, actor)
                count += 1
        return count

    # ------------------------------------------------------------------
    # Mappers
    # ------------------------------------------------------------------

    async def _load(self, key: str) -> AttestationTransaction | None:
        return await self.find_by_id(key)

    @staticmethod
    def _to_entity(model: AttestationTransactionModel) -> AttestationTransaction:
        return AttestationTransaction(
            id=model.id,
            tx_ref=model.tx_ref,
            evidence_hash=model.evidence_hash,
            batch_id=model.batch_id,
            network_name=model.network_name,
            submitted_at=model.submitted_at,
            confirmed_at=model.confirmed_at,
            is_confirmed=model.is_confirmed,
            confirmation_count=model.confirmation_count,
            error_code=model.error_code,
            error_message=model.error_message,
            retry_attempt=model.retry_attempt,
            next_retry_at=model.next_retry_at,
            superseded=model.superseded,
            receipt=model.receipt or {},
            version=model.version,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    @staticmethod
    def _to_model(entity: AttestationTransaction) -> AttestationTransactionModel:
        return AttestationTransactionModel(
            id=entity.id,
            tx_ref=entity.tx_ref,
            evidence_hash=entity.evidence_hash,
            batch_id=entity.batch_id,
            network_name=entity.network_name,
            submitted_at=entity.submitted_at,
            confirmed_at=entity.confirmed_at,
            is_confirmed=entity.is_confirmed,
            confirmation_count=entity.confirmation_count,
            error_code=entity.error_code,
            error_message=entity.error_message,
            retry_attempt=entity.retry_attempt,
            next_retry_at=entity.next_retry_at,
            superseded=entity.superseded,
            receipt=entity.receipt,
            version=entity.version,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
        )


# ===================================================================
# SQLAlchemyBatchRepository
# ===================================================================

class SQLAlchemyBatchRepository(_AuditedRepository, BatchRepository):

    entity_type = "attestation_batches"

    async def find_by_id(self, entity_id: str) -> AttestationBatch | None:
        result = await self._session.execute(
            select(AttestationBatchModel)
            .where(AttestationBatchModel.id == entity_id)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def find_by_digest(self, batch_digest: str) -> AttestationBatch | None:
        result = await self._session.execute(
            select(AttestationBatchModel).where(AttestationBatchModel.batch_digest == batch_digest)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    @audited(AuditOperation.CREATE)
    async def save(self, entity: AttestationBatch, actor: ActorContext) -> AttestationBatch:
        await self._flush_insert(self._to_model(entity), "batch_digest", entity.batch_digest)
        return entity

    @audited(AuditOperation.UPDATE)
    async def update(self, entity: AttestationBatch, actor: ActorContext) -> AttestationBatch:
        stmt = (
            update(AttestationBatchModel)
            .where(
                AttestationBatchModel.id == entity.id,
                AttestationBatchModel.version == entity.version - 1,
            )
            .values(
                status=entity.status.value,
                tx_ref=entity.tx_ref,
                submitted_at=entity.submitted_at,
                confirmed_at=entity.confirmed_at,
                error_message=entity.error_message,
                updated_at=entity.updated_at,
                version=entity.version,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            if await self._load(entity.id) is None:
                raise NotFoundError("AttestationBatch", entity.id)
            raise ConcurrencyError("AttestationBatch", entity.id)
        return entity

    async def _load(self, key: str) -> AttestationBatch | None:
        return await self.find_by_id(key)

    @staticmethod
    def _to_entity(model: AttestationBatchModel) -> AttestationBatch:
        return AttestationBatch(
            id=model.id,
            batch_digest=model.batch_digest,
            member_hashes=list(model.member_hashes or []),
            member_count=model.member_count,
            status=BatchStatus(model.status),
            tx_ref=model.tx_ref,
            submitted_at=model.submitted_at,
            confirmed_at=model.confirmed_at,
            error_message=model.error_message,
            version=model.version,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    @staticmethod
    def _to_model(entity: AttestationBatch) -> AttestationBatchModel:
        return AttestationBatchModel(
            id=entity.id,
            batch_digest=entity.batch_digest,
            member_hashes=list(entity.member_hashes),
            member_count=entity.member_count,
            status=entity.status.value,
            tx_ref=entity.tx_ref,
            submitted_at=entity.submitted_at,
            confirmed_at=entity.confirmed_at,
            error_message=entity.error_message,
            version=entity.version,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
        )


# ===================================================================
# SQLAlchemyNetworkStateRepository
# ===================================================================

class SQLAlchemyNetworkStateRepository(_AuditedRepository, NetworkStateRepository):

    entity_type = "network_states"

    async def find(self, network_name: str) -> NetworkState | None:
        result = await self._session.execute(
            select(NetworkStateModel)
            .where(NetworkStateModel.network_name == network_name)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    @audited(AuditOperation.CREATE, target="state")
    async def save(self, state: NetworkState, actor: ActorContext) -> NetworkState:
        await self._flush_insert(self._to_model(state), "network_name", state.network_name)
        return state

    @audited(AuditOperation.UPDATE, target="state")
    async def update(self, state: NetworkState, actor: ActorContext) -> NetworkState:
        stmt = (
            update(NetworkStateModel)
            .where(
                NetworkStateModel.network_name == state.network_name,
                NetworkStateModel.version == state.version - 1,
            )
            .values(
                last_known_height=state.last_known_height,
                last_sync_at=state.last_sync_at,
                is_synced=state.is_synced,
                active_peers=state.active_peers,
                total_peers=state.total_peers,
                health=state.health.value,
                last_error=state.last_error,
                updated_at=state.updated_at,
                version=state.version,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            if await self.find(state.network_name) is None:
                raise NotFoundError("NetworkState", state.network_name)
            raise ConcurrencyError("NetworkState", state.network_name)
        return state

    def _identity(self, subject: Any) -> str:
        return subject if isinstance(subject, str) else subject.network_name

    async def _load(self, key: str) -> NetworkState | None:
        return await self.find(key)

    @staticmethod
    def _to_entity(model: NetworkStateModel) -> NetworkState:
        return NetworkState(
            id=model.id,
            network_name=model.network_name,
            last_known_height=model.last_known_height,
            last_sync_at=model.last_sync_at,
            is_synced=model.is_synced,
            active_peers=model.active_peers,
            total_peers=model.total_peers,
            health=NetworkHealth(model.health),
            last_error=model.last_error,
            version=model.version,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    @staticmethod
    def _to_model(state: NetworkState) -> NetworkStateModel:
        return NetworkStateModel(
            id=state.id,
            network_name=state.network_name,
            last_known_height=state.last_known_height,
            last_sync_at=state.last_sync_at,
            is_synced=state.is_synced,
            active_peers=state.active_peers,
            total_peers=state.total_peers,
            health=state.health.value,
            last_error=state.last_error,
            version=state.version,
            created_at=state.created_at,
            updated_at=state.updated_at,
        )


# ===================================================================
# SQLAlchemyVerificationCacheRepository
# ===================================================================

class SQLAlchemyVerificationCacheRepository(VerificationCacheRepository):
    """Unaudited projection; it can always be recomputed from the ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, hash: str) -> VerificationCacheEntry | None:
        result = await self._session.execute(
            select(VerificationCacheModel)
            .where(VerificationCacheModel.hash == hash)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def upsert(self, entry: VerificationCacheEntry) -> VerificationCacheEntry:
        await self._session.merge(VerificationCacheModel(
            hash=entry.hash,
            evidence_id=entry.evidence_id,
            cached_result=entry.cached_result.value,
            source_status=entry.source_status.value if entry.source_status else None,
            attestation_tx_ref=entry.attestation_tx_ref,
            confirmation_count=entry.confirmation_count,
            quality_score=entry.quality_score,
            risk_score=entry.risk_score,
            last_refreshed_at=entry.last_refreshed_at,
        ))
        await self._session.flush()
        return entry

    @staticmethod
    def _to_entity(model: VerificationCacheModel) -> VerificationCacheEntry:
        return VerificationCacheEntry(
            hash=model.hash,
            evidence_id=model.evidence_id,
            cached_result=VerificationResult(model.cached_result),
            source_status=EvidenceStatus(model.source_status) if model.source_status else None,
            attestation_tx_ref=model.attestation_tx_ref,
            confirmation_count=model.confirmation_count,
            quality_score=model.quality_score,
            risk_score=model.risk_score,
            last_refreshed_at=model.last_refreshed_at,
        )


# ===================================================================
# SQLAlchemyAuditLogRepository
# ===================================================================

_AUDIT_COLUMNS = [column.name for column in AuditLogModel.__table__.columns]


class SQLAlchemyAuditLogRepository(AuditLogRepository):
    """Insert-only audit trail with a per-resource digest chain."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        entry.seal(await self._last_digest(entry.resource_type, entry.resource_id))
        model = AuditLogModel(
            action=entry.action,
            resource_type=entry.resource_type,
            resource_id=entry.resource_id,
            actor_identity=entry.actor_identity,
            actor_type=entry.actor_type,
            before_state=entry.before_state,
            after_state=entry.after_state,
            changed_fields=list(entry.changed_fields),
            change_magnitude=entry.change_magnitude.value,
            compliance_flags=dict(entry.compliance_flags),
            compliance_level=entry.compliance_level.value,
            context=dict(entry.context),
            previous_digest=entry.previous_digest,
            entry_digest=entry.entry_digest,
            occurred_at=entry.occurred_at,
        )
        self._session.add(model)
        await self._session.flush()
        entry.sequence = model.sequence
        return entry

    async def list_for_resource(self, resource_type: str, resource_id: str) -> list[AuditLogEntry]:
        result = await self._session.execute(
            select(AuditLogModel)
            .where(AuditLogModel.resource_type == resource_type, AuditLogModel.resource_id == resource_id)
            .order_by(AuditLogModel.sequence)
        )
        return [self._to_entity(model) for model in result.scalars().all()]

    async def list_since(self, resource_type: str, resource_id: str, since: datetime) -> list[AuditLogEntry]:
        result = await self._session.execute(
            select(AuditLogModel)
            .where(
                AuditLogModel.resource_type == resource_type,
                AuditLogModel.resource_id == resource_id,
                AuditLogModel.occurred_at >= since,
            )
            .order_by(AuditLogModel.sequence)
        )
        return [self._to_entity(model) for model in result.scalars().all()]

    async def archive_before(self, cutoff: datetime) -> int:
        """Move entries older than ``cutoff`` into ``audit_logs_archive``."""
        source = AuditLogModel.__table__
        archived_at = literal(utcnow(), type_=UTCDateTime()).label("archived_at")
        await self._session.execute(
            insert(AuditLogArchiveModel).from_select(
                [*_AUDIT_COLUMNS, "archived_at"],
                select(*[source.c[name] for name in _AUDIT_COLUMNS], archived_at)
                .where(source.c.occurred_at < cutoff),
            )
        )
        result = await self._session.execute(
            delete(AuditLogModel)
            .where(AuditLogModel.occurred_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def _last_digest(self, resource_type: str, resource_id: str) -> str | None:
        result = await self._session.execute(
            select(AuditLogModel.entry_digest)
            .where(AuditLogModel.resource_type == resource_type, AuditLogModel.resource_id == resource_id)
            .order_by(AuditLogModel.sequence.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _to_entity(model: AuditLogModel) -> AuditLogEntry:
        return AuditLogEntry(
            sequence=model.sequence,
            action=model.action,
            resource_type=model.resource_type,
            resource_id=model.resource_id,
            actor_identity=model.actor_identity,
            actor_type=model.actor_type,
            before_state=model.before_state,
            after_state=model.after_state,
            changed_fields=list(model.changed_fields or []),
            change_magnitude=ChangeMagnitude(model.change_magnitude),
            compliance_flags=dict(model.compliance_flags or {}),
            compliance_level=ComplianceLevel(model.compliance_level),
            context=dict(model.context or {}),
            previous_digest=model.previous_digest,
            entry_digest=model.entry_digest,
            occurred_at=model.occurred_at,
        )


__all__ = [
    "SQLAlchemyAttestationTransactionRepository",
    "SQLAlchemyAuditLogRepository",
    "SQLAlchemyBatchRepository",
    "SQLAlchemyEvidenceRepository",
    "SQLAlchemyNetworkStateRepository",
    "SQLAlchemyVerificationCacheRepository",
]
