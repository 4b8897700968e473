"""HTTP adapter for the external notary (attestation service).

Every request is bounded by the configured timeout and classified:

* timeouts, connection faults, 5xx, 429, undecodable bodies and an open
  circuit raise :class:`TransientError`
* any other 4xx raises :class:`RejectedError`
* 404 on a status poll raises ``TransientError(tx_not_found)`` so the engine
  resubmits instead of polling a reference the notary no longer knows
"""
from __future__ import annotations

import asyncio
from typing import Any

import httpx
import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from notarium.domain.entities import (
    AttestationStatus,
    ErrorCode,
    NetworkSnapshot,
    StatusReport,
    SubmissionReceipt,
)
from notarium.domain.exceptions import RejectedError, TransientError
from notarium.domain.repositories import AttestationClient
from notarium.infrastructure.config import NotarySettings
from notarium.infrastructure.external.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from notarium.shared.decorators import timed

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Wire bodies
# ---------------------------------------------------------------------------

class _ReceiptBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tx_ref: str = Field(..., min_length=1, validation_alias=AliasChoices("txRef", "tx_ref", "hash"))
    status: AttestationStatus = AttestationStatus.PENDING


class _StatusBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    status: AttestationStatus
    confirmations: int = Field(default=0, ge=0)
    error: str | None = None


class _NetworkBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    network_name: str | None = Field(default=None, validation_alias=AliasChoices("networkName", "network_name"))
    height: int = Field(default=0, ge=0, validation_alias=AliasChoices("height", "lastSnapshotHeight"))
    active_peers: int = Field(default=0, ge=0, validation_alias=AliasChoices("activePeers", "active_peers"))
    total_peers: int = Field(default=0, ge=0, validation_alias=AliasChoices("totalPeers", "total_peers"))


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class NotaryClient(AttestationClient):
    """``AttestationClient`` over the notary's JSON HTTP API."""

    def __init__(
        self,
        settings: NotarySettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        headers = {"Accept": "application/json", "User-Agent": "notarium"}
        if settings.api_key is not None:
            headers["Authorization"] = f"Bearer {settings.api_key.get_secret_value()}"
        self._timeout = settings.timeout_seconds
        self._network_name = settings.network_name
        self._client = httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=httpx.Timeout(settings.timeout_seconds),
            headers=headers,
            transport=transport,
        )
        self.breaker = breaker or CircuitBreaker(
            "notary",
            CircuitBreakerConfig(
                failure_threshold=settings.circuit_failure_threshold,
                recovery_timeout_seconds=settings.circuit_recovery_seconds,
            ),
        )

    # ------------------------------------------------------------------
    # AttestationClient
    # ------------------------------------------------------------------

    async def submit(self, hash: str, metadata: dict[str, Any]) -> SubmissionReceipt:
        body = await self._request(
            "POST",
            "/v1/attestations",
            json={"hash": hash, "network": self._network_name, "metadata": metadata},
            idempotency_key=hash,
        )
        receipt = self._parse(_ReceiptBody, body)
        logger.info("notary_submitted", hash=hash, tx_ref=receipt.tx_ref)
        return SubmissionReceipt(tx_ref=receipt.tx_ref, status=receipt.status)

    async def submit_batch(
        self, batch_digest: str, member_hashes: list[str], metadata: dict[str, Any]
    ) -> SubmissionReceipt:
        body = await self._request(
            "POST",
            "/v1/attestations/batch",
            json={
                "batchDigest": batch_digest,
                "members": member_hashes,
                "network": self._network_name,
                "metadata": metadata,
            },
            idempotency_key=batch_digest,
        )
        receipt = self._parse(_ReceiptBody, body)
        logger.info("notary_batch_submitted", batch_digest=batch_digest, members=len(member_hashes), tx_ref=receipt.tx_ref)
        return SubmissionReceipt(tx_ref=receipt.tx_ref, status=receipt.status)

    async def poll_status(self, tx_ref: str) -> StatusReport:
        body = await self._request("GET", f"/v1/attestations/{tx_ref}", not_found=ErrorCode.TX_NOT_FOUND)
        parsed = self._parse(_StatusBody, body)
        return StatusReport(
            tx_ref=tx_ref,
            status=parsed.status,
            confirmations=parsed.confirmations,
            error=parsed.error,
            raw=body,
        )

    async def network_info(self) -> NetworkSnapshot:
        body = await self._request("GET", "/v1/network")
        parsed = self._parse(_NetworkBody, body)
        return NetworkSnapshot(
            network_name=parsed.network_name or self._network_name,
            height=parsed.height,
            active_peers=parsed.active_peers,
            total_peers=parsed.total_peers,
        )

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    @timed("notary_request", slow_ms=5000.0)
    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
        not_found: ErrorCode | None = None,
    ) -> dict[str, Any]:
        if not self.breaker.allow():
            raise TransientError("notary circuit is open", ErrorCode.CIRCUIT_OPEN.value)

        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        try:
            response = await asyncio.wait_for(
                self._client.request(method, path, json=json, headers=headers),
                timeout=self._timeout,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
            self.breaker.record_failure()
            logger.warning("notary_timeout", method=method, path=path)
            raise TransientError(f"notary timed out on {method} {path}", ErrorCode.TIMEOUT.value) from exc
        except httpx.RequestError as exc:
            self.breaker.record_failure()
            logger.warning("notary_request_error", method=method, path=path, error=str(exc))
            raise TransientError(f"notary unreachable: {exc}", ErrorCode.NETWORK_ERROR.value) from exc

        status = response.status_code
        if status >= 500:
            self.breaker.record_failure()
            logger.warning("notary_http_error", method=method, path=path, status=status)
            raise TransientError(f"notary returned {status}", ErrorCode.SERVICE_UNAVAILABLE.value)
        self.breaker.record_success()
        if status == 429:
            logger.warning("notary_rate_limited", method=method, path=path)
            raise TransientError("notary rate limit exceeded", ErrorCode.RATE_LIMITED.value)
        if status == 404 and not_found is not None:
            raise TransientError(f"notary does not know {path}", not_found.value)
        if status >= 400:
            reason = self._error_message(response)
            logger.warning("notary_rejected", method=method, path=path, status=status, reason=reason)
            raise RejectedError(reason, ErrorCode.REJECTED.value)

        try:
            body = response.json()
        except ValueError as exc:
            raise TransientError("notary response is not JSON", ErrorCode.MALFORMED_RESPONSE.value) from exc
        if not isinstance(body, dict):
            raise TransientError("notary response is not an object", ErrorCode.MALFORMED_RESPONSE.value)
        return body

    @staticmethod
    def _parse(model: type[BaseModel], body: dict[str, Any]) -> Any:
        try:
            return model.model_validate(body)
        except PydanticValidationError as exc:
            raise TransientError(
                f"unexpected notary response: {exc.errors()[0].get('msg')}",
                ErrorCode.MALFORMED_RESPONSE.value,
            ) from exc

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        if isinstance(body, dict):
            for key in ("error", "message", "detail"):
                if isinstance(body.get(key), str):
                    return body[key]
        return f"HTTP {response.status_code}"


__all__ = ["NotaryClient"]
