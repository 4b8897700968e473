"""Integration tests for the HTTP notary client, using respx to mock httpx.

Covers:
- submit: request body, idempotency key, receipt aliases
- poll_status / network_info parsing
- error classification: 5xx, 429, 4xx, 404 on poll, connection errors,
  malformed bodies
- circuit breaker: opens after consecutive failures and short-circuits calls
"""
from __future__ import annotations

import json

import httpx
import pytest
import respx
from support import make_hash

from notarium.domain.entities import AttestationStatus
from notarium.domain.exceptions import RejectedError, TransientError
from notarium.infrastructure.config import NotarySettings
from notarium.infrastructure.external.circuit_breaker import CircuitState
from notarium.infrastructure.external.notary import NotaryClient

pytestmark = [pytest.mark.asyncio, pytest.mark.integration]

BASE = "http://notary.test"


def _make_client(**overrides) -> NotaryClient:
    values = {"base_url": BASE, "network_name": "testnet", "timeout_seconds": 2.0, "circuit_failure_threshold": 3}
    values.update(overrides)
    return NotaryClient(NotarySettings(**values))


class TestSubmit:

    async def test_submit_sends_idempotency_key(self) -> None:
        client = _make_client(api_key="secret")
        h = make_hash("a")
        with respx.mock:
            route = respx.post(f"{BASE}/v1/attestations").mock(
                return_value=httpx.Response(202, json={"txRef": "tx-42", "status": "pending"})
            )
            receipt = await client.submit(h, {"title": "x"})
        await client.close()

        assert receipt.tx_ref == "tx-42"
        assert receipt.status == AttestationStatus.PENDING
        request = route.calls.last.request
        assert request.headers["Idempotency-Key"] == h
        assert request.headers["Authorization"] == "Bearer secret"
        body = json.loads(request.content)
        assert body == {"hash": h, "network": "testnet", "metadata": {"title": "x"}}

    async def test_receipt_accepts_hash_alias(self) -> None:
        client = _make_client()
        with respx.mock:
            respx.post(f"{BASE}/v1/attestations").mock(
                return_value=httpx.Response(200, json={"hash": "0xabc"})
            )
            receipt = await client.submit(make_hash("a"), {})
        await client.close()
        assert receipt.tx_ref == "0xabc"

    async def test_submit_batch_posts_members(self) -> None:
        client = _make_client()
        with respx.mock:
            route = respx.post(f"{BASE}/v1/attestations/batch").mock(
                return_value=httpx.Response(200, json={"tx_ref": "btx-1"})
            )
            receipt = await client.submit_batch("d" * 64, [make_hash("a")], {"memberCount": 1})
        await client.close()

        assert receipt.tx_ref == "btx-1"
        body = json.loads(route.calls.last.request.content)
        assert body["batchDigest"] == "d" * 64
        assert body["members"] == [make_hash("a")]
        assert route.calls.last.request.headers["Idempotency-Key"] == "d" * 64


class TestPollAndNetwork:

    async def test_poll_status_parses_report(self) -> None:
        client = _make_client()
        with respx.mock:
            respx.get(f"{BASE}/v1/attestations/tx-1").mock(
                return_value=httpx.Response(200, json={"status": "confirmed", "confirmations": 3})
            )
            report = await client.poll_status("tx-1")
        await client.close()

        assert report.status == AttestationStatus.CONFIRMED
        assert report.confirmations == 3
        assert report.raw["confirmations"] == 3

    async def test_poll_404_is_tx_not_found(self) -> None:
        client = _make_client()
        with respx.mock:
            respx.get(f"{BASE}/v1/attestations/tx-1").mock(return_value=httpx.Response(404))
            with pytest.raises(TransientError) as exc_info:
                await client.poll_status("tx-1")
        await client.close()
        assert exc_info.value.error_code == "tx_not_found"

    async def test_network_info(self) -> None:
        client = _make_client()
        with respx.mock:
            respx.get(f"{BASE}/v1/network").mock(
                return_value=httpx.Response(
                    200, json={"networkName": "testnet", "height": 1200, "activePeers": 8, "totalPeers": 10}
                )
            )
            snapshot = await client.network_info()
        await client.close()

        assert snapshot.height == 1200
        assert snapshot.active_peers == 8
        assert snapshot.total_peers == 10


class TestErrorClassification:

    @pytest.mark.parametrize(
        ("response", "error_code"),
        [
            (httpx.Response(503), "service_unavailable"),
            (httpx.Response(429), "rate_limited"),
            (httpx.Response(200, text="<html>oops</html>"), "malformed_response"),
            (httpx.Response(200, json={"unexpected": True}), "malformed_response"),
            (httpx.Response(200, json=["not", "an", "object"]), "malformed_response"),
        ],
    )
    async def test_transient_responses(self, response: httpx.Response, error_code: str) -> None:
        client = _make_client()
        with respx.mock:
            respx.post(f"{BASE}/v1/attestations").mock(return_value=response)
            with pytest.raises(TransientError) as exc_info:
                await client.submit(make_hash("a"), {})
        await client.close()
        assert exc_info.value.error_code == error_code
        assert exc_info.value.retryable

    async def test_client_error_is_rejection(self) -> None:
        client = _make_client()
        with respx.mock:
            respx.post(f"{BASE}/v1/attestations").mock(
                return_value=httpx.Response(400, json={"error": "hash already notarized elsewhere"})
            )
            with pytest.raises(RejectedError) as exc_info:
                await client.submit(make_hash("a"), {})
        await client.close()
        assert exc_info.value.error_code == "rejected"
        assert exc_info.value.message == "hash already notarized elsewhere"
        assert not exc_info.value.retryable

    async def test_connection_error_is_transient(self) -> None:
        client = _make_client()
        with respx.mock:
            respx.post(f"{BASE}/v1/attestations").mock(side_effect=httpx.ConnectError("refused"))
            with pytest.raises(TransientError) as exc_info:
                await client.submit(make_hash("a"), {})
        await client.close()
        assert exc_info.value.error_code == "network_error"

    async def test_timeout_is_transient(self) -> None:
        client = _make_client()
        with respx.mock:
            respx.get(f"{BASE}/v1/network").mock(side_effect=httpx.ReadTimeout("slow"))
            with pytest.raises(TransientError) as exc_info:
                await client.network_info()
        await client.close()
        assert exc_info.value.error_code == "timeout"


class TestCircuitBreaker:

    async def test_breaker_opens_and_short_circuits(self) -> None:
        client = _make_client(circuit_failure_threshold=2)
        with respx.mock:
            route = respx.get(f"{BASE}/v1/network").mock(return_value=httpx.Response(502))
            for _ in range(2):
                with pytest.raises(TransientError):
                    await client.network_info()
            assert client.breaker.state == CircuitState.OPEN

            with pytest.raises(TransientError) as exc_info:
                await client.network_info()
        await client.close()

        assert exc_info.value.error_code == "circuit_open"
        assert route.call_count == 2

    async def test_rejections_do_not_trip_breaker(self) -> None:
        client = _make_client(circuit_failure_threshold=2)
        with respx.mock:
            respx.post(f"{BASE}/v1/attestations").mock(return_value=httpx.Response(422))
            for _ in range(3):
                with pytest.raises(RejectedError):
                    await client.submit(make_hash("a"), {})
        await client.close()
        assert client.breaker.state == CircuitState.CLOSED
