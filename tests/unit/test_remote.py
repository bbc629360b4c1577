"""Tests for the httpx remote sync client."""

from __future__ import annotations

import json

import httpx
import pytest

from retina_offline.errors import NetworkFailureError, PushTimeoutError, RemoteRejectedError
from retina_offline.models import SyncEnvelope
from retina_offline.sync import RemoteSyncClient


def _client(handler) -> RemoteSyncClient:
    return RemoteSyncClient(
        base_url="http://remote.test/",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


class TestRemoteSyncClient:
    """Test suite for RemoteSyncClient."""

    @pytest.fixture
    def envelope(self, make_detection) -> SyncEnvelope:
        return SyncEnvelope.from_entity(make_detection(id="d1"))

    def test_urls(self) -> None:
        client = RemoteSyncClient(base_url="http://remote.test/")

        assert client.sync_url == "http://remote.test/api/sync"
        assert client.health_url == "http://remote.test/api/health"

    @pytest.mark.asyncio
    async def test_push_sends_envelope(self, envelope: SyncEnvelope) -> None:
        """Test the wire shape and idempotency header of a push."""
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"ok": True})

        async with _client(handler) as client:
            await client.push(envelope)

        [request] = requests
        body = json.loads(request.content)
        assert request.method == "POST"
        assert str(request.url) == "http://remote.test/api/sync"
        assert request.headers["Idempotency-Key"] == "d1"
        assert body["entityType"] == "detection"
        assert body["id"] == "d1"
        assert body["payload"]["image_id"] == "img-1"
        assert "synced" not in body["payload"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [500, 502, 503, 408, 429])
    async def test_transient_status(self, envelope: SyncEnvelope, status: int) -> None:
        async with _client(lambda request: httpx.Response(status)) as client:
            with pytest.raises(NetworkFailureError):
                await client.push(envelope)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 409, 422])
    async def test_rejected_status(self, envelope: SyncEnvelope, status: int) -> None:
        """Test definite 4xx rejections carry the status code."""
        async with _client(lambda request: httpx.Response(status, text="invalid metrics")) as client:
            with pytest.raises(RemoteRejectedError) as exc_info:
                await client.push(envelope)

        assert exc_info.value.status_code == status
        assert "invalid metrics" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_connect_error_is_transient(self, envelope: SyncEnvelope) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(NetworkFailureError) as exc_info:
                await client.push(envelope)

        assert not isinstance(exc_info.value, PushTimeoutError)

    @pytest.mark.asyncio
    async def test_timeout(self, envelope: SyncEnvelope) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        async with _client(handler) as client:
            with pytest.raises(PushTimeoutError):
                await client.push(envelope)

    @pytest.mark.asyncio
    async def test_probe(self) -> None:
        """Test the probe is a no-cache HEAD on the health endpoint."""
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(204)

        async with _client(handler) as client:
            assert await client.probe() is True

        assert requests[0].method == "HEAD"
        assert requests[0].url.path == "/api/health"
        assert requests[0].headers["Cache-Control"] == "no-cache"

    @pytest.mark.asyncio
    async def test_probe_failure(self) -> None:
        """Test captive-portal style responses and transport errors count as unreachable."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("dns failure", request=request)

        async with _client(lambda request: httpx.Response(302)) as client:
            assert await client.probe() is False

        async with _client(handler) as client:
            assert await client.probe() is False

    @pytest.mark.asyncio
    async def test_does_not_close_injected_client(self) -> None:
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
        client = RemoteSyncClient(base_url="http://remote.test", client=http_client)

        await client.aclose()

        assert http_client.is_closed is False
        await http_client.aclose()
