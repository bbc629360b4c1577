"""Remote sync client: idempotent upserts and the health probe over httpx."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from retina_offline.errors import NetworkFailureError, PushTimeoutError, RemoteRejectedError

if TYPE_CHECKING:
    from retina_offline.models import SyncEnvelope

logger = logging.getLogger(__name__)

# 4xx responses that still mean "try again later"
TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})


class SyncTransport(Protocol):
    """Delivers one envelope to the remote; returns only on acknowledgment."""

    async def push(self, envelope: SyncEnvelope) -> None: ...


class HealthProbe(Protocol):
    """Side-effect-free reachability check."""

    async def probe(self) -> bool: ...


class RemoteSyncClient:
    """httpx client for the sync endpoint and the health endpoint.

    Every push is ``POST {base_url}/api/sync`` carrying
    ``{"entityType", "id", "payload"}`` with the entity id repeated in the
    ``Idempotency-Key`` header. The remote must treat repeated delivery of an
    id as an update, never as a new record.
    """

    def __init__(
        self,
        base_url: str,
        health_url: str | None = None,
        timeout: float = 10.0,
        probe_timeout: float = 5.0,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize remote client.

        Args:
            base_url: Base URL of the remote service
            health_url: Health endpoint (defaults to ``{base_url}/api/health``)
            timeout: Per-request timeout for pushes in seconds
            probe_timeout: Timeout for the health probe in seconds
            headers: Extra headers sent with every request (e.g. auth)
            client: Preconfigured httpx client (tests pass a MockTransport client)
        """
        self.base_url = base_url.rstrip("/")
        self.sync_url = f"{self.base_url}/api/sync"
        self.health_url = health_url or f"{self.base_url}/api/health"
        self.timeout = timeout
        self.probe_timeout = probe_timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    async def push(self, envelope: SyncEnvelope) -> None:
        """Upsert one entity on the remote.

        Raises:
            PushTimeoutError: If the request timed out
            NetworkFailureError: On transport errors, 5xx, 408, 425 or 429
            RemoteRejectedError: On any other non-2xx response
        """
        try:
            response = await self._client.post(
                self.sync_url,
                json=envelope.to_wire(),
                headers={"Idempotency-Key": envelope.id},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise PushTimeoutError(f"Push of {envelope.entity_type.value} '{envelope.id}' timed out") from e
        except httpx.HTTPError as e:
            raise NetworkFailureError(
                f"Push of {envelope.entity_type.value} '{envelope.id}' failed: {e.__class__.__name__}: {e}"
            ) from e

        self._raise_for_status(envelope, response)
        logger.debug(f"Remote acknowledged {envelope.entity_type.value} '{envelope.id}'")

    @staticmethod
    def _raise_for_status(envelope: SyncEnvelope, response: httpx.Response) -> None:
        status = response.status_code
        if response.is_success:
            return

        label = f"{envelope.entity_type.value} '{envelope.id}'"
        if status >= 500 or status in TRANSIENT_STATUS_CODES:
            raise NetworkFailureError(f"Remote returned {status} for {label}")

        detail = response.text[:500]
        raise RemoteRejectedError(f"Remote rejected {label} with {status}: {detail}", status_code=status)

    async def probe(self) -> bool:
        """Check that the remote is reachable.

        Returns:
            True only for a 2xx response to ``HEAD`` on the health endpoint
        """
        try:
            response = await self._client.head(
                self.health_url,
                headers={"Cache-Control": "no-cache"},
                timeout=self.probe_timeout,
            )
        except httpx.HTTPError as e:
            logger.debug(f"Health probe failed: {e.__class__.__name__}: {e}")
            return False
        return response.is_success

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> RemoteSyncClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
