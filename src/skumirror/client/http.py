"""
HTTP client for the image mirror service.

Implements CacheBackend over the service's two endpoints. Every transport
problem is raised as ClientTransportError so callers have a single thing to
catch.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx

from skumirror.cache.base import CacheBackend
from skumirror.config import get_settings
from skumirror.exceptions import ClientTransportError
from skumirror.types import CacheKey, CheckResult, ErrorKind, MaterializeResult


class MirrorClient(CacheBackend):
    """Client for the existence-check and materialize endpoints."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        materialize_timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Service base URL (defaults to SERVICE_URL).
            timeout: Timeout for existence checks (defaults to CLIENT_TIMEOUT_SECONDS).
            materialize_timeout: Timeout for materialize calls, which wait for
                the remote download; defaults to the fetch budget.
            transport: Optional httpx transport (used by tests).
        """
        settings = get_settings()
        self.base_url = (base_url or settings.SERVICE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.CLIENT_TIMEOUT_SECONDS
        if materialize_timeout is None:
            materialize_timeout = (
                settings.FETCH_TIMEOUT_SECONDS * settings.MAX_ATTEMPTS
                + settings.BACKOFF_MAX_SECONDS * (settings.MAX_ATTEMPTS - 1)
                + self.timeout
            )
        self.materialize_timeout = materialize_timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> MirrorClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _request(
        self, operation: str, method: str, path: str, **kwargs: Any
    ) -> dict[str, Any]:
        """Send a request and return its JSON object body.

        A 4xx answer whose body names an error kind is returned like a
        normal body, so ``invalid_key`` reaches the caller as a result.
        """
        client = await self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
            if response.is_client_error:
                error_body = _error_body(response)
                if error_body is not None:
                    return error_body
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ClientTransportError(
                f"{operation} request failed",
                context={"operation": operation, "url": f"{self.base_url}{path}", "error": str(e)},
            ) from e
        if not isinstance(data, dict):
            raise ClientTransportError(
                f"{operation} returned an unexpected body",
                context={"operation": operation, "url": f"{self.base_url}{path}"},
            )
        return data

    async def check_exists(self, key: CacheKey) -> CheckResult:
        data = await self._request(
            "check_exists", "GET", f"/api/inventory/image/{quote(key.slug, safe='')}"
        )
        local_path = data.get("localPath")
        exists = bool(data.get("exists")) and bool(local_path)
        return CheckResult(exists=exists, local_path=local_path if exists else None)

    async def materialize(self, key: CacheKey, remote_url: str) -> MaterializeResult:
        data = await self._request(
            "materialize",
            "POST",
            "/api/inventory/download-image",
            json={"sku": key.slug, "imageUrl": remote_url},
            timeout=self.materialize_timeout,
        )
        if data.get("success") and data.get("localPath"):
            return MaterializeResult.ok(data["localPath"])
        try:
            kind = ErrorKind(data.get("error") or ErrorKind.NETWORK_ERROR.value)
        except ValueError:
            kind = ErrorKind.NETWORK_ERROR
        return MaterializeResult.failed(kind, data.get("detail"))


def _error_body(response: httpx.Response) -> dict[str, Any] | None:
    try:
        data = response.json()
    except ValueError:
        return None
    if isinstance(data, dict) and data.get("error"):
        return data
    return None
