"""
HTTP execution backend.

Talks to a step runtime over HTTP: every invocation is a JSON POST to
`{base_url}/invoke`. Raw outputs come back base64-encoded.

Error mapping:
    - timeouts                    -> ProviderInvocationError(TIMEOUT)
    - network errors, 502/503/504 -> ProviderInvocationError(UNREACHABLE)
    - any other non-2xx           -> ProviderInvocationError(FAILED)

Usage:
    async with HttpExecutionBackend("http://runner:8700") as backend:
        response = await backend.invoke(request)
"""

from __future__ import annotations

import base64
import logging
from typing import Any

import httpx

from conduit.errors import InvocationErrorKind, ProviderInvocationError

from .base import BackendRequest, BackendResponse

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS = {502, 503, 504}


class HttpExecutionBackend:
    """ExecutionBackend over httpx.AsyncClient."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"Content-Type": "application/json", "Accept": "application/json"},
            )
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HttpExecutionBackend":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def invoke(self, request: BackendRequest) -> BackendResponse:
        client = await self._get_client()
        body = request.model_dump(exclude_none=True)

        try:
            response = await client.post("/invoke", json=body, timeout=request.timeout)
        except httpx.TimeoutException as e:
            raise ProviderInvocationError.timeout(request.step, request.timeout) from e
        except httpx.TransportError as e:
            raise ProviderInvocationError.unreachable(request.step, str(e)) from e

        if response.status_code in _TRANSIENT_STATUS:
            raise ProviderInvocationError.unreachable(
                request.step, f"runtime returned {response.status_code}"
            )
        if not response.is_success:
            raise ProviderInvocationError(
                request.step,
                f"runtime rejected invocation ({response.status_code}): {response.text[:200]}",
                kind=InvocationErrorKind.FAILED,
            )

        return self._parse(request.step, response)

    def _parse(self, step: str, response: httpx.Response) -> BackendResponse:
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderInvocationError(step, f"runtime returned invalid JSON: {e}") from e

        raw = data.get("raw")
        if isinstance(raw, str):
            data["raw"] = base64.b64decode(raw)
        logger.debug(f"[{step}] runtime responded success={data.get('success', True)}")
        return BackendResponse.model_validate(data)
