"""
Function invoker — POSTs a JSON body to one of the function endpoints.

Used by the orchestrator (one invocation per chunk) and by the retry
sweeper (re-invoking logged failures).
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

logger = structlog.get_logger(__name__)


class InvocationError(Exception):
    """Invocation returned non-2xx or never reached the endpoint."""


class FunctionInvoker:
    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 300.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> FunctionInvoker:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout, connect=10.0))
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def invoke(self, name: str, body: dict[str, Any]) -> dict[str, Any]:
        """Invoke `name` and return its JSON response."""
        assert self._client is not None, "FunctionInvoker used outside its context"
        headers = {"X-Api-Key": self._api_key} if self._api_key else {}
        url = f"{self._base_url}/{name}"
        try:
            response = await self._client.post(url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise InvocationError(f"{name}: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {"data": payload}

        if response.status_code >= 400:
            detail = payload.get("error") or payload.get("detail") or response.text[:200]
            raise InvocationError(f"{name} returned {response.status_code}: {detail}")

        logger.debug("function_invoked", function=name, status=response.status_code)
        return payload
