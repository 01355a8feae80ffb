"""Async client for the VAPI REST API."""
from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from ..core.config import settings

logger = logging.getLogger(__name__)


class VapiConfigurationError(RuntimeError):
    """Raised when the VAPI credentials needed for a request are missing."""


class VapiRequestError(RuntimeError):
    """Raised when VAPI answers with a non-success status."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class VapiCallNotFoundError(VapiRequestError):
    """Raised when VAPI does not (yet) know the requested call."""


class VapiClient:
    """Thin wrapper over ``httpx.AsyncClient`` with bearer auth."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.vapi.ai",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_key:
            raise VapiConfigurationError("VAPI_API_KEY is not configured")
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "VapiClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get_call(self, call_id: str) -> dict[str, Any]:
        """Fetch one call, including its transcript artifact once processed."""

        response = await self._request("GET", f"/call/{call_id}")
        return response.json()

    async def list_calls(self, limit: int = 50) -> list[dict[str, Any]]:
        """Return the most recent calls for the account."""

        response = await self._request("GET", "/call", params={"limit": limit})
        payload = response.json()
        if isinstance(payload, dict):
            payload = payload.get("items", [])
        return [item for item in payload if isinstance(item, dict)]

    async def create_call(self, assistant_id: str, metadata: dict[str, Any]) -> dict[str, Any]:
        """Create a call for ``assistant_id`` tagged with ``metadata``."""

        body = {"assistantId": assistant_id, "metadata": metadata}
        response = await self._request("POST", "/call", json=body)
        return response.json()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise VapiRequestError(f"VAPI request failed: {exc}") from exc

        if response.status_code == 404:
            raise VapiCallNotFoundError(f"VAPI {method} {url} returned 404", status_code=404)
        if response.is_error:
            raise VapiRequestError(
                f"VAPI {method} {url} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response


def client_from_settings(transport: httpx.AsyncBaseTransport | None = None) -> VapiClient:
    """Build a client from process settings, failing fast without an API key."""

    if not settings.vapi_api_key.strip():
        raise VapiConfigurationError("VAPI_API_KEY is not configured")
    return VapiClient(
        settings.vapi_api_key.strip(),
        base_url=settings.vapi_base_url,
        timeout=settings.vapi_request_timeout_seconds,
        transport=transport,
    )


async def fetch_call_artifact(
    client: VapiClient,
    call_id: str,
    *,
    attempts: int = 3,
    backoff_seconds: float = 2.0,
) -> dict[str, Any]:
    """Fetch a finished call, retrying while VAPI has not published it yet."""

    attempts = max(1, attempts)
    for attempt in range(1, attempts):
        try:
            return await client.get_call(call_id)
        except VapiCallNotFoundError:
            delay = backoff_seconds * (2 ** (attempt - 1))
            logger.info(
                "Call %s not available yet (attempt %d/%d); retrying in %.1fs",
                call_id,
                attempt,
                attempts,
                delay,
            )
            await asyncio.sleep(delay)
    return await client.get_call(call_id)
