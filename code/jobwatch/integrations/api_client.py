"""Backend REST API client.

Thin async wrapper over ``httpx`` used by status checks and feature adapters.
Every non-2xx response and every transport failure is raised as ``ApiError``
so callers deal with a single error type.  Requests are never retried.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

import httpx
import structlog

from jobwatch.config import settings

log = structlog.get_logger(__name__)


class ApiError(Exception):
    """Raised for any failed backend request.  ``status`` is 0 for network errors."""

    def __init__(self, message: str, status: int) -> None:
        super().__init__(message)
        self.message = message
        self.status = status

    @property
    def is_server_error(self) -> bool:
        return self.status >= 500

    @property
    def is_service_unavailable(self) -> bool:
        return self.status in (0, 502, 503, 504)

    @property
    def is_not_found(self) -> bool:
        return self.status == 404

    def __repr__(self) -> str:
        return f"ApiError(status={self.status}, message={self.message!r})"


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        body = {}
    if isinstance(body, dict):
        message = body.get("detail") or body.get("message")
        if message:
            return str(message)
    return f"Error {resp.status_code}"


class ApiClient:
    """Async client for the analytics backend.

    Usage::

        async with ApiClient() as client:
            summary = await client.get(f"/analysis/projects/{project_id}/summary")

    The underlying ``httpx.AsyncClient`` is also opened lazily on the first
    request, so long-lived clients handed to status checks work without an
    enclosing ``async with``; call ``aclose()`` when done.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = (base_url or settings.API_BASE_URL).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.API_TIMEOUT_S
        self._headers = {"Content-Type": "application/json", "Accept": "application/json"}
        self._headers.update(headers or {})
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    async def __aenter__(self) -> "ApiClient":
        self._open()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.aclose()

    def _open(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=self._headers,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request(self, method: str, path: str, body: Any = None) -> Any:
        client = self._open()
        try:
            resp = await client.request(method, path, json=body)
        except httpx.HTTPError as exc:
            log.debug("api_request_transport_error", method=method, path=path, error=str(exc))
            raise ApiError("Service temporarily unavailable", 0) from exc

        if resp.is_error:
            raise ApiError(_error_message(resp), resp.status_code)

        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise ApiError("Malformed response from server", resp.status_code) from exc

    async def get(self, path: str) -> Any:
        return await self.request("GET", path)

    async def post(self, path: str, body: Any = None) -> Any:
        return await self.request("POST", path, body)

    async def delete(self, path: str) -> Any:
        return await self.request("DELETE", path)
