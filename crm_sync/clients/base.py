# crm_sync/clients/base.py
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from crm_sync.errors import ExternalServiceError

logger = logging.getLogger("uvicorn.error")


class ApiClient:
    """
    Thin JSON-over-HTTP helper shared by the platform clients.

    Any non-2xx answer becomes an ExternalServiceError carrying the status
    code; network failures carry status_code=None.
    """

    service = "http"

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
        auth: Optional[httpx.Auth | tuple[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._headers = {"Accept": "application/json", **(headers or {})}
        self._auth = auth
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            headers=self._headers,
            auth=self._auth,
            transport=self._transport,
        )

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
    ) -> Any:
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        try:
            async with self._client() as client:
                resp = await client.request(method, url, params=params, json=json)
        except httpx.HTTPError as e:
            logger.warning("[%s] %s %s transport error: %s", self.service.upper(), method, path, e)
            raise ExternalServiceError(self.service, None, f"{method} {path} failed: {e}") from e

        if resp.status_code >= 400:
            body = resp.text[:1000]
            logger.error("[%s] %s %s -> %s %s", self.service.upper(), method, path, resp.status_code, body)
            raise ExternalServiceError(
                self.service, resp.status_code, f"{method} {path} -> {resp.status_code}", body=body
            )

        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise ExternalServiceError(
                self.service, resp.status_code, f"{method} {path}: invalid JSON", body=resp.text[:1000]
            ) from e

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, payload: Any) -> Any:
        return await self.request("POST", path, json=payload)
