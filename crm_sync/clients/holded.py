#==========================================================================
# crm_sync/clients/holded.py
# Holded API interface (invoicing + inventory).
#==========================================================================
from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from crm_sync.clients.base import ApiClient
from crm_sync.config import HoldedConfig
from crm_sync.errors import PreconditionFailed

CONTACTS = "/invoicing/v1/contacts"
INVOICES = "/invoicing/v1/documents/invoice"
PURCHASES = "/invoicing/v1/documents/purchase"
PRODUCTS = "/inventory/v1/items"


class HoldedClient(ApiClient):
    service = "holded"

    def __init__(self, config: HoldedConfig, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(
            config.base_url,
            timeout=config.timeout,
            headers={"key": config.api_key, "Content-Type": "application/json"},
            transport=transport,
        )
        self.config = config

    @property
    def page_size(self) -> int:
        return self.config.page_size

    def _check(self) -> None:
        if not self.config.api_key:
            raise PreconditionFailed("HOLDED_API_KEY is not configured")

    async def _list(self, path: str, page: int, extra: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        self._check()
        params = {"page": page, "limit": self.page_size, **(extra or {})}
        data = await self.get(path, params)
        return data if isinstance(data, list) else []

    # ---- Pull ----

    async def fetch_contacts(self, page: int = 1) -> List[Dict[str, Any]]:
        return await self._list(CONTACTS, page)

    async def fetch_products(self, page: int = 1) -> List[Dict[str, Any]]:
        return await self._list(PRODUCTS, page)

    async def fetch_purchases(self, page: int = 1) -> List[Dict[str, Any]]:
        return await self._list(PURCHASES, page)

    async def fetch_invoices(self, page: int = 1, *, contact_id: Optional[str] = None) -> List[Dict[str, Any]]:
        extra = {"contactId": contact_id} if contact_id else None
        return await self._list(INVOICES, page, extra)

    # ---- Push ----

    async def create_contact(self, spec: Dict[str, Any]) -> Dict[str, Any]:
        self._check()
        return await self.post(CONTACTS, spec) or {}

    async def create_invoice(self, spec: Dict[str, Any]) -> Dict[str, Any]:
        self._check()
        return await self.post(INVOICES, spec) or {}
