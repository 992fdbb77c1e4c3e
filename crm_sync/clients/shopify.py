#==========================================================================
# crm_sync/clients/shopify.py
# Shopify Admin REST API: orders and fulfillments.
#==========================================================================
from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from crm_sync.clients.base import ApiClient
from crm_sync.config import ShopifyConfig
from crm_sync.errors import PreconditionFailed


class ShopifyClient(ApiClient):
    service = "shopify"

    def __init__(self, config: ShopifyConfig, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        shop = (config.shop or "").replace("https://", "").rstrip("/")
        super().__init__(
            f"https://{shop}/admin/api/{config.api_version}",
            timeout=config.timeout,
            headers={"X-Shopify-Access-Token": config.admin_token, "Content-Type": "application/json"},
            transport=transport,
        )
        self.config = config

    def _check(self) -> None:
        if not (self.config.shop and self.config.admin_token):
            raise PreconditionFailed("Shopify shop / admin token are not configured")

    async def fetch_orders(
        self, *, status: str = "any", limit: int = 50, since_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        self._check()
        params: Dict[str, Any] = {"status": status, "limit": limit}
        if since_id:
            params["since_id"] = since_id
        data = await self.get("/orders.json", params)
        return (data or {}).get("orders") or []

    async def fetch_order(self, order_id: str | int) -> Optional[Dict[str, Any]]:
        self._check()
        data = await self.get(f"/orders/{order_id}.json")
        return (data or {}).get("order")

    async def fetch_fulfillment_orders(self, order_id: str | int) -> List[Dict[str, Any]]:
        self._check()
        data = await self.get(f"/orders/{order_id}/fulfillment_orders.json")
        return (data or {}).get("fulfillment_orders") or []

    async def create_fulfillment(
        self,
        fulfillment_order: Dict[str, Any],
        *,
        tracking_number: Optional[str] = None,
        tracking_url: Optional[str] = None,
        company: Optional[str] = None,
        notify_customer: bool = True,
    ) -> Dict[str, Any]:
        self._check()
        body = {
            "fulfillment": {
                "location_id": fulfillment_order.get("assigned_location_id"),
                "tracking_info": {"number": tracking_number, "url": tracking_url, "company": company},
                "line_items_by_fulfillment_order": [{"fulfillment_order_id": fulfillment_order["id"]}],
                "notify_customer": notify_customer,
            }
        }
        data = await self.post("/fulfillments.json", body)
        return (data or {}).get("fulfillment") or {}
