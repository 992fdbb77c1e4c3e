#==========================================================================
# crm_sync/clients/sendcloud.py
# Sendcloud parcels: label creation and lookup by order reference.
#==========================================================================
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from crm_sync.clients.base import ApiClient
from crm_sync.config import SendcloudConfig
from crm_sync.errors import PreconditionFailed

logger = logging.getLogger("uvicorn.error")


def _label_url(parcel: Dict[str, Any]) -> Optional[str]:
    label = parcel.get("label") or {}
    if label.get("label_printer"):
        return label["label_printer"]
    normal = label.get("normal_printer") or []
    if normal:
        return normal[0]
    for doc in parcel.get("documents") or []:
        if doc.get("type") == "label" and doc.get("link"):
            return doc["link"]
    return None


def normalize_parcel(parcel: Dict[str, Any]) -> Dict[str, Any]:
    """Reduce a Sendcloud parcel to the fields a shipment keeps."""
    return {
        "parcelId": parcel.get("id"),
        "orderNumber": parcel.get("order_number"),
        "labelUrl": _label_url(parcel),
        "trackingCode": parcel.get("tracking_number") or None,
        "trackingUrl": parcel.get("tracking_url") or None,
        "carrier": (parcel.get("carrier") or {}).get("code"),
    }


class SendcloudClient(ApiClient):
    service = "sendcloud"

    def __init__(self, config: SendcloudConfig, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(
            config.base_url,
            timeout=config.timeout,
            headers={"Content-Type": "application/json"},
            auth=(config.api_key, config.api_secret),
            transport=transport,
        )
        self.config = config

    def _check(self) -> None:
        if not (self.config.api_key and self.config.api_secret):
            raise PreconditionFailed("Sendcloud API credentials are not configured")

    async def create_label(self, parcel_spec: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a parcel with `request_label` set. `parcel_spec` uses Sendcloud
        field names (name, address, city, postal_code, country, weight, order_number, ...).
        """
        self._check()
        parcel = {"request_label": True, **parcel_spec}
        if self.config.shipping_method and "shipment" not in parcel:
            parcel["shipment"] = {"id": self.config.shipping_method}
        data = await self.post("/parcels", {"parcel": parcel})
        created = normalize_parcel((data or {}).get("parcel") or {})
        logger.info("[SENDCLOUD] parcel %s created for %s", created["parcelId"], parcel_spec.get("order_number"))
        return created

    async def find_parcels(self, *, order_number: str) -> List[Dict[str, Any]]:
        self._check()
        data = await self.get("/parcels", {"order_number": order_number})
        return [normalize_parcel(p) for p in (data or {}).get("parcels") or []]
