# crm_sync/domain/models.py
"""
Domain shapes shared by the workers.

Documents live in the store as plain camelCase dicts; these models are the
typed view used when a worker needs to validate or build one.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    def doc(self) -> Dict[str, Any]:
        """Store representation (camelCase, no nulls)."""
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------------------------
# Status enums
# ---------------------------

class OrderStatus(str, Enum):
    OPEN = "open"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    INVOICED = "invoiced"
    PAID = "paid"
    CANCELLED = "cancelled"
    LOST = "lost"


class BillingStatus(str, Enum):
    PENDING = "PENDING"
    INVOICED = "INVOICED"
    PAID = "PAID"


class ShipmentStatus(str, Enum):
    PENDING = "pending"
    PICKING = "picking"
    READY_TO_SHIP = "ready_to_ship"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    EXCEPTION = "exception"
    CANCELLED = "cancelled"


class ShipmentMode(str, Enum):
    PARCEL = "PARCEL"
    PALLET = "PALLET"


class OrderSource(str, Enum):
    MANUAL = "MANUAL"
    SHOPIFY = "SHOPIFY"
    HOLDED = "HOLDED"
    CRM = "CRM"


ORDER_RANK = {
    OrderStatus.OPEN.value: 0,
    OrderStatus.CONFIRMED.value: 1,
    OrderStatus.SHIPPED.value: 2,
    OrderStatus.INVOICED.value: 3,
    OrderStatus.PAID.value: 4,
}
ORDER_TERMINAL = {OrderStatus.CANCELLED.value, OrderStatus.LOST.value}

BILLING_RANK = {
    BillingStatus.PENDING.value: 0,
    BillingStatus.INVOICED.value: 1,
    BillingStatus.PAID.value: 2,
}

SHIPMENT_RANK = {
    ShipmentStatus.PENDING.value: 0,
    ShipmentStatus.PICKING.value: 1,
    ShipmentStatus.READY_TO_SHIP.value: 2,
    ShipmentStatus.SHIPPED.value: 3,
    ShipmentStatus.DELIVERED.value: 4,
}
SHIPMENT_TERMINAL = {ShipmentStatus.DELIVERED.value, ShipmentStatus.CANCELLED.value}
SHIPMENT_OFF_PATH = {ShipmentStatus.EXCEPTION.value, ShipmentStatus.CANCELLED.value}

# Order statuses an invoice may be issued from.
INVOICEABLE = {
    OrderStatus.CONFIRMED.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.INVOICED.value,
    OrderStatus.PAID.value,
}


def _val(s: Any) -> Optional[str]:
    if s is None:
        return None
    return s.value if isinstance(s, Enum) else str(s)


def advance_order_status(current: Any, target: Any) -> Optional[str]:
    """
    New order status if moving `current` → `target` is allowed, else None.

    Forward moves only; cancellation is reachable from any live state;
    cancelled/lost never change again.
    """
    cur, tgt = _val(current) or OrderStatus.OPEN.value, _val(target)
    if tgt is None or cur == tgt or cur in ORDER_TERMINAL:
        return None
    if tgt in ORDER_TERMINAL:
        return tgt
    if ORDER_RANK.get(tgt, -1) > ORDER_RANK.get(cur, -1):
        return tgt
    return None


def advance_billing_status(current: Any, target: Any) -> Optional[str]:
    cur, tgt = _val(current) or BillingStatus.PENDING.value, _val(target)
    if tgt is None or cur == tgt:
        return None
    return tgt if BILLING_RANK.get(tgt, -1) > BILLING_RANK.get(cur, -1) else None


def advance_shipment_status(current: Any, target: Any) -> Optional[str]:
    """
    pending → picking → ready_to_ship → shipped → delivered, with exception /
    cancelled reachable from any non-terminal state. A shipment in exception
    may resume on the main path.
    """
    cur, tgt = _val(current) or ShipmentStatus.PENDING.value, _val(target)
    if tgt is None or cur == tgt or cur in SHIPMENT_TERMINAL:
        return None
    if tgt in SHIPMENT_OFF_PATH:
        return tgt
    if cur == ShipmentStatus.EXCEPTION.value:
        return tgt if tgt in SHIPMENT_RANK else None
    if SHIPMENT_RANK.get(tgt, -1) > SHIPMENT_RANK.get(cur, -1):
        return tgt
    return None


def shipment_at_least(current: Any, target: ShipmentStatus) -> bool:
    return SHIPMENT_RANK.get(_val(current) or "", -1) >= SHIPMENT_RANK[target.value]


# ---------------------------
# Document shapes
# ---------------------------

class Address(CamelModel):
    address: Optional[str] = None
    city: Optional[str] = None
    zip: Optional[str] = None
    province: Optional[str] = None
    country: Optional[str] = None
    country_code: Optional[str] = None


class Dims(CamelModel):
    l: float = Field(gt=0)
    w: float = Field(gt=0)
    h: float = Field(gt=0)


class ShipmentLine(CamelModel):
    sku: str
    name: Optional[str] = None
    qty: float
    uom: str = "uds"
    lot_number: Optional[str] = None


class LotAssignment(CamelModel):
    lot_id: str
    qty: float


def party_display_name(party: Optional[Dict[str, Any]], fallback: str = "Cliente") -> str:
    if not party:
        return fallback
    return party.get("tradeName") or party.get("legalName") or party.get("name") or fallback


def party_ship_to(party: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    party = party or {}
    ship = party.get("shippingAddress") or {}
    bill = party.get("billingAddress") or {}
    return {
        "name": party_display_name(party),
        "address": ship.get("address") or bill.get("address") or "",
        "zip": ship.get("zip") or bill.get("zip") or "",
        "city": ship.get("city") or bill.get("city") or "",
        "country": ship.get("country") or bill.get("country") or "España",
    }


PARCEL_UNIT_THRESHOLD = 12
PARCEL_ACCOUNT_TYPES = {"ONLINE", "PRIVADA"}


def derive_shipment_mode(order: Dict[str, Any], account: Optional[Dict[str, Any]]) -> ShipmentMode:
    """Online accounts and small orders go by parcel; everything else on a pallet."""
    if (account or {}).get("type") in PARCEL_ACCOUNT_TYPES:
        return ShipmentMode.PARCEL
    if order.get("source") == OrderSource.SHOPIFY.value:
        return ShipmentMode.PARCEL
    units = sum(float(line.get("qty") or 0) for line in order.get("lines") or [])
    return ShipmentMode.PARCEL if units < PARCEL_UNIT_THRESHOLD else ShipmentMode.PALLET


def order_totals(lines: List[Dict[str, Any]], default_tax_rate: float) -> Dict[str, float]:
    net = 0.0
    tax = 0.0
    for line in lines:
        amount = float(line.get("qty") or 0) * float(line.get("priceUnit") or 0)
        rate = line.get("taxRate")
        net += amount
        tax += amount * float(default_tax_rate if rate is None else rate) / 100.0
    return {
        "netAmount": round(net, 2),
        "taxAmount": round(tax, 2),
        "grossAmount": round(net + tax, 2),
    }
