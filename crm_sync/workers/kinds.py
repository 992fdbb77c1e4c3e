# crm_sync/workers/kinds.py
"""
Job kinds, their payload shapes, and the allowed follow-up edges between them.

CHAINS is the one place that says which job may enqueue which; the
dispatcher refuses any follow-up not listed here.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from crm_sync.domain.models import Address, Dims, LotAssignment, ShipmentLine, ShipmentMode
from crm_sync.errors import InvalidPayload

PAYLOAD_VERSION = 1


class JobKind(str, Enum):
    UPSERT_INBOUND_ORDER = "UPSERT_INBOUND_ORDER"
    CREATE_SHIPMENT_FROM_ORDER = "CREATE_SHIPMENT_FROM_ORDER"
    CREATE_MANUAL_SHIPMENT = "CREATE_MANUAL_SHIPMENT"
    VALIDATE_SHIPMENT = "VALIDATE_SHIPMENT"
    CREATE_DELIVERY_NOTE = "CREATE_DELIVERY_NOTE"
    CREATE_CARRIER_LABEL = "CREATE_CARRIER_LABEL"
    CREATE_PALLET_LABEL = "CREATE_PALLET_LABEL"
    MARK_SHIPMENT_SHIPPED = "MARK_SHIPMENT_SHIPPED"
    UPDATE_SHOP_FULFILLMENT = "UPDATE_SHOP_FULFILLMENT"
    CREATE_INVOICE_FROM_ORDER = "CREATE_INVOICE_FROM_ORDER"
    APPLY_INVOICE_STATUS = "APPLY_INVOICE_STATUS"
    SYNC_CONTACTS = "SYNC_CONTACTS"
    SYNC_PURCHASES = "SYNC_PURCHASES"
    SYNC_PRODUCTS = "SYNC_PRODUCTS"
    RECONCILE_CARRIER_LABELS = "RECONCILE_CARRIER_LABELS"


CHAINS: Dict[JobKind, FrozenSet[JobKind]] = {
    JobKind.UPSERT_INBOUND_ORDER: frozenset(
        {JobKind.CREATE_SHIPMENT_FROM_ORDER, JobKind.CREATE_INVOICE_FROM_ORDER}
    ),
    JobKind.MARK_SHIPMENT_SHIPPED: frozenset({JobKind.UPDATE_SHOP_FULFILLMENT}),
    # pagination
    JobKind.SYNC_CONTACTS: frozenset({JobKind.SYNC_CONTACTS}),
    JobKind.SYNC_PURCHASES: frozenset({JobKind.SYNC_PURCHASES}),
    JobKind.SYNC_PRODUCTS: frozenset({JobKind.SYNC_PRODUCTS}),
}


def allowed_follow_ups(kind: JobKind) -> FrozenSet[JobKind]:
    return CHAINS.get(kind, frozenset())


# ---------------------------
# Payloads
# ---------------------------

class JobPayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    v: int = PAYLOAD_VERSION

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class OrderRef(JobPayload):
    order_id: str = Field(min_length=1)


class ShipmentRef(JobPayload):
    shipment_id: str = Field(min_length=1)


class InboundOrderPayload(JobPayload):
    source: str = "SHOPIFY"
    topic: Optional[str] = None
    shop: Optional[str] = None
    order: Dict[str, Any]


class ManualShipmentPayload(JobPayload):
    request_id: str = Field(min_length=1)
    order_id: Optional[str] = None
    account_id: Optional[str] = None
    party_id: Optional[str] = None
    mode: ShipmentMode
    lines: List[ShipmentLine] = Field(min_length=1)
    ship_to: Optional[Address] = None
    carrier: Optional[str] = None
    notes: Optional[str] = None


class ValidateShipmentPayload(JobPayload):
    shipment_id: str = Field(min_length=1)
    visual_ok: bool
    carrier: Optional[str] = None
    weight_kg: Optional[float] = Field(default=None, gt=0)
    dims_cm: Optional[Dims] = None
    # keyed by SKU; dict keys are not camelised
    lot_map: Optional[Dict[str, List[LotAssignment]]] = None


class ShopFulfillmentPayload(JobPayload):
    shipment_id: str = Field(min_length=1)
    shopify_order_id: str = Field(min_length=1)
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    carrier: Optional[str] = None


class InvoicePayment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    amount: float = 0.0
    date: Optional[str] = None
    method: Optional[str] = None


class InvoiceStatusPayload(JobPayload):
    invoice_id: str = Field(min_length=1)
    doc_number: Optional[str] = None
    status: str
    total: float = 0.0
    currency: str = "EUR"
    payments: List[InvoicePayment] = Field(default_factory=list)
    order_id: Optional[str] = None


class SyncPagePayload(JobPayload):
    page: int = Field(default=1, ge=1)
    dry_run: bool = False


class ReconcilePayload(JobPayload):
    limit: int = Field(default=50, ge=1, le=500)


PAYLOADS: Dict[JobKind, Type[JobPayload]] = {
    JobKind.UPSERT_INBOUND_ORDER: InboundOrderPayload,
    JobKind.CREATE_SHIPMENT_FROM_ORDER: OrderRef,
    JobKind.CREATE_MANUAL_SHIPMENT: ManualShipmentPayload,
    JobKind.VALIDATE_SHIPMENT: ValidateShipmentPayload,
    JobKind.CREATE_DELIVERY_NOTE: ShipmentRef,
    JobKind.CREATE_CARRIER_LABEL: ShipmentRef,
    JobKind.CREATE_PALLET_LABEL: ShipmentRef,
    JobKind.MARK_SHIPMENT_SHIPPED: ShipmentRef,
    JobKind.UPDATE_SHOP_FULFILLMENT: ShopFulfillmentPayload,
    JobKind.CREATE_INVOICE_FROM_ORDER: OrderRef,
    JobKind.APPLY_INVOICE_STATUS: InvoiceStatusPayload,
    JobKind.SYNC_CONTACTS: SyncPagePayload,
    JobKind.SYNC_PURCHASES: SyncPagePayload,
    JobKind.SYNC_PRODUCTS: SyncPagePayload,
    JobKind.RECONCILE_CARRIER_LABELS: ReconcilePayload,
}

P = TypeVar("P", bound=JobPayload)


def parse_payload(model: Type[P], raw: Any) -> P:
    """Validate a stored payload; malformed input is terminal."""
    try:
        return model.model_validate(raw if raw is not None else {})
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()
        )
        raise InvalidPayload(f"{model.__name__}: {problems}") from e


# ---------------------------
# Worker results
# ---------------------------

@dataclass
class FollowUp:
    kind: JobKind
    payload: Dict[str, Any]
    delay_sec: float = 0
    correlation_id: Optional[str] = None
    max_attempts: Optional[int] = None


@dataclass
class JobOutcome:
    result: Optional[Dict[str, Any]] = None
    follow_ups: List[FollowUp] = field(default_factory=list)

    @classmethod
    def coerce(cls, value: Any) -> "JobOutcome":
        if isinstance(value, JobOutcome):
            return value
        if value is None:
            return cls()
        if isinstance(value, dict):
            return cls(result=value)
        return cls(result={"value": value})
