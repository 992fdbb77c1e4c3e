# ---------------------------
# crm_sync/workers/inbound.py
# ---------------------------
"""
E-commerce order intake: map a Shopify order onto Account + Party + Order.

Ids are derived from Shopify ids so a webhook delivered twice, or two topics
for the same order racing each other, land on the same documents.
"""
from __future__ import annotations

import hashlib
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from crm_sync import store as col
from crm_sync.domain.models import (
    INVOICEABLE,
    BillingStatus,
    OrderSource,
    OrderStatus,
    advance_order_status,
)
from crm_sync.errors import InvalidPayload
from crm_sync.workers.kinds import FollowUp, InboundOrderPayload, JobKind, JobOutcome, OrderRef, parse_payload

if TYPE_CHECKING:
    from crm_sync.context import WorkerContext

logger = logging.getLogger("uvicorn.error")

CONFIRMED_FINANCIAL = {"paid", "partially_paid", "authorized"}
INVOICE_DELAY_SEC = 30


class ShopifyAddress(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    address1: Optional[str] = None
    address2: Optional[str] = None
    city: Optional[str] = None
    zip: Optional[str] = None
    province: Optional[str] = None
    country: Optional[str] = None
    country_code: Optional[str] = None
    phone: Optional[str] = None


class ShopifyCustomer(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[int | str] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    tax_exempt: bool = False


class ShopifyLineItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    sku: Optional[str] = None
    variant_id: Optional[int | str] = None
    title: Optional[str] = None
    name: Optional[str] = None
    quantity: float = 0
    price: float = 0.0


class ShopifyOrder(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int | str
    name: Optional[str] = None
    email: Optional[str] = None
    currency: Optional[str] = None
    total_price: float = 0.0
    financial_status: Optional[str] = None
    cancelled_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    customer: Optional[ShopifyCustomer] = None
    shipping_address: Optional[ShopifyAddress] = None
    billing_address: Optional[ShopifyAddress] = None
    line_items: List[ShopifyLineItem] = Field(default_factory=list)


def order_doc_id(shopify_order_id: Any) -> str:
    return f"shopify-{shopify_order_id}"


def _address(a: Optional[ShopifyAddress]) -> Optional[Dict[str, Any]]:
    if a is None:
        return None
    street = " ".join(x for x in (a.address1, a.address2) if x)
    return {
        "address": street,
        "city": a.city,
        "zip": a.zip,
        "province": a.province,
        "country": a.country,
        "countryCode": a.country_code,
    }


def _target_status(o: ShopifyOrder, topic: Optional[str]) -> str:
    if o.cancelled_at:
        return OrderStatus.CANCELLED.value
    if (o.financial_status or "").lower() in CONFIRMED_FINANCIAL or topic == "orders/paid":
        return OrderStatus.CONFIRMED.value
    return OrderStatus.OPEN.value


async def _resolve_account(ctx: "WorkerContext", o: ShopifyOrder) -> Dict[str, Any]:
    customer = o.customer or ShopifyCustomer()
    email = (customer.email or o.email or "").strip().lower() or None
    customer_id = str(customer.id) if customer.id is not None else None
    if not customer_id and not email:
        raise InvalidPayload(f"Shopify order {o.id} has neither customer id nor email")

    name = " ".join(x for x in (customer.first_name, customer.last_name) if x).strip() or email or "Cliente online"
    external = {"shopifyCustomerId": customer_id} if customer_id else {}
    if customer.tax_exempt:
        external["vat"] = "EXEMPT"

    account = None
    if customer_id:
        account = await ctx.store.find_one(col.ACCOUNTS, {"external.shopifyCustomerId": customer_id})
    if account is None and email:
        account = await ctx.store.find_one(col.ACCOUNTS, {"mainContactEmail": email})

    if account is not None:
        patch: Dict[str, Any] = {"external": external} if external else {}
        if not account.get("name"):
            patch["name"] = name
        if email and not account.get("mainContactEmail"):
            patch["mainContactEmail"] = email
        if patch:
            account = await ctx.store.merge(col.ACCOUNTS, account["id"], patch, create=False)
        return account

    key = customer_id or hashlib.sha1(email.encode("utf-8")).hexdigest()[:16]  # type: ignore[union-attr]
    account_id = f"shopify-cust-{key}"
    party_id = f"party-{account_id}"
    ship = _address(o.shipping_address) or _address(o.billing_address)
    await ctx.store.create(
        col.PARTIES,
        party_id,
        {
            "legalName": name,
            "emails": [email] if email else [],
            "phones": [customer.phone] if customer.phone else [],
            "billingAddress": _address(o.billing_address) or ship,
            "shippingAddress": ship,
            "roles": ["CUSTOMER"],
            "external": external,
        },
    )
    await ctx.store.create(
        col.ACCOUNTS,
        account_id,
        {
            "name": name,
            "type": "ONLINE",
            "stage": "ACTIVA",
            "ownerId": "system_shopify",
            "mainContactEmail": email,
            "partyId": party_id,
            "external": external,
        },
    )
    logger.info("[WORKER] account %s created for Shopify customer %s", account_id, customer_id or email)
    return await ctx.store.require(col.ACCOUNTS, account_id, "account")


async def upsert_inbound_order(ctx: "WorkerContext", raw: Dict[str, Any]) -> JobOutcome:
    p = parse_payload(InboundOrderPayload, raw)
    try:
        o = ShopifyOrder.model_validate(p.order)
    except ValueError as e:
        raise InvalidPayload(f"unusable Shopify order: {e}") from e

    account = await _resolve_account(ctx, o)
    order_id = order_doc_id(o.id)
    target = _target_status(o, p.topic)

    lines = [
        {
            "sku": item.sku or f"SHOPIFY_{item.variant_id}",
            "name": item.title or item.name,
            "qty": item.quantity,
            "priceUnit": item.price,
            "uom": "uds",
        }
        for item in o.line_items
    ]
    data: Dict[str, Any] = {
        "accountId": account["id"],
        "partyId": account.get("partyId"),
        "source": OrderSource.SHOPIFY.value,
        "lines": lines,
        "totalAmount": o.total_price,
        "currency": (o.currency or ctx.settings.DEFAULT_CURRENCY).upper(),
        "external": {
            "shopifyOrderId": str(o.id),
            "shopifyOrderName": o.name,
            "shop": p.shop,
            "shopifyUpdatedAt": o.updated_at,
            "financialStatus": o.financial_status,
        },
    }

    existing = await ctx.store.get(col.ORDERS, order_id)
    created = False
    if existing is None:
        created = await ctx.store.create(
            col.ORDERS,
            order_id,
            {**data, "status": target, "billingStatus": BillingStatus.PENDING.value,
             **({"createdAt": o.created_at} if o.created_at else {})},
        )
        if not created:
            existing = await ctx.store.require(col.ORDERS, order_id, "order")

    if created:
        status = target
        order = data
    else:
        patch = dict(data)
        advanced = advance_order_status(existing.get("status"), target)
        if advanced:
            patch["status"] = advanced
        order = await ctx.store.merge(col.ORDERS, order_id, patch, create=False)
        status = order.get("status")

    follow_ups: List[FollowUp] = []
    if status in INVOICEABLE:
        corr = f"{o.id}-{o.updated_at}"
        ref = OrderRef(order_id=order_id).dump()
        follow_ups.append(FollowUp(JobKind.CREATE_SHIPMENT_FROM_ORDER, ref, correlation_id=corr))
        if not order.get("invoiceId") and order.get("billingStatus") in (None, BillingStatus.PENDING.value):
            follow_ups.append(
                FollowUp(JobKind.CREATE_INVOICE_FROM_ORDER, ref, delay_sec=INVOICE_DELAY_SEC,
                         correlation_id=corr, max_attempts=6)
            )

    logger.info("[WORKER] Shopify order %s -> %s (created=%s status=%s)", o.id, order_id, created, status)
    return JobOutcome(
        {"orderId": order_id, "accountId": account["id"], "created": created, "status": status},
        follow_ups,
    )
