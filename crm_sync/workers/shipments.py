# ---------------------------
# crm_sync/workers/shipments.py
# ---------------------------
"""
Shipment lifecycle workers: create (from an order or by hand), validate,
mark shipped. Each one is safe to run again with the same payload.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List

from crm_sync import store as col
from crm_sync.domain.models import (
    OrderSource,
    OrderStatus,
    ShipmentMode,
    ShipmentStatus,
    advance_order_status,
    advance_shipment_status,
    derive_shipment_mode,
    party_display_name,
    party_ship_to,
    shipment_at_least,
)
from crm_sync.errors import InvalidPayload, PreconditionFailed
from crm_sync.workers.common import now_iso
from crm_sync.workers.kinds import (
    FollowUp,
    JobKind,
    JobOutcome,
    ManualShipmentPayload,
    OrderRef,
    ShipmentRef,
    ShopFulfillmentPayload,
    ValidateShipmentPayload,
    parse_payload,
)

if TYPE_CHECKING:
    from crm_sync.context import WorkerContext

logger = logging.getLogger("uvicorn.error")

QTY_EPSILON = 1e-9


def shipment_id_for_order(order_id: str) -> str:
    return f"SHP-{order_id}"


async def create_shipment_from_order(ctx: "WorkerContext", raw: Dict[str, Any]) -> JobOutcome:
    p = parse_payload(OrderRef, raw)
    order = await ctx.store.require(col.ORDERS, p.order_id, "order")
    if order.get("status") in (OrderStatus.CANCELLED.value, OrderStatus.LOST.value):
        raise PreconditionFailed(f"order {p.order_id} is {order['status']}; no shipment")

    existing = await ctx.store.find_one(col.SHIPMENTS, {"orderId": p.order_id})
    if existing:
        logger.info("[WORKER] shipment %s already exists for order %s", existing["id"], p.order_id)
        return JobOutcome({"shipmentId": existing["id"], "created": False})

    account_id = order.get("accountId")
    if not account_id:
        raise PreconditionFailed(f"order {p.order_id} has no account")
    account = await ctx.store.require(col.ACCOUNTS, account_id, "account")
    party_id = order.get("partyId") or account.get("partyId")
    if not party_id:
        raise PreconditionFailed(f"order {p.order_id} has no party")
    party = await ctx.store.require(col.PARTIES, party_id, "party")

    lines = [
        {"sku": l["sku"], "name": l.get("name") or l["sku"], "qty": l.get("qty") or 0, "uom": l.get("uom") or "uds"}
        for l in order.get("lines") or []
        if l.get("sku")
    ]
    if not lines:
        raise PreconditionFailed(f"order {p.order_id} has no lines to ship")

    mode = derive_shipment_mode(order, account)
    ship_to = party_ship_to(party)
    shipment_id = shipment_id_for_order(p.order_id)
    doc = {
        "orderId": p.order_id,
        "accountId": account_id,
        "partyId": party_id,
        "mode": mode.value,
        "status": ShipmentStatus.PENDING.value,
        "lines": lines,
        "checks": {},
        "customerName": party_display_name(party),
        "city": ship_to["city"],
        "shipTo": ship_to,
    }
    created = await ctx.store.create(col.SHIPMENTS, shipment_id, doc)
    logger.info("[WORKER] shipment %s %s for order %s (mode=%s)",
                shipment_id, "created" if created else "already present", p.order_id, mode.value)
    return JobOutcome({"shipmentId": shipment_id, "created": created, "mode": mode.value})


async def create_manual_shipment(ctx: "WorkerContext", raw: Dict[str, Any]) -> JobOutcome:
    p = parse_payload(ManualShipmentPayload, raw)
    shipment_id = f"SHP-M-{p.request_id}"
    if await ctx.store.get(col.SHIPMENTS, shipment_id):
        return JobOutcome({"shipmentId": shipment_id, "created": False})

    party_id, account_id = p.party_id, p.account_id
    if not party_id and not account_id:
        raise InvalidPayload("manual shipment needs partyId or accountId")
    if account_id:
        account = await ctx.store.require(col.ACCOUNTS, account_id, "account")
        party_id = party_id or account.get("partyId")
    party = await ctx.store.require(col.PARTIES, party_id, "party") if party_id else None

    ship_to = p.ship_to.doc() if p.ship_to else party_ship_to(party)
    doc = {
        "orderId": p.order_id,
        "accountId": account_id,
        "partyId": party_id,
        "mode": p.mode.value,
        "status": ShipmentStatus.PENDING.value,
        "lines": [line.doc() for line in p.lines],
        "checks": {},
        "carrier": p.carrier,
        "notes": p.notes,
        "customerName": party_display_name(party),
        "city": ship_to.get("city") or "",
        "shipTo": ship_to,
        "requestId": p.request_id,
    }
    created = await ctx.store.create(col.SHIPMENTS, shipment_id, {k: v for k, v in doc.items() if v is not None})
    logger.info("[WORKER] manual shipment %s created=%s", shipment_id, created)
    return JobOutcome({"shipmentId": shipment_id, "created": created})


def _check_lots(lines: List[Dict[str, Any]], lot_map: Dict[str, List[Any]]) -> None:
    skus = {line.get("sku") for line in lines}
    unknown = sorted(set(lot_map) - skus)
    if unknown:
        raise PreconditionFailed(f"lotMap has SKUs not on the shipment: {', '.join(unknown)}")
    for line in lines:
        lots = lot_map.get(line.get("sku")) or []
        total = sum(lot.qty for lot in lots)
        qty = float(line.get("qty") or 0)
        if abs(total - qty) > QTY_EPSILON:
            raise PreconditionFailed(f"lots for SKU {line.get('sku')}: {total:g} != {qty:g}")


async def validate_shipment(ctx: "WorkerContext", raw: Dict[str, Any]) -> JobOutcome:
    p = parse_payload(ValidateShipmentPayload, raw)
    shipment = await ctx.store.require(col.SHIPMENTS, p.shipment_id, "shipment")
    if shipment.get("status") == ShipmentStatus.CANCELLED.value:
        raise PreconditionFailed(f"shipment {p.shipment_id} is cancelled")
    if not p.visual_ok and shipment_at_least(shipment.get("status"), ShipmentStatus.READY_TO_SHIP):
        raise PreconditionFailed(
            f"shipment {p.shipment_id} is {shipment.get('status')}; the visual check can no longer be withdrawn"
        )

    lines = shipment.get("lines") or []
    patch: Dict[str, Any] = {"checks": {"visualOk": p.visual_ok, "validatedAt": now_iso(ctx)}}

    if p.lot_map is not None:
        _check_lots(lines, p.lot_map)
        patch["lines"] = [
            {
                **line,
                "lotNumber": lots[0].lot_id if lots else line.get("lotNumber"),
                "lots": [{"lotId": lot.lot_id, "qty": lot.qty} for lot in lots],
            }
            for line in lines
            for lots in [p.lot_map.get(line.get("sku")) or []]
        ]

    if p.carrier is not None:
        patch["carrier"] = p.carrier
    if p.weight_kg is not None:
        patch["weightKg"] = p.weight_kg
    if p.dims_cm is not None:
        patch["dimsCm"] = p.dims_cm.doc()

    status = shipment.get("status")
    if p.visual_ok:
        advanced = advance_shipment_status(status, ShipmentStatus.READY_TO_SHIP)
        if advanced:
            patch["status"] = advanced
            status = advanced

    await ctx.store.merge(col.SHIPMENTS, p.shipment_id, patch, create=False)
    logger.info("[WORKER] shipment %s validated visualOk=%s status=%s", p.shipment_id, p.visual_ok, status)
    return JobOutcome({"shipmentId": p.shipment_id, "visualOk": p.visual_ok, "status": status})


async def mark_shipment_shipped(ctx: "WorkerContext", raw: Dict[str, Any]) -> JobOutcome:
    p = parse_payload(ShipmentRef, raw)
    shipment = await ctx.store.require(col.SHIPMENTS, p.shipment_id, "shipment")
    status = shipment.get("status")

    already = status in (ShipmentStatus.SHIPPED.value, ShipmentStatus.DELIVERED.value)
    if not already:
        if status == ShipmentStatus.CANCELLED.value:
            raise PreconditionFailed(f"shipment {p.shipment_id} is cancelled")
        if shipment.get("mode") == ShipmentMode.PARCEL.value and not shipment.get("trackingCode"):
            raise PreconditionFailed(f"PARCEL shipment {p.shipment_id} has no tracking code")
        if shipment.get("mode") == ShipmentMode.PALLET.value and not shipment.get("labelUrl"):
            raise PreconditionFailed(f"PALLET shipment {p.shipment_id} has no label")
        if status != ShipmentStatus.READY_TO_SHIP.value:
            raise PreconditionFailed(f"shipment {p.shipment_id} is {status}, not ready_to_ship")
        shipment = await ctx.store.merge(
            col.SHIPMENTS,
            p.shipment_id,
            {"status": ShipmentStatus.SHIPPED.value, "shippedAt": now_iso(ctx)},
            create=False,
        )

    # order propagation also runs on a re-run, in case the first run stopped here
    follow_ups: List[FollowUp] = []
    order_id = shipment.get("orderId")
    order = await ctx.store.get(col.ORDERS, order_id) if order_id else None
    if order:
        advanced = advance_order_status(order.get("status"), OrderStatus.SHIPPED)
        if advanced:
            await ctx.store.merge(col.ORDERS, order_id, {"status": advanced}, create=False)
        shopify_order_id = (order.get("external") or {}).get("shopifyOrderId")
        if (
            order.get("source") == OrderSource.SHOPIFY.value
            and shopify_order_id
            and not shipment.get("shopFulfillmentId")
        ):
            follow_ups.append(
                FollowUp(
                    JobKind.UPDATE_SHOP_FULFILLMENT,
                    ShopFulfillmentPayload(
                        shipment_id=p.shipment_id,
                        shopify_order_id=str(shopify_order_id),
                        tracking_number=shipment.get("trackingCode"),
                        tracking_url=shipment.get("trackingUrl"),
                        carrier=shipment.get("carrier"),
                    ).dump(),
                    correlation_id=f"fulfillment:{p.shipment_id}",
                )
            )

    logger.info("[WORKER] shipment %s shipped (already=%s)", p.shipment_id, already)
    return JobOutcome(
        {"shipmentId": p.shipment_id, "status": ShipmentStatus.SHIPPED.value if not already else status,
         "alreadyShipped": already},
        follow_ups,
    )
