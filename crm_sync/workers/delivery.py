# crm_sync/workers/delivery.py
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict

from crm_sync import store as col
from crm_sync.domain.models import OrderSource, party_display_name, party_ship_to
from crm_sync.errors import PreconditionFailed
from crm_sync.workers.common import now_iso, reserve_number
from crm_sync.workers.kinds import JobOutcome, ShipmentRef, parse_payload

if TYPE_CHECKING:
    from crm_sync.context import WorkerContext

logger = logging.getLogger("uvicorn.error")


async def create_delivery_note(ctx: "WorkerContext", raw: Dict[str, Any]) -> JobOutcome:
    """Delivery note for a visually checked shipment; one per shipment."""
    p = parse_payload(ShipmentRef, raw)
    shipment = await ctx.store.require(col.SHIPMENTS, p.shipment_id, "shipment")

    if shipment.get("deliveryNoteId"):
        return JobOutcome({"deliveryNoteId": shipment["deliveryNoteId"], "created": False})
    if not (shipment.get("checks") or {}).get("visualOk"):
        raise PreconditionFailed(f"shipment {p.shipment_id}: visual check required before the delivery note")

    order_id = shipment.get("orderId")
    order = await ctx.store.get(col.ORDERS, order_id) if order_id else None
    if order_id and order is None:
        raise PreconditionFailed(f"order {order_id} for shipment {p.shipment_id} not found")
    party_id = shipment.get("partyId")
    if not party_id:
        raise PreconditionFailed(f"shipment {p.shipment_id} has no party")
    party = await ctx.store.require(col.PARTIES, party_id, "party")

    series = "ONLINE" if (order or {}).get("source") == OrderSource.SHOPIFY.value else "B2B"
    ship_to = shipment.get("shipTo") or party_ship_to(party)
    sold_to = {"legalName": party_display_name(party), "vat": party.get("vat")}
    lines = [
        {
            "sku": line.get("sku"),
            "description": line.get("name") or line.get("sku"),
            "qty": line.get("qty"),
            "uom": line.get("uom") or "ud",
            "lotNumbers": [lot["lotId"] for lot in line.get("lots") or []]
            or ([line["lotNumber"]] if line.get("lotNumber") else []),
        }
        for line in shipment.get("lines") or []
    ]

    async def build(dn_id: str) -> Dict[str, Any]:
        note = {
            "id": dn_id,
            "orderId": order_id,
            "shipmentId": p.shipment_id,
            "partyId": party_id,
            "series": series,
            "date": now_iso(ctx),
            "soldTo": sold_to,
            "shipTo": ship_to,
            "lines": lines,
        }
        note["pdfUrl"] = await ctx.renderer.render_delivery_note(note)
        return note

    # a previous run may have stored the note but died before linking it
    orphan = await ctx.store.find_one(col.DELIVERY_NOTES, {"shipmentId": p.shipment_id})
    dn_id = await reserve_number(
        ctx, col.DELIVERY_NOTES, f"DN-{series}", p.shipment_id, candidate=orphan["id"] if orphan else None
    )
    note = await ctx.store.get(col.DELIVERY_NOTES, dn_id)
    created = False
    if note is None:
        note = await build(dn_id)
        created = await ctx.store.create(col.DELIVERY_NOTES, dn_id, note)
        if not created:
            note = await ctx.store.require(col.DELIVERY_NOTES, dn_id, "delivery note")

    await ctx.store.merge(col.SHIPMENTS, p.shipment_id, {"deliveryNoteId": dn_id}, create=False)
    if not created:
        logger.info("[WORKER] delivery note %s re-linked to shipment %s", dn_id, p.shipment_id)
        return JobOutcome({"deliveryNoteId": dn_id, "created": False})
    logger.info("[WORKER] delivery note %s created for shipment %s", dn_id, p.shipment_id)
    return JobOutcome({"deliveryNoteId": dn_id, "pdfUrl": note["pdfUrl"], "created": True})
