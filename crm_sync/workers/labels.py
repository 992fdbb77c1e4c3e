# ---------------------------
# crm_sync/workers/labels.py
# ---------------------------
"""
Carrier labels (Sendcloud), in-house pallet labels, and the reconciliation
sweep that adopts carrier parcels created remotely but never recorded here.

Carrier parcels are created with the shipment id as order number, which is
what makes them findable again after a crash between "carrier created the
label" and "we stored it".
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from crm_sync import store as col
from crm_sync.domain.models import ShipmentMode, ShipmentStatus, party_display_name
from crm_sync.errors import ExternalServiceError, PreconditionFailed, RetryableError
from crm_sync.workers.common import now_iso
from crm_sync.workers.kinds import JobOutcome, ReconcilePayload, ShipmentRef, parse_payload

if TYPE_CHECKING:
    from crm_sync.context import WorkerContext

logger = logging.getLogger("uvicorn.error")


def label_id(shipment_id: str) -> str:
    return f"LBL-{shipment_id}"


def _parcel_spec(shipment: Dict[str, Any], party: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    ship_to = shipment.get("shipTo") or {}
    dims = shipment.get("dimsCm") or {}
    emails = (party or {}).get("emails") or []
    phones = (party or {}).get("phones") or []
    return {
        "name": ship_to.get("name") or shipment.get("customerName") or party_display_name(party),
        "address": ship_to.get("address") or "",
        "city": ship_to.get("city") or shipment.get("city") or "",
        "postal_code": ship_to.get("zip") or "",
        "country": ship_to.get("countryCode") or "ES",
        "email": emails[0] if emails else None,
        "telephone": phones[0] if phones else None,
        "weight": f"{float(shipment['weightKg']):.3f}",
        "length": dims.get("l"),
        "width": dims.get("w"),
        "height": dims.get("h"),
        "order_number": shipment["id"],
    }


async def _record_parcel(ctx: "WorkerContext", shipment: Dict[str, Any], parcel: Dict[str, Any], *,
                         adopted: bool) -> Dict[str, Any]:
    shipment_id = shipment["id"]
    patch = {
        "labelUrl": parcel["labelUrl"],
        "trackingCode": parcel.get("trackingCode"),
        "trackingUrl": parcel.get("trackingUrl"),
        "carrierParcelId": parcel.get("parcelId"),
    }
    await ctx.store.merge(col.SHIPMENTS, shipment_id, {k: v for k, v in patch.items() if v is not None},
                          create=False)
    await ctx.store.merge(
        col.PARCEL_LABELS,
        label_id(shipment_id),
        {
            "shipmentId": shipment_id,
            "orderId": shipment.get("orderId"),
            "kind": "CARRIER",
            "carrier": shipment.get("carrier") or parcel.get("carrier"),
            "parcelId": parcel.get("parcelId"),
            "labelUrl": parcel["labelUrl"],
            "trackingCode": parcel.get("trackingCode"),
            "adopted": adopted,
        },
    )
    return patch


async def _find_remote_parcel(ctx: "WorkerContext", shipment_id: str) -> Optional[Dict[str, Any]]:
    parcels = await ctx.sendcloud.find_parcels(order_number=shipment_id)
    if not parcels:
        return None
    with_label = [p for p in parcels if p.get("labelUrl")]
    if not with_label:
        # created remotely but the label is not printable yet; creating another would duplicate it
        raise RetryableError(f"carrier parcel for {shipment_id} exists without a label yet")
    return with_label[0]


async def create_carrier_label(ctx: "WorkerContext", raw: Dict[str, Any]) -> JobOutcome:
    p = parse_payload(ShipmentRef, raw)
    shipment = await ctx.store.require(col.SHIPMENTS, p.shipment_id, "shipment")

    if shipment.get("status") == ShipmentStatus.CANCELLED.value:
        raise PreconditionFailed(f"shipment {p.shipment_id} is cancelled")
    if shipment.get("mode") == ShipmentMode.PALLET.value:
        raise PreconditionFailed(f"shipment {p.shipment_id} is a PALLET shipment; it gets a pallet label")
    if shipment.get("labelUrl"):
        return JobOutcome({"labelUrl": shipment["labelUrl"], "created": False})
    if not shipment.get("deliveryNoteId"):
        raise PreconditionFailed(f"shipment {p.shipment_id}: delivery note required before the carrier label")
    missing = [f for f in ("carrier", "weightKg", "dimsCm") if not shipment.get(f)]
    if missing:
        raise PreconditionFailed(f"shipment {p.shipment_id}: missing {', '.join(missing)}")

    parcel = await _find_remote_parcel(ctx, p.shipment_id)
    adopted = parcel is not None
    if parcel is None:
        party = await ctx.store.get(col.PARTIES, shipment["partyId"]) if shipment.get("partyId") else None
        parcel = await ctx.sendcloud.create_label(_parcel_spec(shipment, party))
        if not parcel.get("labelUrl"):
            raise RetryableError(f"carrier returned no label for {p.shipment_id}")

    patch = await _record_parcel(ctx, shipment, parcel, adopted=adopted)
    logger.info("[WORKER] carrier label for %s (%s) tracking=%s",
                p.shipment_id, "adopted" if adopted else "created", patch.get("trackingCode"))
    return JobOutcome({**patch, "created": not adopted, "adopted": adopted})


async def create_pallet_label(ctx: "WorkerContext", raw: Dict[str, Any]) -> JobOutcome:
    p = parse_payload(ShipmentRef, raw)
    shipment = await ctx.store.require(col.SHIPMENTS, p.shipment_id, "shipment")

    if shipment.get("status") == ShipmentStatus.CANCELLED.value:
        raise PreconditionFailed(f"shipment {p.shipment_id} is cancelled")
    if shipment.get("mode") != ShipmentMode.PALLET.value:
        raise PreconditionFailed(f"shipment {p.shipment_id} is not a PALLET shipment")
    if shipment.get("labelUrl"):
        return JobOutcome({"labelUrl": shipment["labelUrl"], "created": False})
    if not shipment.get("deliveryNoteId"):
        raise PreconditionFailed(f"shipment {p.shipment_id}: delivery note required before the pallet label")

    party = await ctx.store.get(col.PARTIES, shipment["partyId"]) if shipment.get("partyId") else None
    url = await ctx.renderer.render_pallet_label(
        {
            "shipmentId": p.shipment_id,
            "orderId": shipment.get("orderId"),
            "deliveryNoteId": shipment["deliveryNoteId"],
            "customer": shipment.get("customerName") or party_display_name(party),
            "date": now_iso(ctx),
        }
    )
    await ctx.store.merge(col.SHIPMENTS, p.shipment_id, {"labelUrl": url}, create=False)
    await ctx.store.merge(
        col.PARCEL_LABELS,
        label_id(p.shipment_id),
        {"shipmentId": p.shipment_id, "orderId": shipment.get("orderId"), "kind": "PALLET", "labelUrl": url},
    )
    logger.info("[WORKER] pallet label for %s -> %s", p.shipment_id, url)
    return JobOutcome({"labelUrl": url, "created": True})


async def reconcile_carrier_labels(ctx: "WorkerContext", raw: Dict[str, Any]) -> JobOutcome:
    """
    PARCEL shipments with a delivery note but no label: if the carrier already
    holds a parcel for them, record it locally.
    """
    p = parse_payload(ReconcilePayload, raw)
    candidates = [
        s
        for s in await ctx.store.find(col.SHIPMENTS, {"mode": ShipmentMode.PARCEL.value})
        if s.get("deliveryNoteId")
        and not s.get("labelUrl")
        and s.get("status") not in (ShipmentStatus.CANCELLED.value, ShipmentStatus.DELIVERED.value)
    ][: p.limit]

    adopted: List[str] = []
    errors: Dict[str, str] = {}
    for shipment in candidates:
        try:
            parcel = await _find_remote_parcel(ctx, shipment["id"])
        except (ExternalServiceError, RetryableError) as e:
            logger.warning("[RECONCILE] %s: %s", shipment["id"], e)
            errors[shipment["id"]] = str(e)
            continue
        if parcel is None:
            continue
        await _record_parcel(ctx, shipment, parcel, adopted=True)
        adopted.append(shipment["id"])

    if adopted:
        logger.info("[RECONCILE] adopted carrier labels for %s", ", ".join(adopted))
    return JobOutcome({"checked": len(candidates), "adopted": adopted, "errors": errors})
