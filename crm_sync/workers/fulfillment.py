# crm_sync/workers/fulfillment.py
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict

from crm_sync import store as col
from crm_sync.workers.kinds import JobOutcome, ShopFulfillmentPayload, parse_payload

if TYPE_CHECKING:
    from crm_sync.context import WorkerContext

logger = logging.getLogger("uvicorn.error")

OPEN_STATUSES = ("open", "in_progress")


async def update_shop_fulfillment(ctx: "WorkerContext", raw: Dict[str, Any]) -> JobOutcome:
    """Tell Shopify the order left the warehouse, with tracking."""
    p = parse_payload(ShopFulfillmentPayload, raw)
    shipment = await ctx.store.require(col.SHIPMENTS, p.shipment_id, "shipment")
    if shipment.get("shopFulfillmentId"):
        return JobOutcome({"fulfillmentId": shipment["shopFulfillmentId"], "created": False})

    fulfillment_orders = await ctx.shopify.fetch_fulfillment_orders(p.shopify_order_id)
    open_fo = next((fo for fo in fulfillment_orders if fo.get("status") in OPEN_STATUSES), None)
    if open_fo is None:
        logger.warning("[WORKER] no open fulfillment order for Shopify order %s", p.shopify_order_id)
        return JobOutcome({"message": "No open fulfillment order.", "created": False})

    fulfillment = await ctx.shopify.create_fulfillment(
        open_fo,
        tracking_number=p.tracking_number or shipment.get("trackingCode"),
        tracking_url=p.tracking_url or shipment.get("trackingUrl"),
        company=p.carrier or shipment.get("carrier"),
    )
    fulfillment_id = str(fulfillment.get("id")) if fulfillment.get("id") is not None else None
    if fulfillment_id:
        await ctx.store.merge(col.SHIPMENTS, p.shipment_id, {"shopFulfillmentId": fulfillment_id}, create=False)
    logger.info("[WORKER] Shopify fulfillment %s created for order %s", fulfillment_id, p.shopify_order_id)
    return JobOutcome({"fulfillmentId": fulfillment_id, "created": True})
