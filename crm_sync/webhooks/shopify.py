# crm_sync/webhooks/shopify.py
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from crm_sync.errors import StorageUnavailable
from crm_sync.models.jobs import ERROR, OK, SKIPPED
from crm_sync.webhooks.verification import redact, verify_signature
from crm_sync.workers.inbound import ShopifyOrder, order_doc_id
from crm_sync.workers.kinds import InboundOrderPayload, JobKind

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/webhooks/shopify", tags=["Shopify Webhooks"])

SIGNATURE_HEADER = "X-Shopify-Hmac-SHA256"
ORDER_TOPICS = {"orders/create", "orders/paid", "orders/updated"}


def external_event_id(headers, topic: str, body: Dict[str, Any]) -> str:
    """Shopify's event id when present, else topic + object id + updated_at."""
    event_id = headers.get("X-Shopify-Event-Id") or headers.get("X-Shopify-Webhook-Id")
    if event_id:
        return f"shopify:{event_id}"
    return f"shopify:{topic}:{body.get('id')}:{body.get('updated_at')}"


@router.post("")
@router.post("/")
async def shopify_webhook(request: Request) -> Response:
    ctx = request.app.state.ctx
    cfg = ctx.settings

    if cfg.WEBHOOK_DEBUG:
        logger.info("[SHOPIFY-HOOK][DEBUG] incoming headers=%s", redact(dict(request.headers), SIGNATURE_HEADER))

    # Read body ONCE; the signature covers these exact bytes
    raw = await request.body()
    topic = request.headers.get("X-Shopify-Topic") or ""
    shop = request.headers.get("X-Shopify-Shop-Domain")

    if not verify_signature(raw, request.headers.get(SIGNATURE_HEADER), cfg.SHOPIFY_WEBHOOK_SECRET):
        logger.warning("[SHOPIFY-HOOK] signature mismatch topic=%s shop=%s; returning 401", topic, shop)
        return JSONResponse(status_code=401, content={"ok": False, "reason": "invalid_signature"})

    try:
        body = json.loads(raw)
        if not isinstance(body, dict):
            raise ValueError("body is not a JSON object")
        order: Optional[ShopifyOrder] = ShopifyOrder.model_validate(body) if topic in ORDER_TOPICS else None
    except (ValueError, ValidationError) as e:
        logger.warning("[SHOPIFY-HOOK] payload validation error: %s", e)
        return JSONResponse(status_code=422, content={"ok": False, "reason": "invalid_payload", "error": str(e)})

    external_id = external_event_id(request.headers, topic, body)
    try:
        record = await ctx.ledger.record_if_new(external_id, source="shopify", topic=topic, shop=shop, payload=raw)
    except StorageUnavailable as e:
        logger.error("[SHOPIFY-HOOK] ledger unavailable: %s", e)
        return JSONResponse(status_code=503, content={"ok": False, "reason": "storage_unavailable"})

    if not record.is_new:
        return JSONResponse({"ok": True, "duplicate": True, "status": record.status})

    try:
        if order is None:
            await ctx.ledger.mark_processed(record.ref, SKIPPED)
            logger.info("[SHOPIFY-HOOK] topic=%s skipped (%s)", topic, external_id)
            return JSONResponse({"ok": True, "skipped": True, "topic": topic})

        payload = InboundOrderPayload(source="SHOPIFY", topic=topic, shop=shop, order=body).dump()
        job_id = await ctx.queue.enqueue(
            JobKind.UPSERT_INBOUND_ORDER,
            payload,
            correlation_id=f"{order.id}-{order.updated_at}",
        )
        derived = order_doc_id(order.id)
        await ctx.ledger.mark_processed(record.ref, OK, derived_id=derived)
    except Exception as e:
        logger.exception("[SHOPIFY-HOOK] processing failed for %s", external_id)
        try:
            await ctx.ledger.mark_processed(record.ref, ERROR, error=f"{type(e).__name__}: {e}")
        except Exception:
            logger.exception("[SHOPIFY-HOOK] could not record ERROR for %s", external_id)
        return JSONResponse(status_code=500, content={"ok": False, "reason": "processing_error"})

    logger.info("[SHOPIFY-HOOK] topic=%s order=%s -> job=%s", topic, order.id, job_id)
    return JSONResponse({"ok": True, "topic": topic, "jobId": job_id, "orderId": derived})
