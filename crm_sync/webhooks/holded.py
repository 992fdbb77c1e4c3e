# crm_sync/webhooks/holded.py
import json
import logging

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from crm_sync.errors import StorageUnavailable
from crm_sync.models.jobs import ERROR, OK, SKIPPED
from crm_sync.webhooks.models import HoldedDocumentEvent
from crm_sync.webhooks.verification import redact, verify_signature
from crm_sync.workers.invoicing import finance_link_id
from crm_sync.workers.kinds import InvoicePayment, InvoiceStatusPayload, JobKind

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/webhooks/holded", tags=["Holded Webhooks"])

SIGNATURE_HEADER = "X-Holded-Signature"


def external_event_id(headers, event: HoldedDocumentEvent) -> str:
    # Holded resends the same document with a new status; each status is its own event
    event_id = headers.get("X-Holded-Event-Id")
    if event_id:
        return f"holded:{event_id}"
    return f"holded:{event.doc_type}:{event.id}:{event.status}:{len(event.payments)}"


def to_job_payload(event: HoldedDocumentEvent, default_currency: str) -> dict:
    return InvoiceStatusPayload(
        invoice_id=event.id,
        doc_number=event.number,
        status=event.status or "pending",
        total=event.total,
        currency=(event.currency or default_currency).upper(),
        payments=[InvoicePayment(id=p.id, amount=p.amount, date=p.date, method=p.method) for p in event.payments],
        order_id=event.order_id,
    ).dump()


@router.post("")
@router.post("/")
async def holded_webhook(request: Request) -> Response:
    ctx = request.app.state.ctx
    cfg = ctx.settings

    if cfg.WEBHOOK_DEBUG:
        logger.info("[HOLDED-HOOK][DEBUG] incoming headers=%s", redact(dict(request.headers), SIGNATURE_HEADER))

    raw = await request.body()
    # No secret configured means every delivery is rejected
    if not verify_signature(raw, request.headers.get(SIGNATURE_HEADER), cfg.HOLDED_WEBHOOK_SECRET):
        logger.warning("[HOLDED-HOOK] signature mismatch; returning 401")
        return JSONResponse(status_code=401, content={"ok": False, "reason": "invalid_signature"})

    try:
        event = HoldedDocumentEvent.model_validate(json.loads(raw))
    except (ValueError, ValidationError) as e:
        logger.warning("[HOLDED-HOOK] payload validation error: %s", e)
        return JSONResponse(status_code=422, content={"ok": False, "reason": "invalid_payload", "error": str(e)})

    external_id = external_event_id(request.headers, event)
    try:
        record = await ctx.ledger.record_if_new(external_id, source="holded", topic=event.type, payload=raw)
    except StorageUnavailable as e:
        logger.error("[HOLDED-HOOK] ledger unavailable: %s", e)
        return JSONResponse(status_code=503, content={"ok": False, "reason": "storage_unavailable"})

    if not record.is_new:
        return JSONResponse({"ok": True, "duplicate": True, "status": record.status})

    try:
        if not event.is_invoice:
            await ctx.ledger.mark_processed(record.ref, SKIPPED)
            logger.info("[HOLDED-HOOK] docType=%s ignored (%s)", event.doc_type, external_id)
            return JSONResponse({"ok": True, "skipped": True})

        job_id = await ctx.queue.enqueue(
            JobKind.APPLY_INVOICE_STATUS,
            to_job_payload(event, cfg.DEFAULT_CURRENCY),
            correlation_id=f"holded-{event.id}-{event.status}",
        )
        await ctx.ledger.mark_processed(record.ref, OK, derived_id=finance_link_id(event.id))
    except Exception as e:
        logger.exception("[HOLDED-HOOK] processing failed for %s", external_id)
        try:
            await ctx.ledger.mark_processed(record.ref, ERROR, error=f"{type(e).__name__}: {e}")
        except Exception:
            logger.exception("[HOLDED-HOOK] could not record ERROR for %s", external_id)
        return JSONResponse(status_code=500, content={"ok": False, "reason": "processing_error"})

    logger.info("[HOLDED-HOOK] invoice %s status=%s -> job=%s", event.id, event.status, job_id)
    return JSONResponse({"ok": True, "jobId": job_id, "invoiceId": event.id})
