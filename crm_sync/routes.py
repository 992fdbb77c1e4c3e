#=======================================================================================
# crm_sync/routes.py
# Admin API: queue inspection, dead letters, webhook ledger and job enqueuers.
#
# Everything here is HTTP Basic protected and mounted at /api/*.
# Enqueuers only report that the job was queued; the dispatcher runs it later.
#=======================================================================================

import logging
import secrets
from typing import Any, Dict, Optional, Type

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from crm_sync.errors import NotFound
from crm_sync.models.audit_log import add_audit_entry, get_audit_log
from crm_sync.domain.models import ShipmentMode
from crm_sync.store import SHIPMENTS
from crm_sync.workers.dispatcher import Dispatcher
from crm_sync.workers.kinds import (
    PAYLOADS,
    JobKind,
    JobPayload,
    ManualShipmentPayload,
    OrderRef,
    ReconcilePayload,
    ShipmentRef,
    SyncPagePayload,
    ValidateShipmentPayload,
)

logger = logging.getLogger("uvicorn.error")

# ---------------------------
# HTTP Basic
# ---------------------------
security = HTTPBasic()


def verify_admin(request: Request, credentials: HTTPBasicCredentials = Depends(security)) -> str:
    cfg = request.app.state.ctx.settings
    ok_user = secrets.compare_digest(credentials.username or "", cfg.ADMIN_USER or "")
    ok_pass = secrets.compare_digest(credentials.password or "", cfg.ADMIN_PASS or "")
    if not (ok_user and ok_pass):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


router = APIRouter(prefix="/api", tags=["Admin API"], dependencies=[Depends(verify_admin)])

SYNC_TARGETS = {
    "contacts": JobKind.SYNC_CONTACTS,
    "purchases": JobKind.SYNC_PURCHASES,
    "products": JobKind.SYNC_PRODUCTS,
}


class EnqueueRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    kind: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: Optional[str] = None
    max_attempts: Optional[int] = Field(default=None, ge=1, le=50)
    delay_sec: float = Field(default=0, ge=0)


# ---------------------------
# Helpers
# ---------------------------
def _ctx(request: Request):
    return request.app.state.ctx


def _kind(value: str) -> JobKind:
    try:
        return JobKind(value)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown job kind: {value}")


def _payload(model: Type[JobPayload], data: Dict[str, Any]) -> Dict[str, Any]:
    """Validate before enqueueing so operators get a 422 instead of a dead letter."""
    try:
        return model.model_validate(data).dump()
    except ValidationError as e:
        detail = e.errors(include_url=False, include_context=False, include_input=False)
        raise HTTPException(status_code=422, detail=detail)


async def _enqueue(request: Request, kind: JobKind, payload: Dict[str, Any], **kw) -> Dict[str, Any]:
    job_id = await _ctx(request).queue.enqueue(kind, payload, **kw)
    add_audit_entry(f"Job Enqueued: {kind.value}", "admin", f"payload={payload}", job_id=job_id)
    return {"ok": True, "enqueued": kind.value, "jobId": job_id}


# ---------------------------
# Jobs
# ---------------------------
@router.post("/jobs")
async def enqueue_job(request: Request, body: EnqueueRequest):
    kind = _kind(body.kind)
    payload = _payload(PAYLOADS[kind], body.payload)
    return await _enqueue(
        request,
        kind,
        payload,
        correlation_id=body.correlation_id,
        max_attempts=body.max_attempts,
        delay_sec=body.delay_sec,
    )


@router.get("/jobs")
async def list_jobs(
    request: Request,
    status_: Optional[str] = Query(None, alias="status"),
    kind: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
):
    queue = _ctx(request).queue
    return {
        "jobs": await queue.list_jobs(status=status_, kind=kind, limit=limit),
        "counts": await queue.counts(),
    }


@router.get("/jobs/runs")
async def recent_runs(request: Request, limit: int = Query(20, ge=1, le=200)):
    return {"runs": await _ctx(request).queue.recent_runs(limit)}


@router.post("/jobs/dispatch")
async def dispatch_now(request: Request, limit: Optional[int] = Query(None, ge=1, le=500)):
    """Run one dispatcher tick inline (cron / manual trigger)."""
    dispatcher = getattr(request.app.state, "dispatcher", None) or Dispatcher(_ctx(request))
    summary = await dispatcher.run_once(limit)
    return {"ok": True, **summary}


@router.get("/jobs/audit")
async def audit_log(limit: int = Query(100, ge=1, le=1000)):
    return {"entries": get_audit_log(limit)}


@router.get("/jobs/{job_id}")
async def get_job(request: Request, job_id: str):
    job = await _ctx(request).queue.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return job


# ---------------------------
# Dead letters
# ---------------------------
@router.get("/dead-letters")
async def list_dead_letters(request: Request, limit: int = Query(50, ge=1, le=500)):
    return {"deadLetters": await _ctx(request).queue.list_dead_letters(limit)}


@router.post("/dead-letters/{dead_letter_id}/replay")
async def replay_dead_letter(request: Request, dead_letter_id: int):
    try:
        job_id = await _ctx(request).queue.replay_dead_letter(dead_letter_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    add_audit_entry("Dead Letter Replayed", "admin", f"deadLetter={dead_letter_id}", job_id=job_id)
    return {"ok": True, "jobId": job_id}


# ---------------------------
# Webhook ledger
# ---------------------------
@router.get("/webhooks/events")
async def webhook_events(
    request: Request,
    status_: Optional[str] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
):
    return {"events": await _ctx(request).ledger.list_events(status=status_, limit=limit)}


# ---------------------------
# Enqueuers
# ---------------------------
@router.post("/orders/{order_id}/shipment")
async def enqueue_shipment(request: Request, order_id: str):
    return await _enqueue(request, JobKind.CREATE_SHIPMENT_FROM_ORDER, _payload(OrderRef, {"orderId": order_id}))


@router.post("/orders/{order_id}/invoice")
async def enqueue_invoice(request: Request, order_id: str):
    return await _enqueue(request, JobKind.CREATE_INVOICE_FROM_ORDER, _payload(OrderRef, {"orderId": order_id}))


@router.post("/shipments/manual")
async def enqueue_manual_shipment(request: Request, body: Dict[str, Any] = Body(...)):
    payload = _payload(ManualShipmentPayload, body)
    return await _enqueue(request, JobKind.CREATE_MANUAL_SHIPMENT, payload,
                          correlation_id=f"manual:{payload['requestId']}")


@router.post("/shipments/{shipment_id}/validate")
async def enqueue_validate(request: Request, shipment_id: str, body: Optional[Dict[str, Any]] = Body(None)):
    payload = _payload(ValidateShipmentPayload, {**(body or {}), "shipmentId": shipment_id})
    return await _enqueue(request, JobKind.VALIDATE_SHIPMENT, payload)


@router.post("/shipments/{shipment_id}/delivery-note")
async def enqueue_delivery_note(request: Request, shipment_id: str):
    return await _enqueue(request, JobKind.CREATE_DELIVERY_NOTE, _payload(ShipmentRef, {"shipmentId": shipment_id}))


@router.post("/shipments/{shipment_id}/label")
async def enqueue_label(request: Request, shipment_id: str):
    shipment = await _ctx(request).store.get(SHIPMENTS, shipment_id)
    if shipment is None:
        raise HTTPException(status_code=404, detail=f"Shipment {shipment_id} not found")
    kind = (
        JobKind.CREATE_PALLET_LABEL
        if shipment.get("mode") == ShipmentMode.PALLET.value
        else JobKind.CREATE_CARRIER_LABEL
    )
    return await _enqueue(request, kind, _payload(ShipmentRef, {"shipmentId": shipment_id}))


@router.post("/shipments/{shipment_id}/ship")
async def enqueue_ship(request: Request, shipment_id: str):
    return await _enqueue(request, JobKind.MARK_SHIPMENT_SHIPPED, _payload(ShipmentRef, {"shipmentId": shipment_id}))


@router.post("/sync/{target}")
async def enqueue_sync(request: Request, target: str, body: Optional[Dict[str, Any]] = Body(None)):
    kind = SYNC_TARGETS.get(target.lower())
    if kind is None:
        raise HTTPException(status_code=404, detail=f"Unknown sync target: {target}")
    payload = _payload(SyncPagePayload, body or {})
    return await _enqueue(request, kind, payload, correlation_id=f"{kind.value}:page:{payload['page']}")


@router.post("/reconcile/labels")
async def enqueue_reconcile(request: Request, body: Optional[Dict[str, Any]] = Body(None)):
    return await _enqueue(request, JobKind.RECONCILE_CARRIER_LABELS, _payload(ReconcilePayload, body or {}))
