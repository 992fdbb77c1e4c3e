# ---------------------------
# crm_sync/workers/dispatcher.py
# ---------------------------
"""
Claims due jobs, runs the worker registered for each kind, and turns the
outcome into a queue transition. Workers never touch the queue themselves:
they return a JobOutcome (result + follow-ups) or raise, and this module
decides DONE / retry / FAILED.
"""
from __future__ import annotations

import asyncio
import logging
import os
import socket
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Mapping, Optional

from crm_sync.errors import ExternalServiceError, PipelineError, TerminalError, is_retryable
from crm_sync.models.audit_log import add_audit_entry
from crm_sync.models.jobs import DONE, FAILED, QUEUED, Job
from crm_sync.workers import delivery, fulfillment, inbound, invoicing, labels, shipments, sync
from crm_sync.workers.kinds import FollowUp, JobKind, JobOutcome, ReconcilePayload, allowed_follow_ups

if TYPE_CHECKING:
    from crm_sync.context import WorkerContext

logger = logging.getLogger("uvicorn.error")

Worker = Callable[["WorkerContext", Dict[str, Any]], Awaitable[Any]]

WORKERS: Dict[JobKind, Worker] = {
    JobKind.UPSERT_INBOUND_ORDER: inbound.upsert_inbound_order,
    JobKind.CREATE_SHIPMENT_FROM_ORDER: shipments.create_shipment_from_order,
    JobKind.CREATE_MANUAL_SHIPMENT: shipments.create_manual_shipment,
    JobKind.VALIDATE_SHIPMENT: shipments.validate_shipment,
    JobKind.CREATE_DELIVERY_NOTE: delivery.create_delivery_note,
    JobKind.CREATE_CARRIER_LABEL: labels.create_carrier_label,
    JobKind.CREATE_PALLET_LABEL: labels.create_pallet_label,
    JobKind.MARK_SHIPMENT_SHIPPED: shipments.mark_shipment_shipped,
    JobKind.UPDATE_SHOP_FULFILLMENT: fulfillment.update_shop_fulfillment,
    JobKind.CREATE_INVOICE_FROM_ORDER: invoicing.create_invoice_from_order,
    JobKind.APPLY_INVOICE_STATUS: invoicing.apply_invoice_status,
    JobKind.SYNC_CONTACTS: sync.sync_contacts,
    JobKind.SYNC_PURCHASES: sync.sync_purchases,
    JobKind.SYNC_PRODUCTS: sync.sync_products,
    JobKind.RECONCILE_CARRIER_LABELS: labels.reconcile_carrier_labels,
}

_missing = set(JobKind) - set(WORKERS)
if _missing:
    raise RuntimeError(f"no worker registered for: {sorted(k.value for k in _missing)}")


class UndeclaredFollowUp(TerminalError):
    """A worker asked to enqueue a kind its entry in CHAINS does not allow."""


def _default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class Dispatcher:
    def __init__(
        self,
        ctx: "WorkerContext",
        workers: Optional[Mapping[Any, Worker]] = None,
        *,
        worker_id: Optional[str] = None,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
    ):
        self.ctx = ctx
        self.queue = ctx.queue
        self.workers: Dict[str, Worker] = {
            (k.value if isinstance(k, JobKind) else str(k)): fn for k, fn in (workers or WORKERS).items()
        }
        self.worker_id = worker_id or _default_worker_id()
        self.batch_size = batch_size or ctx.settings.DISPATCH_BATCH_SIZE
        self.concurrency = max(1, concurrency or ctx.settings.DISPATCH_CONCURRENCY)

    async def run_once(self, limit: Optional[int] = None) -> Dict[str, Any]:
        """One tick: sweep stale claims, claim due jobs, run them."""
        reclaimed = await self.queue.reclaim_stale()
        jobs = await self.queue.claim_due_jobs(limit or self.batch_size, self.worker_id)
        summary: Dict[str, Any] = {"claimed": len(jobs), "reclaimed": reclaimed, DONE: 0, QUEUED: 0, FAILED: 0}
        if not jobs:
            return summary

        sem = asyncio.Semaphore(self.concurrency)

        async def _guarded(job: Job) -> Optional[str]:
            async with sem:
                return await self.execute(job)

        for status in await asyncio.gather(*(_guarded(j) for j in jobs)):
            if status in summary:
                summary[status] += 1
        logger.info("[DISPATCH] tick claimed=%d done=%d retry=%d failed=%d",
                    len(jobs), summary[DONE], summary[QUEUED], summary[FAILED])
        return summary

    async def execute(self, job: Job) -> Optional[str]:
        """Run one claimed job and record its outcome. Returns the job's new status."""
        logger.info("[WORKER] job=%s kind=%s attempt=%d/%d corr=%s",
                    job.id, job.kind, job.attempts + 1, job.max_attempts, job.correlation_id)
        add_audit_entry(f"Job Received: {job.kind}", "system", f"attempt={job.attempts + 1}", job_id=job.id)

        worker = self.workers.get(job.kind)
        if worker is None:
            msg = f"Unknown job kind: {job.kind}"
            logger.error("[WORKER] %s (job=%s)", msg, job.id)
            add_audit_entry("Job Failed", "system", msg, job_id=job.id)
            return await self.queue.fail(job.id, msg, claim_token=job.claim_token)

        started = time.monotonic()
        try:
            outcome = JobOutcome.coerce(await worker(self.ctx, job.payload or {}))
            # follow-ups go in before completion; a crash in between re-runs this job
            await self._enqueue_follow_ups(job, outcome.follow_ups)
        except Exception as e:
            return await self._on_error(job, e)

        if await self.queue.complete(job.id, outcome.result, claim_token=job.claim_token):
            logger.info("[WORKER] job=%s kind=%s done in %.2fs", job.id, job.kind, time.monotonic() - started)
            add_audit_entry(f"Job Done: {job.kind}", "system", f"result={outcome.result}", job_id=job.id)
            return DONE
        return None

    async def _enqueue_follow_ups(self, job: Job, follow_ups: List[FollowUp]) -> None:
        if not follow_ups:
            return
        try:
            allowed = allowed_follow_ups(JobKind(job.kind))
        except ValueError:
            allowed = frozenset()
        undeclared = sorted({getattr(f.kind, "value", str(f.kind)) for f in follow_ups if f.kind not in allowed})
        if undeclared:
            raise UndeclaredFollowUp(f"{job.kind} may not enqueue {', '.join(undeclared)}")
        for f in follow_ups:
            new_id = await self.queue.enqueue(
                f.kind,
                f.payload,
                correlation_id=f.correlation_id or job.correlation_id,
                max_attempts=f.max_attempts,
                delay_sec=f.delay_sec,
            )
            logger.info("[WORKER] job=%s chained %s -> job=%s", job.id, getattr(f.kind, "value", f.kind), new_id)

    async def _on_error(self, job: Job, exc: Exception) -> Optional[str]:
        msg = f"{type(exc).__name__}: {exc}"
        if is_retryable(exc):
            if isinstance(exc, (PipelineError, ExternalServiceError)):
                logger.warning("[WORKER] job=%s kind=%s retryable failure: %s", job.id, job.kind, msg)
            else:
                logger.exception("[WORKER] job=%s kind=%s failed", job.id, job.kind)
            status = await self.queue.retry_or_fail(job.id, msg, claim_token=job.claim_token)
        else:
            logger.error("[WORKER] job=%s kind=%s terminal failure: %s", job.id, job.kind, msg)
            status = await self.queue.fail(job.id, msg, claim_token=job.claim_token)

        action = "Job Retry" if status == QUEUED else "Job Failed"
        add_audit_entry(action, "system", f"kind={job.kind} error={msg}", job_id=job.id)
        if status == FAILED:
            add_audit_entry("Job Dead-lettered", "system", f"kind={job.kind}", job_id=job.id)
        return status


async def worker_loop(dispatcher: Dispatcher, stop_event: asyncio.Event) -> None:
    """Background polling loop; also schedules the carrier-label reconciliation."""
    cfg = dispatcher.ctx.settings
    poll = max(cfg.DISPATCH_POLL_SEC, 0.05)
    reconcile_every = cfg.RECONCILE_INTERVAL_SEC
    last_reconcile = time.monotonic()
    logger.info("[WORKER] started id=%s poll=%.1fs", dispatcher.worker_id, poll)

    while not stop_event.is_set():
        busy = False
        try:
            if reconcile_every > 0 and time.monotonic() - last_reconcile >= reconcile_every:
                last_reconcile = time.monotonic()
                await dispatcher.queue.enqueue(
                    JobKind.RECONCILE_CARRIER_LABELS,
                    ReconcilePayload().dump(),
                    correlation_id=f"reconcile:{int(time.time())}",
                    max_attempts=1,
                )
            summary = await dispatcher.run_once()
            busy = summary["claimed"] > 0
        except Exception as e:
            logger.exception("[WORKER] dispatch tick failed: %s", e)

        if busy:
            continue
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=poll)
        except asyncio.TimeoutError:
            pass

    logger.info("[WORKER] stopped")
