# ---------------------------
# crm_sync/workers/invoicing.py
# ---------------------------
"""
Invoicing against Holded.

Each order reserves one invoice number before anything is written, and only
the run holding the push lease on that invoice talks to Holded. The push
first looks for a Holded invoice carrying our number, so a crash between
"Holded created it" and "we stored the id" does not invoice twice.
"""
from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from crm_sync import store as col
from crm_sync.domain.models import (
    INVOICEABLE,
    BillingStatus,
    OrderStatus,
    advance_billing_status,
    advance_order_status,
    order_totals,
)
from crm_sync.errors import PreconditionFailed, RetryableError
from crm_sync.workers.common import now_iso, reserve_number
from crm_sync.workers.kinds import InvoiceStatusPayload, JobOutcome, OrderRef, parse_payload

if TYPE_CHECKING:
    from crm_sync.context import WorkerContext

logger = logging.getLogger("uvicorn.error")

INVOICE_LOOKUP_PAGES = 5
PUSH_LEASE_SECONDS = 120


def finance_link_id(holded_invoice_id: str) -> str:
    return f"holded-{holded_invoice_id}"


async def _ensure_holded_contact(ctx: "WorkerContext", account_id: str, account: Dict[str, Any]) -> str:
    external = account.get("external") or {}
    contact_id = external.get("holdedContactId")
    if contact_id:
        return contact_id
    party = await ctx.store.get(col.PARTIES, account["partyId"]) if account.get("partyId") else None
    spec = {
        "name": account.get("name") or (party or {}).get("legalName") or account_id,
        "code": external.get("vat") or (party or {}).get("vat"),
        "email": account.get("mainContactEmail"),
        "type": "client",
        "isperson": account.get("type") in ("ONLINE", "PRIVADA"),
    }
    contact = await ctx.holded.create_contact({k: v for k, v in spec.items() if v is not None})
    contact_id = contact.get("id")
    if not contact_id:
        raise RetryableError(f"Holded returned no contact id for account {account_id}")
    await ctx.store.merge(col.ACCOUNTS, account_id, {"external": {"holdedContactId": contact_id}}, create=False)
    if account.get("partyId"):
        await ctx.store.merge(col.PARTIES, account["partyId"], {"external": {"holdedContactId": contact_id}},
                              create=False)
    logger.info("[WORKER] Holded contact %s created for account %s", contact_id, account_id)
    return contact_id


async def _find_holded_invoice(ctx: "WorkerContext", contact_id: str, number: str) -> Optional[Dict[str, Any]]:
    for page in range(1, INVOICE_LOOKUP_PAGES + 1):
        invoices = await ctx.holded.fetch_invoices(page, contact_id=contact_id)
        for inv in invoices:
            if number in (inv.get("docNumber"), inv.get("invoiceNum"), inv.get("notes")):
                return inv
        if len(invoices) < ctx.holded.page_size:
            break
    return None


async def _take_push_lease(
    ctx: "WorkerContext", invoice: Dict[str, Any]
) -> Tuple[Optional[Dict[str, Any]], Dict[str, Any]]:
    """Only the run holding the lease talks to Holded for this invoice."""
    current = invoice.get("pushLease")
    if current and current.get("until", "") > now_iso(ctx):
        raise RetryableError(f"invoice {invoice['id']} is being pushed by another run")
    lease = {
        "token": secrets.token_hex(8),
        "until": (ctx.clock() + timedelta(seconds=PUSH_LEASE_SECONDS)).isoformat() + "Z",
    }
    won = await ctx.store.update_if(col.INVOICES, invoice["id"], {"pushLease": current}, {"pushLease": lease})
    if won is None:
        raise RetryableError(f"invoice {invoice['id']} is being pushed by another run")
    if (won.get("external") or {}).get("holdedInvoiceId"):
        # pushed by a run that finished between our read and the lease
        await ctx.store.update_if(col.INVOICES, invoice["id"], {"pushLease": lease}, {"pushLease": None})
        return None, won
    return lease, won


async def _push_to_holded(
    ctx: "WorkerContext",
    invoice: Dict[str, Any],
    account_id: str,
    account: Dict[str, Any],
    currency: str,
    lines: List[Dict[str, Any]],
) -> str:
    lease, invoice = await _take_push_lease(ctx, invoice)
    invoice_id = invoice["id"]
    if lease is None:
        return invoice["external"]["holdedInvoiceId"]

    try:
        contact_id = await _ensure_holded_contact(ctx, account_id, account)
        remote = await _find_holded_invoice(ctx, contact_id, invoice_id)
        if remote is None:
            remote = await ctx.holded.create_invoice(
                {
                    "contactId": contact_id,
                    "invoiceNum": invoice_id,
                    "notes": invoice_id,
                    "currency": currency.lower(),
                    "date": int(ctx.clock().timestamp()),
                    "items": [
                        {
                            "name": line.get("name") or line.get("sku"),
                            "sku": line.get("sku"),
                            "units": line.get("qty"),
                            "subtotal": line.get("priceUnit") or 0,
                            "tax": line.get("taxRate") if line.get("taxRate") is not None
                            else ctx.settings.DEFAULT_TAX_RATE,
                        }
                        for line in lines
                    ],
                }
            )
        holded_id = remote.get("id")
        if not holded_id:
            raise RetryableError(f"Holded returned no invoice id for {invoice_id}")
    except Exception:
        await ctx.store.update_if(col.INVOICES, invoice_id, {"pushLease": lease}, {"pushLease": None})
        raise

    await ctx.store.merge(
        col.INVOICES,
        invoice_id,
        {"status": "issued", "external": {"holdedInvoiceId": holded_id}, "pushLease": None},
        create=False,
    )
    return holded_id


async def create_invoice_from_order(ctx: "WorkerContext", raw: Dict[str, Any]) -> JobOutcome:
    p = parse_payload(OrderRef, raw)
    order = await ctx.store.require(col.ORDERS, p.order_id, "order")

    if order.get("invoiceId") or order.get("billingStatus") in (BillingStatus.INVOICED.value, BillingStatus.PAID.value):
        return JobOutcome({"orderId": p.order_id, "invoiceId": order.get("invoiceId"), "created": False})
    if order.get("status") not in INVOICEABLE:
        raise PreconditionFailed(f"order {p.order_id} is {order.get('status')}; cannot invoice")
    lines = order.get("lines") or []
    if not lines:
        raise PreconditionFailed(f"order {p.order_id} has no lines")
    if not order.get("accountId"):
        raise PreconditionFailed(f"order {p.order_id} has no account")
    account = await ctx.store.require(col.ACCOUNTS, order["accountId"], "account")

    currency = (order.get("currency") or ctx.settings.DEFAULT_CURRENCY).upper()
    totals = order_totals(lines, ctx.settings.DEFAULT_TAX_RATE)

    legacy = await ctx.store.find_one(col.INVOICES, {"orderId": p.order_id})
    invoice_id = await reserve_number(
        ctx, col.INVOICES, "INV", p.order_id, candidate=legacy["id"] if legacy else None
    )
    await ctx.store.create(
        col.INVOICES,
        invoice_id,
        {
            "orderId": p.order_id,
            "accountId": order["accountId"],
            "partyId": order.get("partyId") or account.get("partyId"),
            "date": now_iso(ctx),
            "currency": currency,
            "lines": lines,
            "status": "draft",
            **totals,
        },
    )
    invoice = await ctx.store.require(col.INVOICES, invoice_id, "invoice")

    holded_id = (invoice.get("external") or {}).get("holdedInvoiceId")
    created = not holded_id
    if not holded_id:
        holded_id = await _push_to_holded(ctx, invoice, order["accountId"], account, currency, lines)

    await ctx.store.merge(
        col.FINANCE_LINKS,
        finance_link_id(holded_id),
        {
            "docType": "SALES_INVOICE",
            "externalId": holded_id,
            "invoiceId": invoice_id,
            "docNumber": invoice_id,
            "status": "pending",
            "currency": currency,
            "issueDate": invoice.get("date") or now_iso(ctx),
            "partyId": invoice.get("partyId"),
            "costObject": {"kind": "ORDER", "id": p.order_id},
            **totals,
        },
    )

    order_patch: Dict[str, Any] = {
        "invoiceId": invoice_id,
        "external": {"holdedInvoiceId": holded_id},
    }
    billing = advance_billing_status(order.get("billingStatus"), BillingStatus.INVOICED)
    if billing:
        order_patch["billingStatus"] = billing
    status = advance_order_status(order.get("status"), OrderStatus.INVOICED)
    if status:
        order_patch["status"] = status
    await ctx.store.merge(col.ORDERS, p.order_id, order_patch, create=False)

    for shipment in await ctx.store.find(col.SHIPMENTS, {"orderId": p.order_id}):
        if shipment.get("invoiceId") != invoice_id:
            await ctx.store.merge(col.SHIPMENTS, shipment["id"], {"invoiceId": invoice_id}, create=False)

    logger.info("[WORKER] order %s invoiced as %s (holded=%s)", p.order_id, invoice_id, holded_id)
    return JobOutcome(
        {"orderId": p.order_id, "invoiceId": invoice_id, "holdedInvoiceId": holded_id, "created": created}
    )


def _finance_status(status: str) -> str:
    s = (status or "").lower()
    if s in ("paid", "pagado", "pagada"):
        return "paid"
    if "cancel" in s or s == "void":
        return "cancelled"
    return "pending"


async def apply_invoice_status(ctx: "WorkerContext", raw: Dict[str, Any]) -> JobOutcome:
    """Invoice status notification from Holded: finance link, payments, and the order when paid."""
    p = parse_payload(InvoiceStatusPayload, raw)
    link_id = finance_link_id(p.invoice_id)
    existing = await ctx.store.get(col.FINANCE_LINKS, link_id) or {}
    order_id = p.order_id or ((existing.get("costObject") or {}).get("id"))
    status = _finance_status(p.status)

    link: Dict[str, Any] = {
        "docType": "SALES_INVOICE",
        "externalId": p.invoice_id,
        "status": status,
        "grossAmount": p.total,
        "currency": p.currency.upper(),
    }
    if p.doc_number:
        link["docNumber"] = p.doc_number
    if order_id:
        link["costObject"] = {"kind": "ORDER", "id": order_id}
    if status == "paid":
        link["paidAt"] = now_iso(ctx)
    await ctx.store.merge(col.FINANCE_LINKS, link_id, link)

    for pay in p.payments:
        await ctx.store.merge(
            col.PAYMENT_LINKS,
            f"holded-{pay.id}",
            {
                "financeLinkId": link_id,
                "externalId": pay.id,
                "amount": pay.amount,
                "date": pay.date or now_iso(ctx),
                "method": pay.method or "transfer",
            },
        )

    local = await ctx.store.find_one(col.INVOICES, {"external.holdedInvoiceId": p.invoice_id})
    if local and status == "paid" and local.get("status") != "paid":
        await ctx.store.merge(col.INVOICES, local["id"], {"status": "paid"}, create=False)

    order_updated = False
    if order_id and status == "paid":
        order = await ctx.store.require(col.ORDERS, order_id, "order")
        patch: Dict[str, Any] = {}
        advanced = advance_order_status(order.get("status"), OrderStatus.PAID)
        if advanced:
            patch["status"] = advanced
        billing = advance_billing_status(order.get("billingStatus"), BillingStatus.PAID)
        if billing:
            patch["billingStatus"] = billing
        if patch:
            await ctx.store.merge(col.ORDERS, order_id, patch, create=False)
            order_updated = True

    logger.info("[WORKER] invoice %s status=%s order=%s updated=%s", p.invoice_id, status, order_id, order_updated)
    return JobOutcome({
        "financeLinkId": link_id,
        "status": status,
        "payments": len(p.payments),
        "orderId": order_id,
        "orderUpdated": order_updated,
    })
