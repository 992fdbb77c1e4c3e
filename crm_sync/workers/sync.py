# ---------------------------
# crm_sync/workers/sync.py
# ---------------------------
"""
Holded pull sync: contacts → parties, purchases → expenses, items → products.

One page per job. A full page means there may be more, so the job chains
the next page; a short page ends the run.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from crm_sync import store as col
from crm_sync.workers.kinds import FollowUp, JobKind, JobOutcome, SyncPagePayload, parse_payload

if TYPE_CHECKING:
    from crm_sync.context import WorkerContext

logger = logging.getLogger("uvicorn.error")


def _roles_for(contact_type: Optional[str]) -> List[str]:
    t = (contact_type or "").lower()
    if t == "client":
        return ["CUSTOMER"]
    if t == "supplier":
        return ["SUPPLIER"]
    return ["OTHER"]


def _union(*lists: Any) -> List[Any]:
    out: List[Any] = []
    for items in lists:
        for x in items or []:
            if x and x not in out:
                out.append(x)
    return out


def _holded_address(a: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not a:
        return None
    return {
        "address": a.get("address"),
        "city": a.get("city"),
        "zip": a.get("postalCode"),
        "province": a.get("province"),
        "country": a.get("country"),
        "countryCode": a.get("countryCode"),
    }


def _purchase_status(s: Optional[str]) -> str:
    t = (s or "").lower()
    if "paid" in t or "pag" in t:
        return "PAID"
    if "cancel" in t:
        return "CANCELLED"
    if "draft" in t or "borrador" in t:
        return "DRAFT"
    return "APPROVED"


def _next_page(ctx: "WorkerContext", kind: JobKind, p: SyncPagePayload, count: int) -> Optional[FollowUp]:
    if count < ctx.holded.page_size:
        return None
    nxt = SyncPagePayload(page=p.page + 1, dry_run=p.dry_run)
    return FollowUp(kind, nxt.dump(), correlation_id=f"{kind.value}:page:{nxt.page}")


async def _party_for_contact(ctx: "WorkerContext", contact_id: str) -> Dict[str, Any]:
    found = await ctx.store.find_one(col.PARTIES, {"external.holdedContactId": contact_id})
    return found or {"id": f"holded-{contact_id}"}


async def sync_contacts(ctx: "WorkerContext", raw: Dict[str, Any]) -> JobOutcome:
    p = parse_payload(SyncPagePayload, raw)
    contacts = await ctx.holded.fetch_contacts(p.page)

    written = 0
    for c in contacts:
        if not c.get("id"):
            continue
        current = await _party_for_contact(ctx, str(c["id"]))
        ship = (c.get("shippingAddresses") or [None])[0]
        patch = {
            "legalName": c.get("name") or c.get("tradeName") or current.get("legalName") or "Contacto Holded",
            "tradeName": c.get("tradeName") or current.get("tradeName"),
            "vat": c.get("vatnumber") or c.get("code") or current.get("vat"),
            "emails": _union(current.get("emails"), [c.get("email")]),
            "phones": _union(current.get("phones"), [c.get("mobile"), c.get("phone")]),
            "billingAddress": _holded_address(c.get("billAddress")) or current.get("billingAddress"),
            "shippingAddress": _holded_address(ship) or current.get("shippingAddress"),
            "roles": _union(current.get("roles"), _roles_for(c.get("type"))),
            "external": {"holdedContactId": str(c["id"])},
        }
        if not p.dry_run:
            await ctx.store.merge(col.PARTIES, current["id"], {k: v for k, v in patch.items() if v is not None})
            written += 1

    follow = _next_page(ctx, JobKind.SYNC_CONTACTS, p, len(contacts))
    logger.info("[SYNC] contacts page=%d count=%d written=%d dry_run=%s", p.page, len(contacts), written, p.dry_run)
    return JobOutcome(
        {"page": p.page, "count": len(contacts), "written": written, "nextPage": p.page + 1 if follow else None},
        [follow] if follow else [],
    )


async def sync_purchases(ctx: "WorkerContext", raw: Dict[str, Any]) -> JobOutcome:
    p = parse_payload(SyncPagePayload, raw)
    purchases = await ctx.holded.fetch_purchases(p.page)

    written = 0
    for doc in purchases:
        if not doc.get("id"):
            continue
        supplier_id = None
        if doc.get("contactId") and not p.dry_run:
            party = await _party_for_contact(ctx, str(doc["contactId"]))
            supplier = await ctx.store.merge(
                col.PARTIES,
                party["id"],
                {
                    "legalName": party.get("legalName") or doc.get("contactName") or doc.get("code") or "Proveedor",
                    "vat": party.get("vat") or doc.get("code"),
                    "emails": _union(party.get("emails"), [doc.get("email")]),
                    "roles": _union(party.get("roles"), ["SUPPLIER"]),
                    "external": {"holdedContactId": str(doc["contactId"])},
                },
            )
            supplier_id = supplier["id"]

        expense = {
            "partyId": supplier_id,
            "date": doc.get("date"),
            "dueDate": doc.get("dueDate"),
            "status": _purchase_status(doc.get("status")),
            "amountTotal": float(doc.get("total") or 0),
            "amountTax": float(doc.get("totalTax") or doc.get("tax") or 0),
            "currency": (doc.get("currency") or ctx.settings.DEFAULT_CURRENCY).upper(),
            "lines": [
                {
                    "description": l.get("description") or l.get("name") or l.get("itemName") or "",
                    "qty": float(l.get("quantity") or l.get("units") or 1),
                    "unitPrice": float(l.get("price") or 0),
                    "taxRate": l.get("taxPercent"),
                }
                for l in doc.get("lines") or doc.get("products") or []
            ],
            "external": {"holdedPurchaseId": str(doc["id"])},
        }
        if not p.dry_run:
            await ctx.store.merge(col.EXPENSES, f"holded-{doc['id']}", expense)
            written += 1

    follow = _next_page(ctx, JobKind.SYNC_PURCHASES, p, len(purchases))
    logger.info("[SYNC] purchases page=%d count=%d written=%d", p.page, len(purchases), written)
    return JobOutcome(
        {"page": p.page, "count": len(purchases), "written": written, "nextPage": p.page + 1 if follow else None},
        [follow] if follow else [],
    )


async def sync_products(ctx: "WorkerContext", raw: Dict[str, Any]) -> JobOutcome:
    p = parse_payload(SyncPagePayload, raw)
    items = await ctx.holded.fetch_products(p.page)

    written = 0
    for it in items:
        sku = it.get("sku") or it.get("reference") or it.get("id")
        if not sku:
            continue
        product = {
            "sku": sku,
            "name": it.get("name") or sku,
            "barcode": it.get("barcode"),
            "priceList": [{"name": "base", "currency": ctx.settings.DEFAULT_CURRENCY,
                           "price": float(it.get("price") or 0)}],
            "defaultTaxRate": it.get("tax") if it.get("tax") is not None else ctx.settings.DEFAULT_TAX_RATE,
            "external": {"holdedItemId": it.get("id")},
        }
        if not p.dry_run:
            await ctx.store.merge(col.PRODUCTS, str(sku), product)
            written += 1

    follow = _next_page(ctx, JobKind.SYNC_PRODUCTS, p, len(items))
    logger.info("[SYNC] products page=%d count=%d written=%d", p.page, len(items), written)
    return JobOutcome(
        {"page": p.page, "count": len(items), "written": written, "nextPage": p.page + 1 if follow else None},
        [follow] if follow else [],
    )
