import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, List

import pytest

from crm_sync.config import Settings
from crm_sync.context import build_context
from crm_sync.db import init_db, make_engine
from crm_sync.models.audit_log import clear_audit_log


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 3, 2, 9, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeShopify:
    def __init__(self):
        self.fulfillment_orders: Dict[str, List[Dict[str, Any]]] = {}
        self.fulfillments: List[Dict[str, Any]] = []

    async def fetch_fulfillment_orders(self, order_id):
        return self.fulfillment_orders.get(str(order_id), [])

    async def create_fulfillment(self, fulfillment_order, *, tracking_number=None, tracking_url=None,
                                 company=None, notify_customer=True):
        fid = 9000 + len(self.fulfillments)
        self.fulfillments.append({
            "id": fid,
            "fulfillmentOrderId": fulfillment_order["id"],
            "trackingNumber": tracking_number,
            "trackingUrl": tracking_url,
            "company": company,
        })
        return {"id": fid}


class FakeHolded:
    page_size = 2

    def __init__(self):
        self.contacts: Dict[int, List[Dict[str, Any]]] = {}
        self.products: Dict[int, List[Dict[str, Any]]] = {}
        self.purchases: Dict[int, List[Dict[str, Any]]] = {}
        self.invoices: List[Dict[str, Any]] = []
        self.created_contacts: List[Dict[str, Any]] = []
        self.created_invoices: List[Dict[str, Any]] = []

    async def fetch_contacts(self, page=1):
        return self.contacts.get(page, [])

    async def fetch_products(self, page=1):
        return self.products.get(page, [])

    async def fetch_purchases(self, page=1):
        return self.purchases.get(page, [])

    async def fetch_invoices(self, page=1, *, contact_id=None):
        matching = [i for i in self.invoices if contact_id is None or i.get("contactId") == contact_id]
        start = (page - 1) * self.page_size
        return matching[start:start + self.page_size]

    async def create_contact(self, spec):
        self.created_contacts.append(spec)
        return {"id": f"hc-{len(self.created_contacts)}"}

    async def create_invoice(self, spec):
        inv = {"id": f"hi-{len(self.created_invoices) + 1}", "docNumber": spec.get("invoiceNum"), **spec}
        self.created_invoices.append(spec)
        self.invoices.append(inv)
        return {"id": inv["id"]}


class FakeSendcloud:
    def __init__(self):
        self.parcels: Dict[str, List[Dict[str, Any]]] = {}
        self.created: List[Dict[str, Any]] = []
        self.fail_with: Exception | None = None

    async def create_label(self, parcel_spec):
        if self.fail_with:
            raise self.fail_with
        self.created.append(parcel_spec)
        n = len(self.created)
        parcel = {
            "parcelId": 500 + n,
            "orderNumber": parcel_spec["order_number"],
            "labelUrl": f"https://labels.example/{500 + n}.pdf",
            "trackingCode": f"TRK{500 + n}",
            "trackingUrl": f"https://track.example/TRK{500 + n}",
            "carrier": "correos",
        }
        self.parcels.setdefault(parcel_spec["order_number"], []).append(parcel)
        return parcel

    async def find_parcels(self, *, order_number):
        return list(self.parcels.get(order_number, []))


class FakeRenderer:
    def __init__(self):
        self.delivery_notes: List[Dict[str, Any]] = []
        self.pallet_labels: List[Dict[str, Any]] = []

    async def render_delivery_note(self, note):
        self.delivery_notes.append(note)
        return f"/documents/deliveryNotes/{note['id']}.json"

    async def render_pallet_label(self, spec):
        self.pallet_labels.append(spec)
        return f"/documents/labels/pallet/{spec['shipmentId']}.json"


def run(coro):
    return asyncio.run(coro)


@pytest.fixture(autouse=True)
def _fresh_audit_log():
    clear_audit_log()
    yield


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cfg(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        DOCUMENTS_DIR=str(tmp_path / "documents"),
        JOB_MAX_ATTEMPTS=3,
        JOB_BACKOFF_JITTER=0.0,
        SHOPIFY_WEBHOOK_SECRET="shp-secret",
        HOLDED_WEBHOOK_SECRET="hld-secret",
        ADMIN_USER="admin",
        ADMIN_PASS="adminpass",
        WORKER_ENABLED=False,
        WEBHOOK_DEBUG=False,
    )


@pytest.fixture
def ctx(cfg, clock):
    engine = make_engine(cfg.DATABASE_URL)
    run(init_db(engine))
    context = build_context(
        cfg,
        engine=engine,
        clock=clock,
        shopify=FakeShopify(),
        holded=FakeHolded(),
        sendcloud=FakeSendcloud(),
        renderer=FakeRenderer(),
    )
    yield context
    run(engine.dispose())


# ---------------------------
# Seed helpers
# ---------------------------

def seed_b2b_order(ctx, order_id="ORD-1", *, qty=24, status="confirmed", source="CRM"):
    async def _seed():
        await ctx.store.create("parties", "P-1", {
            "legalName": "Bar Manolo SL",
            "vat": "B12345678",
            "emails": ["compras@barmanolo.es"],
            "shippingAddress": {"address": "Calle Mayor 1", "zip": "28013", "city": "Madrid", "country": "España"},
            "roles": ["CUSTOMER"],
        })
        await ctx.store.create("accounts", "A-1", {"name": "Bar Manolo", "type": "HORECA", "partyId": "P-1"})
        await ctx.store.create("orders", order_id, {
            "accountId": "A-1",
            "partyId": "P-1",
            "source": source,
            "status": status,
            "billingStatus": "PENDING",
            "currency": "EUR",
            "lines": [{"sku": "SB-750", "name": "Santa Brisa 750ml", "qty": qty, "priceUnit": 10.0, "uom": "uds"}],
        })
    run(_seed())
