import json

import pytest
from fastapi.testclient import TestClient

from conftest import run, seed_b2b_order
from crm_sync.main_app import create_app
from crm_sync.webhooks.verification import b64_hmac_sha256

ADMIN = ("admin", "adminpass")


@pytest.fixture
def client(ctx):
    with TestClient(create_app(ctx, start_worker=False)) as c:
        yield c


def _signed(secret, body):
    raw = json.dumps(body).encode("utf-8")
    return raw, b64_hmac_sha256(secret, raw)


def _post_shopify(client, body, *, topic="orders/paid", secret="shp-secret", event_id="evt-1"):
    raw, sig = _signed(secret, body)
    headers = {
        "Content-Type": "application/json",
        "X-Shopify-Topic": topic,
        "X-Shopify-Shop-Domain": "santabrisa.myshopify.com",
        "X-Shopify-Hmac-SHA256": sig,
    }
    if event_id:
        headers["X-Shopify-Event-Id"] = event_id
    return client.post("/webhooks/shopify", content=raw, headers=headers)


def _post_holded(client, body, *, secret="hld-secret"):
    raw, sig = _signed(secret, body)
    return client.post(
        "/webhooks/holded",
        content=raw,
        headers={"Content-Type": "application/json", "X-Holded-Signature": sig},
    )


ORDER = {
    "id": 820982911946154508,
    "email": "ana@example.com",
    "total_price": "36.30",
    "financial_status": "paid",
    "updated_at": "2026-03-01T10:05:00+01:00",
    "customer": {"id": 115310627314723954, "email": "ana@example.com"},
    "line_items": [{"sku": "SB-750", "title": "Santa Brisa 750ml", "quantity": 2, "price": "15.00"}],
}


def test_root(client):
    assert client.get("/").json() == {"status": "running", "service": "CRM Sync Middleware"}


# ---------------------------
# Shopify
# ---------------------------

def test_signed_order_is_accepted_and_queued(client, ctx):
    res = _post_shopify(client, ORDER)
    assert res.status_code == 200
    data = res.json()
    assert data["ok"] is True
    assert data["orderId"] == "shopify-820982911946154508"

    job = run(ctx.queue.get_job(data["jobId"]))
    assert job["kind"] == "UPSERT_INBOUND_ORDER"
    assert job["payload"]["order"]["id"] == ORDER["id"]
    assert job["correlationId"] == "820982911946154508-2026-03-01T10:05:00+01:00"

    (event,) = run(ctx.ledger.list_events())
    assert event["status"] == "OK"
    assert event["derivedId"] == "shopify-820982911946154508"


def test_redelivery_is_acknowledged_once(client, ctx):
    first = _post_shopify(client, ORDER)
    second = _post_shopify(client, ORDER)
    assert first.status_code == second.status_code == 200
    assert second.json() == {"ok": True, "duplicate": True, "status": "OK"}
    assert len(run(ctx.queue.list_jobs(kind="UPSERT_INBOUND_ORDER"))) == 1


def test_event_id_falls_back_to_order_and_updated_at(client, ctx):
    _post_shopify(client, ORDER, event_id=None)
    again = _post_shopify(client, ORDER, event_id=None)
    assert again.json()["duplicate"] is True
    newer = _post_shopify(client, {**ORDER, "updated_at": "2026-03-01T11:00:00+01:00"}, event_id=None)
    assert newer.json()["ok"] is True
    assert "jobId" in newer.json()


def test_bad_signature_is_rejected_without_side_effects(client, ctx):
    res = _post_shopify(client, ORDER, secret="wrong")
    assert res.status_code == 401
    assert res.json() == {"ok": False, "reason": "invalid_signature"}
    assert run(ctx.ledger.list_events()) == []
    assert run(ctx.queue.list_jobs()) == []


def test_signature_covers_raw_bytes(client):
    _, sig = _signed("shp-secret", ORDER)
    reformatted = json.dumps(ORDER, indent=2).encode("utf-8")
    res = client.post(
        "/webhooks/shopify",
        content=reformatted,
        headers={"X-Shopify-Topic": "orders/paid", "X-Shopify-Hmac-SHA256": sig},
    )
    assert res.status_code == 401


def test_invalid_order_payload_is_422(client, ctx):
    res = _post_shopify(client, {"email": "no-id@example.com"})
    assert res.status_code == 422
    assert res.json()["reason"] == "invalid_payload"
    assert run(ctx.queue.list_jobs()) == []


def test_other_topics_are_recorded_and_skipped(client, ctx):
    res = _post_shopify(client, {"id": 1}, topic="customers/update", event_id="evt-9")
    assert res.json() == {"ok": True, "skipped": True, "topic": "customers/update"}
    assert run(ctx.ledger.list_events())[0]["status"] == "SKIPPED"
    assert run(ctx.queue.list_jobs()) == []


# ---------------------------
# Holded
# ---------------------------

def test_holded_invoice_paid_is_queued(client, ctx):
    body = {
        "type": "document.updated",
        "docType": "invoice",
        "id": "hi-42",
        "docNumber": "F-2026-042",
        "status": "paid",
        "total": 290.4,
        "payments": [{"id": "PAY-1", "amount": 290.4, "date": "2026-03-05"}],
    }
    res = _post_holded(client, body)
    assert res.status_code == 200
    assert res.json()["invoiceId"] == "hi-42"

    job = run(ctx.queue.get_job(res.json()["jobId"]))
    assert job["kind"] == "APPLY_INVOICE_STATUS"
    assert job["payload"]["invoiceId"] == "hi-42"
    assert job["payload"]["docNumber"] == "F-2026-042"
    assert job["payload"]["currency"] == "EUR"
    assert job["correlationId"] == "holded-hi-42-paid"
    assert run(ctx.ledger.list_events())[0]["derivedId"] == "holded-hi-42"

    # a later payment is a different event
    body["payments"].append({"id": "PAY-2", "amount": 1})
    assert "jobId" in _post_holded(client, body).json()


def test_holded_numeric_payment_ids_are_accepted(client, ctx):
    body = {"docType": "invoice", "id": 4242, "status": "paid", "payments": [{"id": 987654, "amount": 10}]}
    res = _post_holded(client, body)
    assert res.status_code == 200
    job = run(ctx.queue.get_job(res.json()["jobId"]))
    assert job["payload"]["invoiceId"] == "4242"
    assert job["payload"]["payments"][0]["id"] == "987654"


def test_holded_non_invoice_documents_are_skipped(client, ctx):
    res = _post_holded(client, {"docType": "estimate", "id": "e-1", "status": "accepted"})
    assert res.json() == {"ok": True, "skipped": True}
    assert run(ctx.queue.list_jobs()) == []


def test_holded_rejects_unsigned_delivery(client):
    res = client.post("/webhooks/holded", json={"docType": "invoice", "id": "x"})
    assert res.status_code == 401


# ---------------------------
# Admin API
# ---------------------------

def test_admin_api_requires_credentials(client):
    assert client.get("/api/jobs").status_code == 401
    assert client.get("/api/jobs", auth=("admin", "nope")).status_code == 401
    assert client.get("/api/jobs", auth=ADMIN).status_code == 200


def test_enqueue_validates_kind_and_payload(client):
    bad_kind = client.post("/api/jobs", json={"kind": "SEND_FAX"}, auth=ADMIN)
    assert bad_kind.status_code == 422

    bad_payload = client.post("/api/jobs", json={"kind": "VALIDATE_SHIPMENT", "payload": {}}, auth=ADMIN)
    assert bad_payload.status_code == 422

    ok = client.post(
        "/api/jobs",
        json={"kind": "SYNC_CONTACTS", "payload": {"page": 2}, "correlationId": "manual-sync"},
        auth=ADMIN,
    )
    assert ok.status_code == 200
    job = client.get(f"/api/jobs/{ok.json()['jobId']}", auth=ADMIN).json()
    assert job["payload"] == {"v": 1, "page": 2, "dryRun": False}
    assert job["correlationId"] == "manual-sync"


def test_unknown_job_is_404(client):
    assert client.get("/api/jobs/nope", auth=ADMIN).status_code == 404


def test_order_shipment_enqueued_then_dispatched(client, ctx):
    seed_b2b_order(ctx)
    res = client.post("/api/orders/ORD-1/shipment", auth=ADMIN)
    assert res.json()["enqueued"] == "CREATE_SHIPMENT_FROM_ORDER"

    tick = client.post("/api/jobs/dispatch", auth=ADMIN).json()
    assert tick["claimed"] == 1
    assert tick["DONE"] == 1
    assert run(ctx.store.get("shipments", "SHP-ORD-1")) is not None

    runs = client.get("/api/jobs/runs", auth=ADMIN).json()["runs"]
    assert runs[0]["status"] == "DONE"
    actions = [e["action"] for e in client.get("/api/jobs/audit", auth=ADMIN).json()["entries"]]
    assert "Job Enqueued: CREATE_SHIPMENT_FROM_ORDER" in actions


def test_label_route_picks_pallet_or_carrier(client, ctx):
    assert client.post("/api/shipments/SHP-X/label", auth=ADMIN).status_code == 404

    run(ctx.store.create("shipments", "SHP-P", {"mode": "PALLET"}))
    run(ctx.store.create("shipments", "SHP-C", {"mode": "PARCEL"}))
    assert client.post("/api/shipments/SHP-P/label", auth=ADMIN).json()["enqueued"] == "CREATE_PALLET_LABEL"
    assert client.post("/api/shipments/SHP-C/label", auth=ADMIN).json()["enqueued"] == "CREATE_CARRIER_LABEL"


def test_dead_letter_replay(client, ctx):
    # an order that does not exist fails terminally
    client.post("/api/orders/missing/invoice", auth=ADMIN)
    client.post("/api/jobs/dispatch", auth=ADMIN)

    (dl,) = client.get("/api/dead-letters", auth=ADMIN).json()["deadLetters"]
    assert dl["kind"] == "CREATE_INVOICE_FROM_ORDER"

    res = client.post(f"/api/dead-letters/{dl['id']}/replay", auth=ADMIN)
    assert res.status_code == 200
    replayed = client.get(f"/api/jobs/{res.json()['jobId']}", auth=ADMIN).json()
    assert replayed["status"] == "QUEUED"
    assert replayed["attempts"] == 0

    assert client.post("/api/dead-letters/999/replay", auth=ADMIN).status_code == 404


def test_sync_and_reconcile_enqueuers(client):
    res = client.post("/api/sync/products", json={"dryRun": True}, auth=ADMIN)
    assert res.json()["enqueued"] == "SYNC_PRODUCTS"
    assert client.post("/api/sync/widgets", auth=ADMIN).status_code == 404
    assert client.post("/api/reconcile/labels", auth=ADMIN).json()["enqueued"] == "RECONCILE_CARRIER_LABELS"


def test_webhook_events_listing(client):
    _post_shopify(client, ORDER)
    events = client.get("/api/webhooks/events?status=OK", auth=ADMIN).json()["events"]
    assert [e["externalId"] for e in events] == ["shopify:evt-1"]
