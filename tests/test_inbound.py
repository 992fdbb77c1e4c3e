import pytest

from conftest import run
from crm_sync.errors import InvalidPayload
from crm_sync.workers.inbound import upsert_inbound_order
from crm_sync.workers.kinds import JobKind


def shopify_order(**overrides):
    order = {
        "id": 450789469,
        "name": "#1001",
        "email": "Ana@Example.com",
        "currency": "eur",
        "total_price": "36.30",
        "financial_status": "paid",
        "created_at": "2026-03-01T10:00:00+01:00",
        "updated_at": "2026-03-01T10:05:00+01:00",
        "customer": {"id": 207119551, "email": "ana@example.com", "first_name": "Ana", "last_name": "García"},
        "shipping_address": {"address1": "Gran Vía 5", "city": "Madrid", "zip": "28013", "country_code": "ES"},
        "line_items": [{"sku": "SB-750", "title": "Santa Brisa 750ml", "quantity": 2, "price": "15.00"}],
    }
    order.update(overrides)
    return order


def _payload(order, topic="orders/paid"):
    return {"source": "SHOPIFY", "topic": topic, "shop": "santabrisa.myshopify.com", "order": order}


def test_paid_order_creates_account_party_order_and_chains_jobs(ctx):
    out = run(upsert_inbound_order(ctx, _payload(shopify_order())))
    assert out.result == {
        "orderId": "shopify-450789469",
        "accountId": "shopify-cust-207119551",
        "created": True,
        "status": "confirmed",
    }
    assert [f.kind for f in out.follow_ups] == [
        JobKind.CREATE_SHIPMENT_FROM_ORDER,
        JobKind.CREATE_INVOICE_FROM_ORDER,
    ]
    assert out.follow_ups[1].delay_sec == 30

    order = run(ctx.store.get("orders", "shopify-450789469"))
    assert order["source"] == "SHOPIFY"
    assert order["currency"] == "EUR"
    assert order["billingStatus"] == "PENDING"
    assert order["createdAt"] == "2026-03-01T10:00:00+01:00"
    assert order["lines"] == [{"sku": "SB-750", "name": "Santa Brisa 750ml", "qty": 2.0, "priceUnit": 15.0, "uom": "uds"}]

    account = run(ctx.store.get("accounts", "shopify-cust-207119551"))
    assert account["type"] == "ONLINE"
    assert account["mainContactEmail"] == "ana@example.com"
    party = run(ctx.store.get("parties", account["partyId"]))
    assert party["legalName"] == "Ana García"
    assert party["shippingAddress"]["city"] == "Madrid"


def test_redelivery_converges_on_the_same_documents(ctx):
    run(upsert_inbound_order(ctx, _payload(shopify_order())))
    again = run(upsert_inbound_order(ctx, _payload(shopify_order(), topic="orders/updated")))
    assert again.result["created"] is False
    assert len(run(ctx.store.find("orders"))) == 1
    assert len(run(ctx.store.find("accounts"))) == 1


def test_late_update_never_moves_status_backwards(ctx):
    run(upsert_inbound_order(ctx, _payload(shopify_order())))
    run(ctx.store.merge("orders", "shopify-450789469", {"status": "shipped"}))

    stale = shopify_order(financial_status="pending", total_price="40.00")
    out = run(upsert_inbound_order(ctx, _payload(stale, topic="orders/updated")))
    order = run(ctx.store.get("orders", "shopify-450789469"))
    assert order["status"] == "shipped"
    assert order["totalAmount"] == 40.0
    assert out.result["status"] == "shipped"


def test_unpaid_order_does_not_chain(ctx):
    out = run(upsert_inbound_order(ctx, _payload(shopify_order(financial_status="pending"), topic="orders/create")))
    assert out.result["status"] == "open"
    assert out.follow_ups == []


def test_invoiced_order_only_chains_the_shipment(ctx):
    run(upsert_inbound_order(ctx, _payload(shopify_order())))
    run(ctx.store.merge("orders", "shopify-450789469", {"invoiceId": "INV-2026-00001", "billingStatus": "INVOICED"}))
    out = run(upsert_inbound_order(ctx, _payload(shopify_order(), topic="orders/updated")))
    assert [f.kind for f in out.follow_ups] == [JobKind.CREATE_SHIPMENT_FROM_ORDER]


def test_account_matched_by_email_when_customer_id_unknown(ctx):
    run(ctx.store.create("accounts", "A-77", {"name": "Ana", "mainContactEmail": "ana@example.com", "partyId": "P-77"}))
    order = shopify_order(customer={"id": 999, "email": "ana@example.com"})
    out = run(upsert_inbound_order(ctx, _payload(order)))
    assert out.result["accountId"] == "A-77"
    assert run(ctx.store.get("accounts", "A-77"))["external"]["shopifyCustomerId"] == "999"


def test_guest_checkout_gets_stable_email_derived_account(ctx):
    order = shopify_order(customer=None, email="guest@example.com")
    first = run(upsert_inbound_order(ctx, _payload(order)))
    second = run(upsert_inbound_order(ctx, _payload(order)))
    assert first.result["accountId"].startswith("shopify-cust-")
    assert first.result["accountId"] == second.result["accountId"]


def test_order_without_customer_or_email_is_invalid(ctx):
    with pytest.raises(InvalidPayload):
        run(upsert_inbound_order(ctx, _payload(shopify_order(customer=None, email=None))))
    with pytest.raises(InvalidPayload):
        run(upsert_inbound_order(ctx, {"source": "SHOPIFY"}))
