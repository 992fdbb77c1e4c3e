import json

import httpx
import pytest

from conftest import run
from crm_sync.clients.holded import HoldedClient
from crm_sync.clients.renderer import DocumentRenderer
from crm_sync.clients.sendcloud import SendcloudClient, normalize_parcel
from crm_sync.clients.shopify import ShopifyClient
from crm_sync.config import HoldedConfig, SendcloudConfig, ShopifyConfig
from crm_sync.errors import ExternalServiceError, PreconditionFailed, is_retryable


def recording(handler):
    seen = []

    def _handle(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    return httpx.MockTransport(_handle), seen


# ---------------------------
# Holded
# ---------------------------

def test_holded_sends_key_and_paginates():
    transport, seen = recording(lambda r: httpx.Response(200, json=[{"id": "c1"}]))
    client = HoldedClient(HoldedConfig(api_key="k-123", page_size=50), transport=transport)

    assert run(client.fetch_contacts(3)) == [{"id": "c1"}]
    (req,) = seen
    assert req.headers["key"] == "k-123"
    assert req.url.path == "/api/invoicing/v1/contacts"
    assert req.url.params["page"] == "3"
    assert req.url.params["limit"] == "50"


def test_holded_invoice_lookup_filters_by_contact():
    transport, seen = recording(lambda r: httpx.Response(200, json=[]))
    client = HoldedClient(HoldedConfig(api_key="k"), transport=transport)
    run(client.fetch_invoices(1, contact_id="hc-9"))
    assert seen[0].url.params["contactId"] == "hc-9"


def test_holded_non_list_answer_is_empty_page():
    transport, _ = recording(lambda r: httpx.Response(200, json={"status": 0}))
    client = HoldedClient(HoldedConfig(api_key="k"), transport=transport)
    assert run(client.fetch_products()) == []


def test_holded_create_invoice_posts_json():
    transport, seen = recording(lambda r: httpx.Response(200, json={"status": 1, "id": "hi-7"}))
    client = HoldedClient(HoldedConfig(api_key="k"), transport=transport)
    out = run(client.create_invoice({"contactId": "hc-1", "invoiceNum": "INV-2026-00001"}))
    assert out["id"] == "hi-7"
    assert seen[0].method == "POST"
    assert json.loads(seen[0].content)["invoiceNum"] == "INV-2026-00001"


def test_missing_api_key_is_terminal_and_sends_nothing():
    transport, seen = recording(lambda r: httpx.Response(200, json=[]))
    client = HoldedClient(HoldedConfig(api_key=""), transport=transport)
    with pytest.raises(PreconditionFailed):
        run(client.fetch_contacts())
    assert seen == []


# ---------------------------
# Error mapping
# ---------------------------

@pytest.mark.parametrize("status, retryable", [(500, True), (503, True), (429, True), (400, False), (404, False)])
def test_http_errors_carry_status(status, retryable):
    transport, _ = recording(lambda r: httpx.Response(status, text="nope"))
    client = HoldedClient(HoldedConfig(api_key="k"), transport=transport)
    with pytest.raises(ExternalServiceError) as exc:
        run(client.fetch_contacts())
    assert exc.value.status_code == status
    assert exc.value.service == "holded"
    assert exc.value.body == "nope"
    assert is_retryable(exc.value) is retryable


def test_network_failure_has_no_status_and_is_retryable():
    def boom(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = HoldedClient(HoldedConfig(api_key="k"), transport=httpx.MockTransport(boom))
    with pytest.raises(ExternalServiceError) as exc:
        run(client.fetch_contacts())
    assert exc.value.status_code is None
    assert is_retryable(exc.value)


# ---------------------------
# Sendcloud
# ---------------------------

PARCEL = {
    "id": 321,
    "order_number": "SHP-ORD-1",
    "tracking_number": "3SABC",
    "tracking_url": "https://tracking.example/3SABC",
    "carrier": {"code": "correos"},
    "label": {"label_printer": "https://panel.example/labels/321", "normal_printer": []},
}


def test_normalize_parcel():
    assert normalize_parcel(PARCEL) == {
        "parcelId": 321,
        "orderNumber": "SHP-ORD-1",
        "labelUrl": "https://panel.example/labels/321",
        "trackingCode": "3SABC",
        "trackingUrl": "https://tracking.example/3SABC",
        "carrier": "correos",
    }
    docs_only = {"id": 1, "documents": [{"type": "label", "link": "https://docs.example/1"}]}
    assert normalize_parcel(docs_only)["labelUrl"] == "https://docs.example/1"
    assert normalize_parcel({"id": 2, "tracking_number": ""})["trackingCode"] is None


def test_sendcloud_create_label_requests_label_with_basic_auth():
    transport, seen = recording(lambda r: httpx.Response(200, json={"parcel": PARCEL}))
    client = SendcloudClient(
        SendcloudConfig(api_key="pub", api_secret="sec", shipping_method=8), transport=transport
    )
    out = run(client.create_label({"order_number": "SHP-ORD-1", "weight": "9.200"}))
    assert out["parcelId"] == 321

    req = seen[0]
    assert req.headers["Authorization"].startswith("Basic ")
    sent = json.loads(req.content)["parcel"]
    assert sent["request_label"] is True
    assert sent["shipment"] == {"id": 8}
    assert sent["order_number"] == "SHP-ORD-1"


def test_sendcloud_find_parcels_by_order_number():
    transport, seen = recording(lambda r: httpx.Response(200, json={"parcels": [PARCEL]}))
    client = SendcloudClient(SendcloudConfig(api_key="pub", api_secret="sec"), transport=transport)
    (found,) = run(client.find_parcels(order_number="SHP-ORD-1"))
    assert found["trackingCode"] == "3SABC"
    assert seen[0].url.params["order_number"] == "SHP-ORD-1"


# ---------------------------
# Shopify
# ---------------------------

def test_shopify_fulfillment_body():
    transport, seen = recording(lambda r: httpx.Response(201, json={"fulfillment": {"id": 555}}))
    client = ShopifyClient(
        ShopifyConfig(shop="santabrisa.myshopify.com", admin_token="shpat_x"), transport=transport
    )
    out = run(client.create_fulfillment(
        {"id": 11, "assigned_location_id": 22}, tracking_number="3SABC", company="Correos",
    ))
    assert out == {"id": 555}

    req = seen[0]
    assert req.url.host == "santabrisa.myshopify.com"
    assert req.url.path == "/admin/api/2024-07/fulfillments.json"
    assert req.headers["X-Shopify-Access-Token"] == "shpat_x"
    body = json.loads(req.content)["fulfillment"]
    assert body["location_id"] == 22
    assert body["line_items_by_fulfillment_order"] == [{"fulfillment_order_id": 11}]
    assert body["tracking_info"]["number"] == "3SABC"


def test_shopify_requires_shop_and_token():
    client = ShopifyClient(ShopifyConfig(shop="", admin_token=""))
    with pytest.raises(PreconditionFailed):
        run(client.fetch_fulfillment_orders(1))


# ---------------------------
# Renderer
# ---------------------------

def test_renderer_writes_documents(tmp_path):
    renderer = DocumentRenderer(str(tmp_path), "/documents/", company={"name": "Santa Brisa"},
                                app_base_url="https://crm.example")
    url = run(renderer.render_delivery_note({"id": "DN-B2B-2026-00001", "shipmentId": "S"}))
    assert url == "/documents/deliveryNotes/DN-B2B-2026-00001.json"
    written = json.loads((tmp_path / "deliveryNotes" / "DN-B2B-2026-00001.json").read_text(encoding="utf-8"))
    assert written["company"] == {"name": "Santa Brisa"}

    label_url = run(renderer.render_pallet_label({"shipmentId": "SHP-1", "pallets": 2}))
    assert label_url == "/documents/labels/pallet/SHP-1.json"
    label = json.loads((tmp_path / "labels" / "pallet" / "SHP-1.json").read_text(encoding="utf-8"))
    assert label["qrText"] == "https://crm.example/shipments/SHP-1"
