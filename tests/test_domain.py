from crm_sync.domain.models import (
    ShipmentMode,
    advance_billing_status,
    advance_order_status,
    advance_shipment_status,
    derive_shipment_mode,
    order_totals,
)
from crm_sync.errors import ExternalServiceError, InvalidPayload, StoreContention, is_retryable


def test_order_status_moves_forward_only():
    assert advance_order_status("open", "confirmed") == "confirmed"
    assert advance_order_status("invoiced", "shipped") is None
    assert advance_order_status("shipped", "shipped") is None
    assert advance_order_status("confirmed", "cancelled") == "cancelled"
    assert advance_order_status("cancelled", "paid") is None


def test_billing_status_moves_forward_only():
    assert advance_billing_status(None, "INVOICED") == "INVOICED"
    assert advance_billing_status("PAID", "INVOICED") is None


def test_shipment_status_machine():
    assert advance_shipment_status("pending", "ready_to_ship") == "ready_to_ship"
    assert advance_shipment_status("shipped", "ready_to_ship") is None
    assert advance_shipment_status("picking", "exception") == "exception"
    assert advance_shipment_status("exception", "ready_to_ship") == "ready_to_ship"
    assert advance_shipment_status("delivered", "cancelled") is None
    assert advance_shipment_status("cancelled", "shipped") is None


def test_shipment_mode_heuristic():
    small = {"source": "CRM", "lines": [{"qty": 6}]}
    big = {"source": "CRM", "lines": [{"qty": 6}, {"qty": 18}]}
    assert derive_shipment_mode(small, {"type": "HORECA"}) == ShipmentMode.PARCEL
    assert derive_shipment_mode(big, {"type": "HORECA"}) == ShipmentMode.PALLET
    assert derive_shipment_mode(big, {"type": "ONLINE"}) == ShipmentMode.PARCEL
    assert derive_shipment_mode({**big, "source": "SHOPIFY"}, None) == ShipmentMode.PARCEL


def test_order_totals_use_line_rate_or_default():
    lines = [
        {"qty": 2, "priceUnit": 10.0},
        {"qty": 1, "priceUnit": 100.0, "taxRate": 10},
    ]
    assert order_totals(lines, 21.0) == {"netAmount": 120.0, "taxAmount": 14.2, "grossAmount": 134.2}


def test_error_classification():
    assert is_retryable(ExternalServiceError("holded", 503, "down")) is True
    assert is_retryable(ExternalServiceError("holded", None, "timeout")) is True
    assert is_retryable(ExternalServiceError("holded", 429, "slow down")) is True
    assert is_retryable(ExternalServiceError("holded", 400, "bad request")) is False
    assert is_retryable(StoreContention("busy")) is True
    assert is_retryable(InvalidPayload("nope")) is False
    assert is_retryable(RuntimeError("surprise")) is True
