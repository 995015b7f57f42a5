"""Unit tests for the shipping provider client."""

import json
from decimal import Decimal

import httpx
import pytest
from services.commerce_service.errors import ExternalGatewayError
from services.commerce_service.shipping_client import (
    DELIVERED,
    PICKED_UP,
    RETURNED,
    ShippingClient,
    normalize_shipping_status,
)


def _client(handler) -> ShippingClient:
    return ShippingClient(
        base_url="https://ship.test",
        api_key="ship-key",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.unit
def test_normalize_shipping_status():
    assert normalize_shipping_status("Picking_Up") == PICKED_UP
    assert normalize_shipping_status("delivered") == DELIVERED
    assert normalize_shipping_status("lost") == RETURNED
    assert normalize_shipping_status("warehouse_scan") is None
    assert normalize_shipping_status(None) is None


@pytest.mark.asyncio
@pytest.mark.unit
async def test_create_shipment_returns_booking():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200, json={"id": "SHP-1", "courier": {"waybill_id": "WB123", "company": "jne"}}
        )

    booking = await _client(handler).create_shipment(
        reference="ORD-1",
        courier="jne",
        destination={"postal_code": "40111"},
        items=[{"name": "Figure", "quantity": 1}],
    )

    assert booking.provider_order_id == "SHP-1"
    assert booking.waybill_id == "WB123"
    assert booking.courier == "jne"
    assert seen["auth"] == "ship-key"
    assert seen["body"]["reference_id"] == "ORD-1"
    assert seen["body"]["origin"]["postal_code"]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_create_shipment_without_id_is_an_error():
    def handler(request):
        return httpx.Response(200, json={"success": True})

    with pytest.raises(ExternalGatewayError):
        await _client(handler).create_shipment(
            reference="ORD-2", courier=None, destination={}, items=[]
        )


@pytest.mark.asyncio
@pytest.mark.unit
async def test_cancel_shipment_error_is_raised():
    def handler(request):
        assert request.method == "DELETE"
        assert request.url.path == "/v1/orders/SHP-9"
        return httpx.Response(409, json={"error": "Already picked up"})

    with pytest.raises(ExternalGatewayError) as exc_info:
        await _client(handler).cancel_shipment("SHP-9", reason="Order cancelled")

    assert exc_info.value.status_code == 409
    assert exc_info.value.message == "Already picked up"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_quote_rate_sends_courier_code_and_billable_weight():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"pricing": [{"price": 18000}, {"price": 32000}]})

    price = await _client(handler).quote_rate(
        destination_postal_code="40111",
        courier="SiCepat - REG",
        weight_grams=400,
        value=Decimal("150000"),
    )

    assert price == Decimal("18000")
    assert seen["path"] == "/v1/rates/couriers"
    assert seen["body"]["couriers"] == "sicepat"
    assert seen["body"]["destination_postal_code"] == "40111"
    assert seen["body"]["items"][0]["weight"] == 1000
    assert seen["body"]["items"][0]["value"] == "150000"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_quote_rate_without_pricing_is_an_error():
    def handler(request):
        return httpx.Response(200, json={"pricing": []})

    with pytest.raises(ExternalGatewayError):
        await _client(handler).quote_rate(
            destination_postal_code="40111", courier=None, weight_grams=2500, value=Decimal("1")
        )
