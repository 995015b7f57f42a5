"""Shipping provider API client (rate quotes, shipment booking and cancellation)."""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

import httpx
from libs.common.config import get_settings
from libs.common.logging import get_logger
from services.commerce_service.errors import ExternalGatewayError

logger = get_logger(__name__)

PICKED_UP = "picked_up"
IN_TRANSIT = "in_transit"
DELIVERED = "delivered"
RETURNED = "returned"
COURIER_NOT_FOUND = "courier_not_found"

# Couriers bill at least one kilogram
MIN_BILLABLE_WEIGHT_GRAMS = 1000

_STATUS_MAP = {
    "delivered": DELIVERED,
    "picked": PICKED_UP,
    "picking_up": PICKED_UP,
    "allocated": PICKED_UP,
    "confirmed": PICKED_UP,
    "in_transit": IN_TRANSIT,
    "out_for_delivery": IN_TRANSIT,
    "rejected": RETURNED,
    "returned": RETURNED,
    "lost": RETURNED,
    "disposed": RETURNED,
    "courier_not_found": COURIER_NOT_FOUND,
}


def normalize_shipping_status(raw_status: Optional[str]) -> Optional[str]:
    """Provider status → picked_up / in_transit / delivered / returned / courier_not_found."""
    if not raw_status:
        return None
    return _STATUS_MAP.get(raw_status.strip().lower())


@dataclass
class ShipmentBooking:
    provider_order_id: str
    waybill_id: Optional[str]
    courier: Optional[str]


class ShippingClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.SHIPPING_BASE_URL).rstrip("/")
        self.api_key = api_key or settings.SHIPPING_API_KEY
        self.timeout = timeout or settings.SHIPPING_TIMEOUT_SECONDS
        self.default_courier = settings.SHIPPING_DEFAULT_COURIER
        self.origin = {
            "contact_name": settings.SHIPPING_ORIGIN_CONTACT,
            "contact_phone": settings.SHIPPING_ORIGIN_PHONE,
            "address": settings.SHIPPING_ORIGIN_ADDRESS,
            "postal_code": settings.SHIPPING_ORIGIN_POSTAL_CODE,
        }
        self._transport = transport

    async def _request(self, method: str, endpoint: str, json_data: Optional[dict] = None) -> dict:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.request(
                    method,
                    f"{self.base_url}{endpoint}",
                    headers={
                        "Authorization": self.api_key,
                        "Content-Type": "application/json",
                    },
                    json=json_data,
                )
        except httpx.HTTPError as e:
            logger.error("Shipping provider unreachable (%s %s): %s", method, endpoint, e)
            raise ExternalGatewayError(f"Shipping provider unreachable: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {"body": response.text}

        if not response.is_success:
            logger.error(f"Shipping API error: {response.status_code} - {data}")
            raise ExternalGatewayError(
                message=data.get("error") or data.get("message") or "Shipping provider error",
                status_code=response.status_code,
                response_data=data,
            )
        return data

    async def create_shipment(
        self,
        *,
        reference: str,
        courier: Optional[str],
        destination: dict,
        items: list[dict],
    ) -> ShipmentBooking:
        """Book a pickup for an order. ``reference`` is our order number."""
        data = await self._request(
            "POST",
            "/v1/orders",
            {
                "reference_id": reference,
                "origin": self.origin,
                "destination": destination,
                "courier_company": courier,
                "items": items,
            },
        )
        provider_order_id = data.get("id")
        if not provider_order_id:
            raise ExternalGatewayError(
                "Shipping response missing order id", response_data=data
            )
        courier_data = data.get("courier") or {}
        return ShipmentBooking(
            provider_order_id=str(provider_order_id),
            waybill_id=courier_data.get("waybill_id"),
            courier=courier_data.get("company") or courier,
        )

    async def cancel_shipment(self, provider_order_id: str, reason: str) -> None:
        await self._request(
            "DELETE",
            f"/v1/orders/{provider_order_id}",
            {"cancellation_reason": reason},
        )
        logger.info("Cancelled shipment %s", provider_order_id)

    async def quote_rate(
        self,
        *,
        destination_postal_code: str,
        courier: Optional[str],
        weight_grams: int,
        value: Decimal,
    ) -> Decimal:
        """Price of sending one parcel of ``weight_grams`` with ``courier``.

        ``courier`` may be a service label such as "JNE - REG"; only the
        company code is sent. The first price the provider returns is used.
        """
        courier_code = (courier or "").split(" ")[0].lower() or self.default_courier
        data = await self._request(
            "POST",
            "/v1/rates/couriers",
            {
                "origin_postal_code": self.origin["postal_code"],
                "destination_postal_code": destination_postal_code,
                "couriers": courier_code,
                "items": [
                    {
                        "name": "Order items",
                        "value": str(value),
                        "weight": max(weight_grams, MIN_BILLABLE_WEIGHT_GRAMS),
                        "quantity": 1,
                    }
                ],
            },
        )
        pricing = data.get("pricing") or []
        try:
            return Decimal(str(pricing[0]["price"]))
        except (IndexError, KeyError, TypeError, InvalidOperation) as e:
            raise ExternalGatewayError("Shipping rates returned no price", response_data=data) from e
