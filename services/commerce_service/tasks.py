"""Background jobs for the commerce service.

Every function takes arq's ``ctx`` dict first so the same code runs under the
arq worker and the in-process ``LocalDispatcher``. Context keys, all optional:
``session_factory``, ``settings_lookup``, ``dispatcher``, ``gateway``,
``shipping``.
"""

import uuid

from arq import Retry
from libs.common.logging import get_logger
from libs.db.config import AsyncSessionLocal
from services.commerce_service.dispatch import (
    JOB_CANCEL_SHIPMENT,
    JOB_CREATE_SHIPMENT,
    JOB_SEND_NOTIFICATION,
)
from services.commerce_service.errors import ExternalGatewayError
from services.commerce_service.gateway_client import GatewayClient
from services.commerce_service.models import Order
from services.commerce_service.services._helpers import get_order_detail, log_order
from services.commerce_service.services.notifications import send_notification
from services.commerce_service.services.reconciliation import reconcile_pending_transactions
from services.commerce_service.services.settings_lookup import SettingsLookup
from services.commerce_service.services.sweep import run_expiration_sweep
from services.commerce_service.shipping_client import ShippingClient
from sqlalchemy import update

logger = get_logger(__name__)

# arq backs off linearly between tries of a failed provider call
SHIPMENT_RETRY_SECONDS = 30


def _session_factory(ctx: dict):
    return ctx.get("session_factory") or AsyncSessionLocal


async def task_send_notification(ctx: dict, kind: str, payload: dict) -> bool:
    return await send_notification(kind, payload)


def _shipment_items(order: Order) -> list[dict]:
    return [
        {
            "name": item.product_name,
            "value": str(item.unit_price),
            "quantity": item.quantity,
        }
        for item in order.items
    ]


async def task_create_shipment(ctx: dict, order_id: str) -> None:
    """Book the courier for a shipped order, once.

    Provider failures are re-queued through arq's ``Retry`` so the worker's
    ``max_tries`` bounds the attempts.
    """
    session_factory = _session_factory(ctx)
    shipping = ctx.get("shipping") or ShippingClient()

    async with session_factory() as db:
        order = await get_order_detail(db, uuid.UUID(order_id))
        if order.shipping_provider_order_id:
            logger.info("Shipment for %s already booked", order.order_number)
            return
        destination = order.shipping_address or order.billing_address or {}
        order_number, courier = order.order_number, order.courier
        items = _shipment_items(order)

    try:
        booking = await shipping.create_shipment(
            reference=order_number,
            courier=courier,
            destination=destination,
            items=items,
        )
    except ExternalGatewayError as e:
        logger.error(
            "Shipment booking failed for %s: %s",
            order_number,
            e.message,
            extra={"extra_fields": {"order_id": order_id, "status_code": e.status_code}},
        )
        raise Retry(defer=ctx.get("job_try", 1) * SHIPMENT_RETRY_SECONDS) from e

    async with session_factory() as db:
        values = {"shipping_provider_order_id": booking.provider_order_id}
        if booking.waybill_id:
            values["tracking_number"] = booking.waybill_id
        result = await db.execute(
            update(Order)
            .where(
                Order.id == uuid.UUID(order_id),
                Order.shipping_provider_order_id.is_(None),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            log_order(
                db,
                uuid.UUID(order_id),
                "shipment_booked",
                note=f"Provider order {booking.provider_order_id}",
            )
        await db.commit()
    logger.info("Booked shipment %s for %s", booking.provider_order_id, order_number)


async def task_cancel_shipment(ctx: dict, order_id: str, provider_order_id: str) -> None:
    shipping = ctx.get("shipping") or ShippingClient()
    await shipping.cancel_shipment(provider_order_id, reason="Order cancelled")

    async with _session_factory(ctx)() as db:
        log_order(
            db,
            uuid.UUID(order_id),
            "shipment_cancelled",
            note=f"Provider order {provider_order_id}",
        )
        await db.commit()


async def task_run_expiration_sweep(ctx: dict) -> dict:
    settings_lookup = ctx.get("settings_lookup") or SettingsLookup()
    report = await run_expiration_sweep(
        _session_factory(ctx), settings_lookup, ctx.get("dispatcher")
    )
    return report.as_dict()


async def task_reconcile_pending_transactions(ctx: dict) -> int:
    gateway = ctx.get("gateway") or GatewayClient()
    report = await reconcile_pending_transactions(
        _session_factory(ctx), gateway, dispatcher=ctx.get("dispatcher")
    )
    return report.settled


JOB_HANDLERS = {
    JOB_SEND_NOTIFICATION: task_send_notification,
    JOB_CREATE_SHIPMENT: task_create_shipment,
    JOB_CANCEL_SHIPMENT: task_cancel_shipment,
}
