"""Payment gateway and shipping provider webhooks."""

import json
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from libs.common.config import get_settings
from libs.common.logging import get_logger
from libs.db.session import get_async_db
from pydantic import ValidationError
from services.commerce_service.dispatch import BackgroundDispatcher
from services.commerce_service.errors import NotFoundError
from services.commerce_service.gateway_client import SIGNATURE_HEADER, verify_signature
from services.commerce_service.routers._deps import get_dispatcher
from services.commerce_service.schemas import GatewayNotification, ShippingWebhookPayload
from services.commerce_service.services import orders as order_service
from services.commerce_service.services.reconciliation import process_gateway_status
from services.commerce_service.shipping_client import normalize_shipping_status
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/webhooks", tags=["commerce-webhooks"])
logger = get_logger(__name__)


@router.post("/gateway")
async def gateway_webhook(
    request: Request,
    db: AsyncSession = Depends(get_async_db),
    dispatcher: Optional[BackgroundDispatcher] = Depends(get_dispatcher),
):
    """
    Gateway push callback (no auth; verified by the ``mac`` header).
    """
    raw = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    if not verify_signature(raw, signature, get_settings().GATEWAY_SECRET_KEY):
        logger.warning("Rejected gateway callback with invalid signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature"
        )

    try:
        notification = GatewayNotification.model_validate(json.loads(raw.decode("utf-8") or "{}"))
    except (ValueError, ValidationError) as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Malformed callback body"
        ) from e

    reference = notification.merchant_ref_no or notification.gateway_ref
    if not reference:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Callback carries no payment reference",
        )
    if not notification.status:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Callback carries no transaction status",
        )

    try:
        outcome = await process_gateway_status(
            db,
            reference,
            notification.status,
            gateway_ref=notification.gateway_ref,
            raw=notification.model_dump(mode="json"),
            dispatcher=dispatcher,
        )
    except NotFoundError:
        # acknowledged so the gateway stops retrying a reference we never issued
        logger.warning("Gateway callback for unknown reference %s", reference)
        return {"received": True, "outcome": "unknown_reference"}

    return {"received": True, "outcome": outcome}


@router.post("/shipping")
async def shipping_webhook(
    payload: ShippingWebhookPayload,
    db: AsyncSession = Depends(get_async_db),
    dispatcher: Optional[BackgroundDispatcher] = Depends(get_dispatcher),
):
    """Shipping provider status, waybill and price updates. Always acknowledged."""
    if payload.event == "order.waybill_id" and payload.courier_waybill_id:
        await order_service.apply_shipping_waybill(db, payload.order_id, payload.courier_waybill_id)
    elif payload.event == "order.price" and payload.price is not None:
        await order_service.record_shipping_price(db, payload.order_id, payload.price)
    else:
        normalized = normalize_shipping_status(payload.status)
        if normalized:
            await order_service.apply_shipping_status(
                db, payload.order_id, normalized, dispatcher=dispatcher
            )
        else:
            logger.info("Ignoring shipping event %s (%s)", payload.event, payload.status)

    return {"status": "ok"}
