"""Customer checkout and order views."""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, status
from libs.db.session import get_async_db
from services.commerce_service.dispatch import BackgroundDispatcher
from services.commerce_service.gateway_client import GatewayClient
from services.commerce_service.routers._deps import (
    get_dispatcher,
    get_gateway,
    get_settings_lookup,
)
from services.commerce_service.schemas import (
    CheckoutRequest,
    CheckoutResponse,
    InvoiceResponse,
    OrderDetailResponse,
    OrderResponse,
)
from services.commerce_service.services import orders as order_service
from services.commerce_service.services._helpers import get_order_detail
from services.commerce_service.services.reconciliation import refresh_order_payments
from services.commerce_service.services.settings_lookup import SettingsLookup
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(tags=["commerce"])


@router.post("/checkout", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def checkout(
    payload: CheckoutRequest,
    db: AsyncSession = Depends(get_async_db),
    settings_lookup: SettingsLookup = Depends(get_settings_lookup),
    dispatcher: Optional[BackgroundDispatcher] = Depends(get_dispatcher),
):
    """Create an order, reserve its stock and open its first invoice(s)."""
    order, invoices = await order_service.create_order(
        db, payload, settings_lookup=settings_lookup, dispatcher=dispatcher
    )
    return CheckoutResponse(
        order=OrderResponse.model_validate(order),
        invoices=[InvoiceResponse.model_validate(inv) for inv in invoices],
    )


@router.get("/orders/{order_id}", response_model=OrderDetailResponse)
async def get_order(
    order_id: uuid.UUID,
    refresh: bool = True,
    db: AsyncSession = Depends(get_async_db),
    gateway: GatewayClient = Depends(get_gateway),
    dispatcher: Optional[BackgroundDispatcher] = Depends(get_dispatcher),
):
    """Order detail. Open invoices with a pending gateway attempt are re-checked first."""
    await get_order_detail(db, order_id)
    if refresh:
        await refresh_order_payments(db, order_id, gateway=gateway, dispatcher=dispatcher)
    order = await get_order_detail(db, order_id)
    return OrderDetailResponse.model_validate(order)
