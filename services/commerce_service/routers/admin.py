"""Admin order operations: manual payment confirmation, counter sales and the on-demand sweep."""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, status
from libs.db.session import get_async_db
from services.commerce_service.dispatch import BackgroundDispatcher
from services.commerce_service.routers._deps import (
    get_admin_actor,
    get_dispatcher,
    get_session_factory,
    get_settings_lookup,
    get_shipping,
)
from services.commerce_service.schemas import (
    CancelRequest,
    CheckoutResponse,
    InvoiceResponse,
    MarkArrivedRequest,
    OrderDetailResponse,
    OrderResponse,
    PosOrderRequest,
    RefundRequest,
    SettlementResponse,
    ShipRequest,
    SweepReportResponse,
)
from services.commerce_service.services import invoices
from services.commerce_service.services import orders as order_service
from services.commerce_service.services.notifications import dispatch_notifications
from services.commerce_service.services.settings_lookup import SettingsLookup
from services.commerce_service.services.sweep import run_expiration_sweep
from services.commerce_service.shipping_client import ShippingClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

router = APIRouter(tags=["commerce-admin"])


# ============================================================================
# ORDERS
# ============================================================================


@router.post("/orders/{order_id}/arrived", response_model=OrderDetailResponse)
async def mark_order_arrived(
    order_id: uuid.UUID,
    payload: MarkArrivedRequest,
    db: AsyncSession = Depends(get_async_db),
    settings_lookup: SettingsLookup = Depends(get_settings_lookup),
    shipping: Optional[ShippingClient] = Depends(get_shipping),
    dispatcher: Optional[BackgroundDispatcher] = Depends(get_dispatcher),
    actor: str = Depends(get_admin_actor),
):
    """Pre-ordered goods arrived; opens the balance invoice when one is owed."""
    order = await order_service.mark_arrived(
        db,
        order_id,
        settings_lookup=settings_lookup,
        final_shipping_cost=payload.final_shipping_cost,
        actor=actor,
        dispatcher=dispatcher,
        shipping=shipping,
    )
    return OrderDetailResponse.model_validate(order)


@router.post("/orders/{order_id}/ship", response_model=OrderDetailResponse)
async def ship_order(
    order_id: uuid.UUID,
    payload: ShipRequest,
    db: AsyncSession = Depends(get_async_db),
    dispatcher: Optional[BackgroundDispatcher] = Depends(get_dispatcher),
    actor: str = Depends(get_admin_actor),
):
    order = await order_service.ship_order(
        db,
        order_id,
        courier=payload.courier,
        tracking_number=payload.tracking_number,
        actor=actor,
        dispatcher=dispatcher,
    )
    return OrderDetailResponse.model_validate(order)


@router.post("/orders/{order_id}/cancel", response_model=OrderDetailResponse)
async def cancel_order(
    order_id: uuid.UUID,
    payload: CancelRequest,
    db: AsyncSession = Depends(get_async_db),
    dispatcher: Optional[BackgroundDispatcher] = Depends(get_dispatcher),
    actor: str = Depends(get_admin_actor),
):
    order = await order_service.cancel_order(
        db, order_id, reason=payload.reason, actor=actor, dispatcher=dispatcher
    )
    return OrderDetailResponse.model_validate(order)


@router.post("/orders/{order_id}/deliver", response_model=OrderDetailResponse)
async def confirm_delivery(
    order_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_db),
    dispatcher: Optional[BackgroundDispatcher] = Depends(get_dispatcher),
    actor: str = Depends(get_admin_actor),
):
    order = await order_service.confirm_delivery(db, order_id, actor=actor, dispatcher=dispatcher)
    return OrderDetailResponse.model_validate(order)


@router.post("/orders/{order_id}/refund", response_model=OrderDetailResponse)
async def refund_order(
    order_id: uuid.UUID,
    payload: RefundRequest,
    db: AsyncSession = Depends(get_async_db),
    dispatcher: Optional[BackgroundDispatcher] = Depends(get_dispatcher),
    actor: str = Depends(get_admin_actor),
):
    order = await order_service.refund_order(
        db,
        order_id,
        amount=payload.amount,
        reason=payload.reason,
        actor=actor,
        dispatcher=dispatcher,
    )
    return OrderDetailResponse.model_validate(order)


@router.post("/orders/{order_id}/forfeit", response_model=OrderDetailResponse)
async def forfeit_pre_order(
    order_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_db),
    dispatcher: Optional[BackgroundDispatcher] = Depends(get_dispatcher),
    actor: str = Depends(get_admin_actor),
):
    order = await order_service.forfeit_pre_order(db, order_id, actor=actor, dispatcher=dispatcher)
    return OrderDetailResponse.model_validate(order)


@router.post("/orders/{order_id}/recalculate", response_model=OrderDetailResponse)
async def recalculate_payment_totals(
    order_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_db),
):
    order = await order_service.recalculate_payment_totals(db, order_id)
    return OrderDetailResponse.model_validate(order)


# ============================================================================
# INVOICES / SWEEP
# ============================================================================


@router.post("/invoices/{invoice_id}/mark-paid", response_model=SettlementResponse)
async def mark_invoice_paid(
    invoice_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_db),
    dispatcher: Optional[BackgroundDispatcher] = Depends(get_dispatcher),
    actor: str = Depends(get_admin_actor),
):
    """Confirm an off-gateway payment (bank transfer, cash)."""
    result = await invoices.mark_invoice_paid_manually(db, invoice_id, admin=actor)
    await dispatch_notifications(dispatcher, result.notifications)
    return SettlementResponse(
        invoice_id=result.invoice.id,
        invoice_status=result.invoice.status,
        outcome=result.outcome.value,
    )


@router.post("/sweep", response_model=SweepReportResponse)
async def run_sweep(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    settings_lookup: SettingsLookup = Depends(get_settings_lookup),
    dispatcher: Optional[BackgroundDispatcher] = Depends(get_dispatcher),
):
    """Run the expiration sweep now instead of waiting for the hourly job."""
    report = await run_expiration_sweep(session_factory, settings_lookup, dispatcher)
    return SweepReportResponse(**report.as_dict())


# ============================================================================
# POINT OF SALE
# ============================================================================


@router.post("/pos/orders", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def create_pos_order(
    payload: PosOrderRequest,
    db: AsyncSession = Depends(get_async_db),
    settings_lookup: SettingsLookup = Depends(get_settings_lookup),
    dispatcher: Optional[BackgroundDispatcher] = Depends(get_dispatcher),
    actor: str = Depends(get_admin_actor),
):
    """Ring up a counter sale. Cash is settled on the spot; gateway sales stay open."""
    order, opened = await order_service.create_pos_order(
        db, payload, settings_lookup=settings_lookup, actor=actor, dispatcher=dispatcher
    )
    return CheckoutResponse(
        order=OrderResponse.model_validate(order),
        invoices=[InvoiceResponse.model_validate(inv) for inv in opened],
    )
