"""Invoice payment, wallet and gateway return routes."""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, status
from libs.db.session import get_async_db
from services.commerce_service.dispatch import BackgroundDispatcher
from services.commerce_service.errors import NotFoundError
from services.commerce_service.gateway_client import GatewayClient
from services.commerce_service.routers._deps import (
    get_dispatcher,
    get_gateway,
    get_settings_lookup,
)
from services.commerce_service.schemas import (
    InvoiceResponse,
    PaymentSubmissionResponse,
    SettlementResponse,
    TopupRequest,
    WalletPayRequest,
    WalletResponse,
)
from services.commerce_service.services import invoices, reconciliation, wallet
from services.commerce_service.services.settings_lookup import SettingsLookup
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(tags=["commerce-payments"])


def _submission_response(txn) -> PaymentSubmissionResponse:
    return PaymentSubmissionResponse(
        invoice_id=txn.invoice_id,
        merchant_ref_no=txn.merchant_ref_no,
        gateway_ref=txn.gateway_ref,
        payment_url=txn.payment_url,
    )


@router.post("/invoices/{invoice_id}/pay", response_model=PaymentSubmissionResponse)
async def pay_invoice(
    invoice_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_db),
    gateway: GatewayClient = Depends(get_gateway),
):
    """Start a gateway payment attempt and return where to send the customer."""
    txn = await reconciliation.submit_payment(db, invoice_id, gateway=gateway)
    return _submission_response(txn)


@router.post("/invoices/{invoice_id}/pay-wallet", response_model=SettlementResponse)
async def pay_invoice_with_wallet(
    invoice_id: uuid.UUID,
    payload: WalletPayRequest,
    db: AsyncSession = Depends(get_async_db),
    dispatcher: Optional[BackgroundDispatcher] = Depends(get_dispatcher),
):
    result = await reconciliation.pay_with_wallet(
        db, invoice_id, user_id=payload.user_id, dispatcher=dispatcher
    )
    return SettlementResponse(
        invoice_id=result.invoice.id,
        invoice_status=result.invoice.status,
        outcome=result.outcome.value,
    )


@router.post("/invoices/{invoice_id}/check-status", response_model=InvoiceResponse)
async def check_invoice_status(
    invoice_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_db),
    gateway: GatewayClient = Depends(get_gateway),
    dispatcher: Optional[BackgroundDispatcher] = Depends(get_dispatcher),
):
    invoice = await reconciliation.check_invoice_status(
        db, invoice_id, gateway=gateway, dispatcher=dispatcher
    )
    return InvoiceResponse.model_validate(invoice)


@router.post(
    "/wallet/topups",
    response_model=PaymentSubmissionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_wallet_topup(
    payload: TopupRequest,
    db: AsyncSession = Depends(get_async_db),
    gateway: GatewayClient = Depends(get_gateway),
    settings_lookup: SettingsLookup = Depends(get_settings_lookup),
):
    """Open a top-up invoice and submit it to the gateway in one call."""
    invoice = await invoices.create_topup_invoice(
        db,
        user_id=payload.user_id,
        amount=payload.amount,
        ttl_hours=await settings_lookup.invoice_ttl_hours(db),
    )
    txn = await reconciliation.submit_payment(db, invoice.id, gateway=gateway)
    return _submission_response(txn)


@router.get("/wallet/{user_id}", response_model=WalletResponse)
async def get_wallet(user_id: str, db: AsyncSession = Depends(get_async_db)):
    return WalletResponse(user_id=user_id, balance=await wallet.wallet_balance(db, user_id))


@router.get("/payments/return", response_model=InvoiceResponse)
async def payment_return(
    merchant_ref_no: str,
    db: AsyncSession = Depends(get_async_db),
    gateway: GatewayClient = Depends(get_gateway),
    dispatcher: Optional[BackgroundDispatcher] = Depends(get_dispatcher),
):
    """Customer redirected back from the gateway.

    The query string is unsigned, so the status it carries is not trusted:
    the attempt is confirmed with an inquiry before anything is applied.
    """
    invoice, _ = await reconciliation.resolve_invoice_by_reference(db, merchant_ref_no)
    if invoice is None:
        raise NotFoundError(f"No invoice for payment reference {merchant_ref_no}")
    invoice = await reconciliation.check_invoice_status(
        db, invoice.id, gateway=gateway, dispatcher=dispatcher
    )
    return InvoiceResponse.model_validate(invoice)
