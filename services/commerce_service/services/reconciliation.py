"""Gateway Reconciliation.

Three signals tell us a gateway payment settled: the signed push callback, the
customer's redirect back to the store, and inquiries we issue ourselves (order
detail views, "check status", the pending-transaction reconciler). All of them
end in ``apply_settlement`` / ``apply_failure``, which delegate the actual
state change to the invoice settlement choke point.

Gateway HTTP calls are never made while a database transaction is open.
"""

import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.commerce_service.dispatch import BackgroundDispatcher
from services.commerce_service.errors import (
    BusinessRuleViolation,
    ExternalGatewayError,
    InvalidTransitionError,
    InvoiceAlreadyPaidError,
    NotFoundError,
)
from services.commerce_service.gateway_client import (
    GatewayClient,
    GatewayStatus,
    normalize_status,
)
from services.commerce_service.models import (
    FINALIZABLE_INVOICE_STATUSES,
    SETTLED_INVOICE_STATUSES,
    TERMINAL_ORDER_STATUSES,
    Invoice,
    InvoiceStatus,
    InvoiceType,
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    PaymentTransaction,
    TransactionKind,
    TransactionStatus,
    WalletTransactionType,
)
from services.commerce_service.services import invoices, wallet
from services.commerce_service.services._helpers import log_order
from services.commerce_service.services.invoices import FinalizeOutcome, SettlementResult
from services.commerce_service.services.notifications import dispatch_notifications
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger(__name__)

PENDING_OUTCOME = "pending"
FAILED_OUTCOME = "failed"


def generate_merchant_ref() -> str:
    """24-character merchant reference, unique per payment attempt."""
    return f"MR{uuid.uuid4().hex[:16].upper()}{utc_now().strftime('%H%M%S')}"


async def resolve_invoice_by_reference(
    db: AsyncSession, reference: str
) -> tuple[Optional[Invoice], Optional[PaymentTransaction]]:
    """Find the invoice a gateway reference belongs to.

    Looks up the payment attempt by merchant or gateway reference first, then
    falls back to treating the reference as an invoice number.
    """
    result = await db.execute(
        select(PaymentTransaction)
        .where(
            or_(
                PaymentTransaction.merchant_ref_no == reference,
                PaymentTransaction.gateway_ref == reference,
            )
        )
        .order_by(PaymentTransaction.created_at.desc())
        .limit(1)
    )
    txn = result.scalar_one_or_none()
    if txn:
        return await invoices.get_invoice(db, txn.invoice_id), txn
    return await invoices.get_invoice_by_number(db, reference), None


async def apply_settlement(
    db: AsyncSession,
    reference: str,
    *,
    gateway_ref: Optional[str] = None,
    raw: Optional[dict] = None,
    dispatcher: Optional[BackgroundDispatcher] = None,
) -> SettlementResult:
    """Record a settled gateway payment; safe to call any number of times."""
    try:
        invoice, txn = await resolve_invoice_by_reference(db, reference)
        if invoice is None:
            raise NotFoundError(f"No invoice for payment reference {reference}")

        if txn is not None:
            txn.status = TransactionStatus.SUCCESS
            txn.gateway_ref = gateway_ref or txn.gateway_ref
            if raw:
                txn.raw_response = raw
            txn.error_message = None

        if invoice.status in SETTLED_INVOICE_STATUSES:
            logger.info("Settlement for %s acknowledged, invoice already paid", reference)
            await db.commit()
            return SettlementResult(FinalizeOutcome.ALREADY_PROCESSED, invoice)

        result = await invoices.settle_invoice(
            db,
            invoice,
            payment_method=PaymentMethod.GATEWAY,
            reference=gateway_ref or (txn.gateway_ref if txn else None) or reference,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    await dispatch_notifications(dispatcher, result.notifications)
    return result


async def apply_failure(
    db: AsyncSession,
    reference: str,
    *,
    reason: Optional[str] = None,
    raw: Optional[dict] = None,
) -> Optional[Invoice]:
    """The gateway rejected an attempt: unpaid invoice → failed."""
    try:
        invoice, txn = await resolve_invoice_by_reference(db, reference)
        if invoice is None:
            logger.warning("Failure notice for unknown reference %s", reference)
            await db.rollback()
            return None

        if txn is not None and txn.status == TransactionStatus.PENDING:
            txn.status = TransactionStatus.FAILED
            txn.error_message = reason or "Rejected by gateway"
            if raw:
                txn.raw_response = raw

        moved = await invoices.guarded_transition(
            db, invoice.id, InvoiceStatus.UNPAID, InvoiceStatus.FAILED
        )
        if moved and invoice.order_id:
            order = await db.get(Order, invoice.order_id, with_for_update=True, populate_existing=True)
            if order is not None and order.status not in TERMINAL_ORDER_STATUSES:
                order.payment_status = PaymentStatus.FAILED
                log_order(
                    db,
                    order.id,
                    "payment_failed",
                    note=f"Payment for {invoice.invoice_number} was rejected",
                    is_customer_visible=True,
                )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Payment attempt %s failed (%s)", reference, reason)
    return await invoices.get_invoice(db, invoice.id)


async def process_gateway_status(
    db: AsyncSession,
    reference: str,
    raw_status: Optional[str],
    *,
    gateway_ref: Optional[str] = None,
    raw: Optional[dict] = None,
    dispatcher: Optional[BackgroundDispatcher] = None,
) -> str:
    """Route a gateway status to settlement or failure. Returns the outcome."""
    status = normalize_status(raw_status)
    if status == GatewayStatus.SETTLED:
        result = await apply_settlement(
            db, reference, gateway_ref=gateway_ref, raw=raw, dispatcher=dispatcher
        )
        return result.outcome.value
    if status == GatewayStatus.FAILED:
        await apply_failure(db, reference, reason=f"Gateway status {raw_status}", raw=raw)
        return FAILED_OUTCOME

    logger.info("Gateway reports %s for %s, nothing to apply", raw_status, reference)
    return PENDING_OUTCOME


# ---------------------------------------------------------------------------
# Active inquiry
# ---------------------------------------------------------------------------


async def _latest_pending_attempt(
    db: AsyncSession, invoice_id: uuid.UUID
) -> Optional[PaymentTransaction]:
    result = await db.execute(
        select(PaymentTransaction)
        .where(
            PaymentTransaction.invoice_id == invoice_id,
            PaymentTransaction.kind == TransactionKind.PAYMENT,
            PaymentTransaction.status == TransactionStatus.PENDING,
        )
        .order_by(PaymentTransaction.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def check_invoice_status(
    db: AsyncSession,
    invoice_id: uuid.UUID,
    *,
    gateway: GatewayClient,
    dispatcher: Optional[BackgroundDispatcher] = None,
) -> Invoice:
    """Ask the gateway about the invoice's latest pending attempt.

    Gateway trouble is logged and the current local state returned.
    """
    invoice = await invoices.get_invoice(db, invoice_id)
    if invoice.status not in FINALIZABLE_INVOICE_STATUSES:
        return invoice

    txn = await _latest_pending_attempt(db, invoice.id)
    if txn is None:
        return invoice
    merchant_ref_no, gateway_ref, amount = txn.merchant_ref_no, txn.gateway_ref, txn.amount
    # release the read transaction before going to the network
    await db.commit()

    try:
        inquiry = await gateway.inquire(merchant_ref_no, gateway_ref=gateway_ref, amount=amount)
    except ExternalGatewayError as e:
        logger.warning(
            "Inquiry for %s failed: %s",
            merchant_ref_no,
            e.message,
            extra={"extra_fields": {"invoice_id": str(invoice_id), "status_code": e.status_code}},
        )
        return await invoices.get_invoice(db, invoice_id)

    await process_gateway_status(
        db,
        merchant_ref_no,
        inquiry.raw_status,
        gateway_ref=inquiry.gateway_ref,
        raw=inquiry.raw,
        dispatcher=dispatcher,
    )
    return await invoices.get_invoice(db, invoice_id)


async def refresh_order_payments(
    db: AsyncSession,
    order_id: uuid.UUID,
    *,
    gateway: GatewayClient,
    dispatcher: Optional[BackgroundDispatcher] = None,
) -> None:
    """Opportunistic inquiry for every open invoice of an order."""
    result = await db.execute(
        select(Invoice.id).where(
            Invoice.order_id == order_id,
            Invoice.status.in_([InvoiceStatus.UNPAID, InvoiceStatus.FAILED]),
        )
    )
    for invoice_id in result.scalars().all():
        await check_invoice_status(db, invoice_id, gateway=gateway, dispatcher=dispatcher)


# ---------------------------------------------------------------------------
# Paying an invoice
# ---------------------------------------------------------------------------


async def _reopen_failed_invoice(db: AsyncSession, invoice: Invoice) -> None:
    if invoice.order_id:
        order = await db.get(Order, invoice.order_id)
        if order is not None and order.status == OrderStatus.CANCELLED:
            raise InvalidTransitionError(
                f"Order for invoice {invoice.invoice_number} is cancelled"
            )
    await invoices.guarded_transition(db, invoice.id, InvoiceStatus.FAILED, InvoiceStatus.UNPAID)
    await db.refresh(invoice)


async def submit_payment(
    db: AsyncSession,
    invoice_id: uuid.UUID,
    *,
    gateway: GatewayClient,
    payment_method: Optional[str] = None,
) -> PaymentTransaction:
    """Open a gateway payment attempt for an invoice.

    On gateway failure the attempt stays pending with the error recorded so
    the reconciler can pick it up later, and ExternalGatewayError propagates.
    """
    invoice = await invoices.get_invoice(db, invoice_id)
    if invoice.status in SETTLED_INVOICE_STATUSES:
        raise InvoiceAlreadyPaidError(f"Invoice {invoice.invoice_number} is already paid")
    if invoice.status == InvoiceStatus.FAILED:
        await _reopen_failed_invoice(db, invoice)
    if invoice.status != InvoiceStatus.UNPAID:
        raise InvalidTransitionError(
            f"Invoice {invoice.invoice_number} cannot be paid while {invoice.status.value}"
        )

    customer_email = None
    if invoice.order_id:
        order = await db.get(Order, invoice.order_id)
        customer_email = order.customer_email if order else None

    txn = PaymentTransaction(
        invoice_id=invoice.id,
        merchant_ref_no=generate_merchant_ref(),
        method=PaymentMethod.GATEWAY.value,
        amount=invoice.amount,
        kind=TransactionKind.PAYMENT,
        status=TransactionStatus.PENDING,
    )
    db.add(txn)
    await db.commit()

    try:
        submission = await gateway.submit_transaction(
            merchant_ref_no=txn.merchant_ref_no,
            invoice_number=invoice.invoice_number,
            amount=invoice.amount,
            user_id=invoice.user_id,
            customer_email=customer_email,
            payment_method=payment_method,
        )
    except ExternalGatewayError as e:
        txn.error_message = e.message
        txn.raw_response = e.response_data or None
        await db.commit()
        logger.error(
            "Gateway submission failed for %s: %s",
            invoice.invoice_number,
            e.message,
            extra={"extra_fields": {"merchant_ref_no": txn.merchant_ref_no}},
        )
        raise

    txn.gateway_ref = submission.gateway_ref
    txn.payment_url = submission.payment_url
    txn.raw_response = submission.raw
    await db.commit()
    await db.refresh(txn)
    return txn


async def pay_with_wallet(
    db: AsyncSession,
    invoice_id: uuid.UUID,
    *,
    user_id: str,
    dispatcher: Optional[BackgroundDispatcher] = None,
) -> SettlementResult:
    """Settle an invoice from store credit in one transaction."""
    try:
        invoice = await invoices.get_invoice(db, invoice_id)
        if invoice.user_id != user_id:
            raise BusinessRuleViolation("Invoice belongs to another customer")
        if invoice.type == InvoiceType.TOPUP:
            raise BusinessRuleViolation("Top-up invoices cannot be paid from the wallet")
        if invoice.status in SETTLED_INVOICE_STATUSES:
            raise InvoiceAlreadyPaidError(f"Invoice {invoice.invoice_number} is already paid")
        if invoice.status == InvoiceStatus.FAILED:
            await _reopen_failed_invoice(db, invoice)
        if invoice.status != InvoiceStatus.UNPAID:
            raise InvalidTransitionError(
                f"Invoice {invoice.invoice_number} cannot be paid while {invoice.status.value}"
            )

        reference = f"{invoices.WALLET_REFERENCE_PREFIX}{invoice.invoice_number}"
        if invoice.amount > 0:
            await wallet.debit_wallet(
                db,
                user_id=user_id,
                amount=invoice.amount,
                transaction_type=WalletTransactionType.PAYMENT,
                idempotency_key=f"wallet-pay:{invoice.id}",
                reference_type="invoice",
                reference_id=invoice.invoice_number,
                description=f"Payment for {invoice.invoice_number}",
            )
        db.add(
            PaymentTransaction(
                invoice_id=invoice.id,
                merchant_ref_no=generate_merchant_ref(),
                gateway_ref=reference,
                method=PaymentMethod.WALLET.value,
                amount=invoice.amount,
                kind=TransactionKind.PAYMENT,
                status=TransactionStatus.SUCCESS,
            )
        )

        result = await invoices.settle_invoice(
            db, invoice, payment_method=PaymentMethod.WALLET, reference=reference
        )
        if not result.applied:
            raise InvoiceAlreadyPaidError(f"Invoice {invoice.invoice_number} is already paid")
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    await dispatch_notifications(dispatcher, result.notifications)
    return result


# ---------------------------------------------------------------------------
# Background reconciler
# ---------------------------------------------------------------------------


@dataclass
class ReconcileReport:
    checked: int = 0
    settled: int = 0
    failed: int = 0
    errors: int = 0


async def reconcile_pending_transactions(
    session_factory: async_sessionmaker,
    gateway: GatewayClient,
    *,
    older_than_minutes: int = 10,
    limit: int = 100,
    dispatcher: Optional[BackgroundDispatcher] = None,
) -> ReconcileReport:
    """Poll the gateway for stale pending attempts whose invoice is still open."""
    report = ReconcileReport()
    cutoff = utc_now() - timedelta(minutes=older_than_minutes)

    async with session_factory() as db:
        result = await db.execute(
            select(PaymentTransaction.invoice_id)
            .join(Invoice, Invoice.id == PaymentTransaction.invoice_id)
            .where(
                PaymentTransaction.status == TransactionStatus.PENDING,
                PaymentTransaction.kind == TransactionKind.PAYMENT,
                PaymentTransaction.method == PaymentMethod.GATEWAY.value,
                PaymentTransaction.created_at < cutoff,
                Invoice.status.in_(FINALIZABLE_INVOICE_STATUSES),
            )
            .distinct()
            .limit(limit)
        )
        invoice_ids = list(result.scalars().all())

    for invoice_id in invoice_ids:
        report.checked += 1
        async with session_factory() as db:
            try:
                invoice = await check_invoice_status(
                    db, invoice_id, gateway=gateway, dispatcher=dispatcher
                )
            except Exception:
                report.errors += 1
                logger.exception(
                    "Reconciling invoice %s failed",
                    invoice_id,
                    extra={"extra_fields": {"invoice_id": str(invoice_id)}},
                )
                continue
        if invoice.status in SETTLED_INVOICE_STATUSES:
            report.settled += 1
        elif invoice.status == InvoiceStatus.FAILED:
            report.failed += 1

    if report.checked:
        logger.info(
            "Reconciled %d pending attempts: %d settled, %d failed, %d errors",
            report.checked,
            report.settled,
            report.failed,
            report.errors,
        )
    return report
