"""Invoice Manager: invoice creation, transitions and the settlement choke point.

``settle_invoice`` is the only code path that marks an invoice paid. Gateway
callbacks, status polls, wallet payments and manual admin confirmation all go
through it, and it is safe to call concurrently for the same invoice: the
status change is a guarded UPDATE conditioned on the status observed just
before, so exactly one caller applies the side effects.
"""

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.commerce_service.errors import InvalidTransitionError, NotFoundError
from services.commerce_service.models import (
    FINALIZABLE_INVOICE_STATUSES,
    LATE_INVOICE_STATUSES,
    SETTLED_INVOICE_STATUSES,
    FulfillmentStatus,
    Invoice,
    InvoiceStatus,
    InvoiceType,
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    WalletTransactionType,
)
from services.commerce_service.services import inventory, ledger, wallet
from services.commerce_service.services._helpers import lock_order, log_order, order_payload
from services.commerce_service.services.notifications import PendingNotification
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

ZERO = Decimal("0")
MANUAL_ADMIN_REFERENCE = "MANUAL-ADMIN"
WALLET_REFERENCE_PREFIX = "WALLET-"
# Re-reads allowed when another writer changes the status between read and update
MAX_GUARD_ATTEMPTS = 3


class FinalizeOutcome(str, enum.Enum):
    APPLIED = "applied"
    APPLIED_LATE = "applied_late"
    ALREADY_PROCESSED = "already_processed"


@dataclass
class SettlementResult:
    outcome: FinalizeOutcome
    invoice: Invoice
    notifications: list[PendingNotification] = field(default_factory=list)

    @property
    def applied(self) -> bool:
        return self.outcome != FinalizeOutcome.ALREADY_PROCESSED


# ---------------------------------------------------------------------------
# Creation and lookup
# ---------------------------------------------------------------------------


def build_invoice(
    *,
    order: Optional[Order],
    user_id: str,
    invoice_type: InvoiceType,
    amount: Decimal,
    status: InvoiceStatus = InvoiceStatus.UNPAID,
    due_date: Optional[datetime] = None,
) -> Invoice:
    return Invoice(
        invoice_number=Invoice.generate_invoice_number(
            invoice_type, order.order_number if order else None
        ),
        order_id=order.id if order else None,
        user_id=user_id,
        type=invoice_type,
        amount=ledger.quantize(amount),
        status=status,
        due_date=due_date,
    )


async def create_topup_invoice(
    db: AsyncSession,
    *,
    user_id: str,
    amount: Decimal,
    ttl_hours: int = 24,
) -> Invoice:
    """Standalone wallet top-up invoice (no order)."""
    invoice = build_invoice(
        order=None,
        user_id=user_id,
        invoice_type=InvoiceType.TOPUP,
        amount=amount,
        due_date=utc_now() + timedelta(hours=ttl_hours),
    )
    db.add(invoice)
    await db.commit()
    await db.refresh(invoice)
    logger.info("Created top-up invoice %s for %s (%s)", invoice.invoice_number, user_id, amount)
    return invoice


async def get_invoice(db: AsyncSession, invoice_id: uuid.UUID) -> Invoice:
    invoice = await db.get(Invoice, invoice_id, populate_existing=True)
    if not invoice:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    return invoice


async def get_invoice_by_number(db: AsyncSession, invoice_number: str) -> Optional[Invoice]:
    result = await db.execute(select(Invoice).where(Invoice.invoice_number == invoice_number))
    return result.scalar_one_or_none()


async def find_order_invoice(
    db: AsyncSession,
    order_id: uuid.UUID,
    invoice_type: InvoiceType,
    statuses: Optional[set[InvoiceStatus]] = None,
) -> Optional[Invoice]:
    query = select(Invoice).where(Invoice.order_id == order_id, Invoice.type == invoice_type)
    if statuses:
        query = query.where(Invoice.status.in_(statuses))
    result = await db.execute(query.order_by(Invoice.created_at.desc()).limit(1))
    return result.scalar_one_or_none()


async def paid_invoices(db: AsyncSession, order_id: uuid.UUID) -> list[Invoice]:
    result = await db.execute(
        select(Invoice).where(
            Invoice.order_id == order_id,
            Invoice.status == InvoiceStatus.PAID,
        )
        .order_by(Invoice.created_at.asc())
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def activate_balance_invoice(
    invoice: Invoice, *, due_date: datetime, amount_delta: Decimal = ZERO
) -> None:
    """pending_arrival -> unpaid once pre-ordered goods have arrived."""
    if invoice.type != InvoiceType.BALANCE or invoice.status != InvoiceStatus.PENDING_ARRIVAL:
        raise InvalidTransitionError(
            f"Invoice {invoice.invoice_number} cannot be activated from {invoice.status.value}"
        )
    invoice.amount = max(ledger.quantize(invoice.amount + amount_delta), ZERO)
    invoice.status = InvoiceStatus.UNPAID
    invoice.due_date = due_date
    invoice.reminder_stage = None


async def close_open_invoices(
    db: AsyncSession, order_id: uuid.UUID, new_status: InvoiceStatus
) -> int:
    """Move every unpaid or dormant invoice of an order to ``new_status``."""
    result = await db.execute(
        update(Invoice)
        .where(
            Invoice.order_id == order_id,
            Invoice.status.in_([InvoiceStatus.UNPAID, InvoiceStatus.PENDING_ARRIVAL]),
        )
        .values(status=new_status, updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


async def guarded_transition(
    db: AsyncSession,
    invoice_id: uuid.UUID,
    prior_status: InvoiceStatus,
    new_status: InvoiceStatus,
    **values,
) -> int:
    """Single-statement status change that only fires from ``prior_status``.

    Returns the affected row count; zero means another caller got there first.
    """
    if prior_status not in FINALIZABLE_INVOICE_STATUSES:
        return 0
    result = await db.execute(
        update(Invoice)
        .where(Invoice.id == invoice_id, Invoice.status == prior_status)
        .values(status=new_status, updated_at=utc_now(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


async def _current_status(db: AsyncSession, invoice_id: uuid.UUID) -> InvoiceStatus:
    result = await db.execute(select(Invoice.status).where(Invoice.id == invoice_id))
    return result.scalar_one()


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------


async def settle_invoice(
    db: AsyncSession,
    invoice: Invoice,
    *,
    payment_method: PaymentMethod,
    reference: Optional[str] = None,
) -> SettlementResult:
    """Mark ``invoice`` paid exactly once and apply its effects.

    The late/on-time decision is taken from the status read *before* the
    guarded update. Does not commit; the caller owns the transaction.
    """
    status = await _current_status(db, invoice.id)
    paid_at = utc_now()

    for _ in range(MAX_GUARD_ATTEMPTS):
        if status in SETTLED_INVOICE_STATUSES:
            logger.info("Invoice %s already settled, skipping", invoice.invoice_number)
            return SettlementResult(FinalizeOutcome.ALREADY_PROCESSED, invoice)
        if status not in FINALIZABLE_INVOICE_STATUSES:
            raise InvalidTransitionError(
                f"Invoice {invoice.invoice_number} cannot be paid while {status.value}"
            )

        is_late = status in LATE_INVOICE_STATUSES
        new_status = InvoiceStatus.PAID_LATE if is_late else InvoiceStatus.PAID
        affected = await guarded_transition(
            db,
            invoice.id,
            status,
            new_status,
            paid_at=paid_at,
            payment_method=payment_method,
            payment_reference=reference,
        )
        if affected == 1:
            break
        status = await _current_status(db, invoice.id)
    else:
        logger.warning("Invoice %s status kept changing, giving up", invoice.invoice_number)
        return SettlementResult(FinalizeOutcome.ALREADY_PROCESSED, invoice)

    await db.refresh(invoice)
    logger.info(
        "Invoice %s settled as %s via %s",
        invoice.invoice_number,
        new_status.value,
        payment_method.value,
        extra={
            "extra_fields": {
                "invoice_id": str(invoice.id),
                "reference": reference,
                "late": is_late,
            }
        },
    )
    return await finalize_invoice(
        db,
        invoice,
        payment_method=payment_method,
        reference=reference,
        is_late=is_late,
    )


async def finalize_invoice(
    db: AsyncSession,
    invoice: Invoice,
    *,
    payment_method: PaymentMethod,
    reference: Optional[str],
    is_late: bool,
) -> SettlementResult:
    """Post the payment journal and apply order-side effects.

    Must only run after the guarded transition succeeded for this caller.
    """
    await ledger.record_payment(
        db,
        invoice,
        reference,
        wallet_funded=payment_method == PaymentMethod.WALLET,
        cash_funded=payment_method == PaymentMethod.CASH,
    )

    if invoice.type == InvoiceType.TOPUP:
        await wallet.credit_wallet(
            db,
            user_id=invoice.user_id,
            amount=invoice.amount,
            transaction_type=WalletTransactionType.TOPUP,
            idempotency_key=f"topup:{invoice.id}",
            reference_type="invoice",
            reference_id=invoice.invoice_number,
            description="Wallet top-up",
        )
        outcome = FinalizeOutcome.APPLIED_LATE if is_late else FinalizeOutcome.APPLIED
        return SettlementResult(outcome, invoice)

    if is_late:
        return await _apply_late_payment(db, invoice)

    order = await lock_order(db, invoice.order_id)
    notifications = _apply_order_payment(db, order, invoice)
    if invoice.type != InvoiceType.DEPOSIT:
        await commit_order_stock(db, order)
    return SettlementResult(FinalizeOutcome.APPLIED, invoice, notifications)


def _apply_order_payment(db: AsyncSession, order: Order, invoice: Invoice) -> list[PendingNotification]:
    order.remaining_balance = max(ledger.quantize(order.remaining_balance - invoice.amount), ZERO)
    order.payment_method = invoice.payment_method or order.payment_method

    if invoice.type == InvoiceType.DEPOSIT:
        order.deposit_paid = ledger.quantize(order.deposit_paid + invoice.amount)
        order.payment_status = (
            PaymentStatus.PAID_FULL if order.remaining_balance <= 0 else PaymentStatus.DEPOSIT_PAID
        )
        if order.status == OrderStatus.PENDING:
            order.status = OrderStatus.PRE_ORDER
        log_order(
            db,
            order.id,
            "deposit_paid",
            note=f"Deposit {invoice.amount} received ({invoice.invoice_number})",
            is_customer_visible=True,
        )
        kind = "deposit_received"
    else:
        order.payment_status = (
            PaymentStatus.PAID_FULL if invoice.type == InvoiceType.BALANCE else PaymentStatus.PAID
        )
        order.status = OrderStatus.PROCESSING
        order.fulfillment_status = FulfillmentStatus.READY_TO_SHIP
        log_order(
            db,
            order.id,
            "payment_received",
            note=f"Payment {invoice.amount} received ({invoice.invoice_number})",
            is_customer_visible=True,
        )
        kind = "payment_received"

    return [
        PendingNotification(
            kind=kind,
            dedupe_key=f"{kind}:{invoice.id}",
            payload=order_payload(order, invoice_number=invoice.invoice_number),
        )
    ]


async def commit_order_stock(db: AsyncSession, order: Order) -> None:
    """Convert the order's reservations into permanent deductions, once."""
    if order.stock_committed:
        return
    for item in order.items:
        await inventory.commit_reservation(db, item.product_id, item.quantity, order_id=order.id)
    order.stock_committed = True


async def _apply_late_payment(db: AsyncSession, invoice: Invoice) -> SettlementResult:
    """Money arrived after the order was cancelled: hold it as store credit."""
    if invoice.amount > 0:
        await wallet.credit_wallet(
            db,
            user_id=invoice.user_id,
            amount=invoice.amount,
            transaction_type=WalletTransactionType.LATE_PAYMENT_CREDIT,
            idempotency_key=f"late:{invoice.id}",
            reference_type="invoice",
            reference_id=invoice.invoice_number,
            description="Payment arrived after cancellation",
        )
        source = await ledger.resolve_invoice_credit_account(db, invoice.type)
        wallet_liability = await ledger.resolve_account(db, ledger.WALLET_LIABILITY)
        await ledger.post_journal(
            db,
            reference_id=invoice.invoice_number,
            reference_type="late_payment_credit",
            description=f"Late payment for {invoice.invoice_number} held as store credit",
            lines=[
                ledger.debit(source, invoice.amount),
                ledger.credit(wallet_liability, invoice.amount),
            ],
        )

    notifications = []
    if invoice.order_id:
        order = await lock_order(db, invoice.order_id)
        log_order(
            db,
            order.id,
            "late_payment_refunded",
            note="Payment arrived after cancellation; amount credited to wallet",
            is_customer_visible=True,
        )
        notifications.append(
            PendingNotification(
                kind="late_payment_credited",
                dedupe_key=f"late_payment_credited:{invoice.id}",
                payload=order_payload(order, amount=str(invoice.amount)),
            )
        )

    logger.warning(
        "Late payment on %s credited to wallet of %s",
        invoice.invoice_number,
        invoice.user_id,
    )
    return SettlementResult(FinalizeOutcome.APPLIED_LATE, invoice, notifications)


async def mark_invoice_paid_manually(
    db: AsyncSession, invoice_id: uuid.UUID, *, admin: str
) -> SettlementResult:
    """Admin confirmation of an off-gateway payment (bank transfer etc.)."""
    invoice = await get_invoice(db, invoice_id)
    result = await settle_invoice(
        db,
        invoice,
        payment_method=PaymentMethod.MANUAL,
        reference=MANUAL_ADMIN_REFERENCE,
    )
    if result.applied and invoice.order_id:
        log_order(db, invoice.order_id, "invoice_marked_paid", actor=admin, note=invoice.invoice_number)
    await db.commit()
    return result
