"""Expiration Sweep.

Ages out payment windows nobody acted on. Runs hourly from the worker and on
demand from the admin API. Every invoice is handled in its own session and
transaction, so one failure is counted and logged without blocking the rest.
"""

import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.commerce_service.dispatch import BackgroundDispatcher
from services.commerce_service.models import (
    TERMINAL_ORDER_STATUSES,
    Invoice,
    InvoiceStatus,
    InvoiceType,
    Order,
)
from services.commerce_service.services import invoices
from services.commerce_service.services import orders as order_service
from services.commerce_service.services._helpers import SYSTEM_ACTOR, lock_order, order_payload
from services.commerce_service.services.notifications import (
    PendingNotification,
    dispatch_notifications,
)
from services.commerce_service.services.settings_lookup import SettingsLookup
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger(__name__)

EXPIRING_TYPES = (InvoiceType.FULL, InvoiceType.TOPUP)

# (stage, earliest hours before due, latest hours before due, stages already sent)
BALANCE_REMINDER_STAGES = (
    ("h3", 60, 84, (None,)),
    ("h1", 12, 36, (None, "h3")),
)


@dataclass
class SweepReport:
    expired_invoices: int = 0
    cancelled_orders: int = 0
    reminders_sent: int = 0
    balance_reminders_sent: int = 0
    forfeited_orders: int = 0
    failures: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


async def _ids(db: AsyncSession, query) -> list[uuid.UUID]:
    result = await db.execute(query)
    return list(result.scalars().all())


async def _reminder_payload(db: AsyncSession, invoice: Invoice, **extra) -> dict:
    base = {
        "invoice_number": invoice.invoice_number,
        "amount_due": str(invoice.amount),
        "due_date": invoice.due_date.isoformat() if invoice.due_date else None,
        **extra,
    }
    if invoice.order_id:
        order = await db.get(Order, invoice.order_id)
        if order is not None:
            return order_payload(order, **base)
    return base


async def _expire_invoice(
    session_factory: async_sessionmaker,
    invoice_id: uuid.UUID,
    report: SweepReport,
    dispatcher: Optional[BackgroundDispatcher],
) -> None:
    async with session_factory() as db:
        try:
            moved = await invoices.guarded_transition(
                db, invoice_id, InvoiceStatus.UNPAID, InvoiceStatus.EXPIRED
            )
            if not moved:
                await db.rollback()
                return

            invoice = await invoices.get_invoice(db, invoice_id)
            after = None
            if invoice.order_id:
                order = await lock_order(db, invoice.order_id)
                if order.status not in TERMINAL_ORDER_STATUSES and order.is_cancellable:
                    after = await order_service.cancel_locked(
                        db,
                        order,
                        reason=f"Payment window for {invoice.invoice_number} expired",
                        actor=SYSTEM_ACTOR,
                    )
            await db.commit()
        except Exception:
            await db.rollback()
            report.failures += 1
            logger.exception("Failed to expire invoice %s", invoice_id)
            return

    report.expired_invoices += 1
    if after is not None:
        report.cancelled_orders += 1
        await after.run(dispatcher)
    logger.info("Expired invoice %s", invoice.invoice_number)


async def _send_payment_reminder(
    session_factory: async_sessionmaker,
    invoice_id: uuid.UUID,
    now: datetime,
    report: SweepReport,
    dispatcher: Optional[BackgroundDispatcher],
) -> None:
    async with session_factory() as db:
        try:
            result = await db.execute(
                update(Invoice)
                .where(
                    Invoice.id == invoice_id,
                    Invoice.status == InvoiceStatus.UNPAID,
                    Invoice.reminder_sent_at.is_(None),
                )
                .values(reminder_sent_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                return
            invoice = await invoices.get_invoice(db, invoice_id)
            payload = await _reminder_payload(db, invoice)
            await db.commit()
        except Exception:
            await db.rollback()
            report.failures += 1
            logger.exception("Failed to send reminder for invoice %s", invoice_id)
            return

    report.reminders_sent += 1
    await dispatch_notifications(
        dispatcher,
        [PendingNotification("payment_reminder", f"payment_reminder:{invoice_id}", payload)],
    )


async def _send_balance_reminder(
    session_factory: async_sessionmaker,
    invoice_id: uuid.UUID,
    stage: str,
    allowed_prior: tuple,
    report: SweepReport,
    dispatcher: Optional[BackgroundDispatcher],
) -> None:
    prior_filter = [
        Invoice.reminder_stage.is_(None) if prior is None else Invoice.reminder_stage == prior
        for prior in allowed_prior
    ]
    async with session_factory() as db:
        try:
            result = await db.execute(
                update(Invoice)
                .where(
                    Invoice.id == invoice_id,
                    Invoice.status == InvoiceStatus.UNPAID,
                    or_(*prior_filter),
                )
                .values(reminder_stage=stage, reminder_sent_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                return
            invoice = await invoices.get_invoice(db, invoice_id)
            payload = await _reminder_payload(db, invoice, stage=stage)
            await db.commit()
        except Exception:
            await db.rollback()
            report.failures += 1
            logger.exception("Failed to send %s balance reminder for %s", stage, invoice_id)
            return

    report.balance_reminders_sent += 1
    await dispatch_notifications(
        dispatcher,
        [PendingNotification("balance_reminder", f"balance_reminder:{stage}:{invoice_id}", payload)],
    )


async def _forfeit_overdue_balance(
    session_factory: async_sessionmaker,
    invoice_id: uuid.UUID,
    report: SweepReport,
    dispatcher: Optional[BackgroundDispatcher],
) -> None:
    async with session_factory() as db:
        try:
            # claim the invoice first so a concurrent payment becomes a late one
            moved = await invoices.guarded_transition(
                db, invoice_id, InvoiceStatus.UNPAID, InvoiceStatus.EXPIRED
            )
            if not moved:
                await db.rollback()
                return

            invoice = await invoices.get_invoice(db, invoice_id)
            order = await lock_order(db, invoice.order_id)
            after = None
            if order.status not in TERMINAL_ORDER_STATUSES:
                after = await order_service.forfeit_locked(
                    db,
                    order,
                    actor=SYSTEM_ACTOR,
                    reason=f"Balance {invoice.invoice_number} overdue; deposit forfeited",
                )
            await db.commit()
        except Exception:
            await db.rollback()
            report.failures += 1
            logger.exception("Failed to forfeit overdue balance invoice %s", invoice_id)
            return

    report.expired_invoices += 1
    if after is not None:
        report.forfeited_orders += 1
        report.cancelled_orders += 1
        logger.warning(
            "Forfeited deposit on order %s (invoice %s overdue)",
            order.order_number,
            invoice.invoice_number,
        )
        await after.run(dispatcher)


async def run_expiration_sweep(
    session_factory: async_sessionmaker,
    settings_lookup: SettingsLookup,
    dispatcher: Optional[BackgroundDispatcher] = None,
    *,
    now: Optional[datetime] = None,
) -> SweepReport:
    now = now or utc_now()
    report = SweepReport()

    async with session_factory() as db:
        ttl_hours = await settings_lookup.invoice_ttl_hours(db)
        reminder_after = await settings_lookup.reminder_after_hours(db)
        expiry_cutoff = now - timedelta(hours=ttl_hours)
        reminder_cutoff = now - timedelta(hours=reminder_after)

        expiring = await _ids(
            db,
            select(Invoice.id).where(
                Invoice.type.in_(EXPIRING_TYPES),
                Invoice.status == InvoiceStatus.UNPAID,
                Invoice.created_at < expiry_cutoff,
            ),
        )
        reminders = await _ids(
            db,
            select(Invoice.id).where(
                Invoice.type.in_(EXPIRING_TYPES),
                Invoice.status == InvoiceStatus.UNPAID,
                Invoice.reminder_sent_at.is_(None),
                Invoice.created_at <= reminder_cutoff,
                Invoice.created_at >= expiry_cutoff,
            ),
        )
        balance_stages = []
        for stage, earliest, latest, allowed_prior in BALANCE_REMINDER_STAGES:
            ids = await _ids(
                db,
                select(Invoice.id).where(
                    Invoice.type == InvoiceType.BALANCE,
                    Invoice.status == InvoiceStatus.UNPAID,
                    Invoice.due_date >= now + timedelta(hours=earliest),
                    Invoice.due_date <= now + timedelta(hours=latest),
                ),
            )
            balance_stages.extend((invoice_id, stage, allowed_prior) for invoice_id in ids)
        # a pre-order whose deposit was never paid holds its reservation until the deposit is due
        expiring += await _ids(
            db,
            select(Invoice.id).where(
                Invoice.type == InvoiceType.DEPOSIT,
                Invoice.status == InvoiceStatus.UNPAID,
                Invoice.due_date < now,
            ),
        )
        overdue = await _ids(
            db,
            select(Invoice.id).where(
                Invoice.type == InvoiceType.BALANCE,
                Invoice.status == InvoiceStatus.UNPAID,
                Invoice.due_date < now,
            ),
        )

    for invoice_id in expiring:
        await _expire_invoice(session_factory, invoice_id, report, dispatcher)
    for invoice_id in reminders:
        await _send_payment_reminder(session_factory, invoice_id, now, report, dispatcher)
    for invoice_id, stage, allowed_prior in balance_stages:
        await _send_balance_reminder(
            session_factory, invoice_id, stage, allowed_prior, report, dispatcher
        )
    for invoice_id in overdue:
        await _forfeit_overdue_balance(session_factory, invoice_id, report, dispatcher)

    logger.info(
        "Expiration sweep finished",
        extra={"extra_fields": report.as_dict()},
    )
    return report
