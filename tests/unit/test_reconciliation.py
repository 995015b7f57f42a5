"""Unit tests for gateway reconciliation and invoice payment entry points."""

from datetime import timedelta
from decimal import Decimal

import pytest
from libs.common.datetime_utils import utc_now
from services.commerce_service.errors import (
    BusinessRuleViolation,
    ExternalGatewayError,
    InsufficientWalletBalanceError,
    InvoiceAlreadyPaidError,
    NotFoundError,
)
from services.commerce_service.models import (
    InvoiceStatus,
    Order,
    PaymentStatus,
    PaymentTransaction,
    TransactionStatus,
    WalletTransactionType,
)
from services.commerce_service.services import invoices, ledger, orders, reconciliation, wallet
from sqlalchemy import select
from tests.factories import checkout_request, unique_user_id


async def _ready_order(db, make_product, settings_lookup, **checkout):
    item = await make_product()
    return await orders.create_order(
        db, checkout_request([(item, 1)], **checkout), settings_lookup=settings_lookup
    )


async def _attempts(db, invoice_id) -> list[PaymentTransaction]:
    result = await db.execute(
        select(PaymentTransaction)
        .where(PaymentTransaction.invoice_id == invoice_id)
        .order_by(PaymentTransaction.created_at)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def _fund_wallet(db, user_id, amount):
    await wallet.credit_wallet(
        db,
        user_id=user_id,
        amount=Decimal(amount),
        transaction_type=WalletTransactionType.ADJUSTMENT,
        idempotency_key=f"fund:{user_id}",
    )
    await db.commit()


@pytest.mark.unit
def test_merchant_ref_format():
    reference = reconciliation.generate_merchant_ref()
    assert len(reference) == 24
    assert reference.startswith("MR")
    assert reference[-6:].isdigit()
    assert reference != reconciliation.generate_merchant_ref()


# ---------------------------------------------------------------------------
# submit_payment
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_submit_payment_opens_pending_attempt(db_session, make_product, settings_lookup, fake_gateway):
    _, opened = await _ready_order(db_session, make_product, settings_lookup)

    txn = await reconciliation.submit_payment(db_session, opened[0].id, gateway=fake_gateway)

    assert txn.status == TransactionStatus.PENDING
    assert txn.amount == Decimal("100000")
    assert txn.gateway_ref == f"GW-{txn.merchant_ref_no}"
    assert txn.payment_url.startswith("https://pay.test/")
    assert fake_gateway.submitted[0]["invoice_number"] == opened[0].invoice_number
    assert fake_gateway.submitted[0]["customer_email"] == "buyer@test.com"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_submit_payment_gateway_error_keeps_attempt(db_session, make_product, settings_lookup, fake_gateway):
    _, opened = await _ready_order(db_session, make_product, settings_lookup)
    fake_gateway.error = ExternalGatewayError("Gateway timeout", status_code=504)

    with pytest.raises(ExternalGatewayError):
        await reconciliation.submit_payment(db_session, opened[0].id, gateway=fake_gateway)

    [txn] = await _attempts(db_session, opened[0].id)
    assert txn.status == TransactionStatus.PENDING
    assert txn.error_message == "Gateway timeout"
    assert (await invoices.get_invoice(db_session, opened[0].id)).status == InvoiceStatus.UNPAID


@pytest.mark.asyncio
@pytest.mark.unit
async def test_submit_payment_rejects_paid_invoice(db_session, make_product, settings_lookup, fake_gateway):
    _, opened = await _ready_order(db_session, make_product, settings_lookup)
    await invoices.mark_invoice_paid_manually(db_session, opened[0].id, admin="ops")

    with pytest.raises(InvoiceAlreadyPaidError):
        await reconciliation.submit_payment(db_session, opened[0].id, gateway=fake_gateway)


# ---------------------------------------------------------------------------
# process_gateway_status
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_settled_status_by_merchant_ref(db_session, make_product, settings_lookup, fake_gateway, dispatcher):
    order, opened = await _ready_order(db_session, make_product, settings_lookup)
    txn = await reconciliation.submit_payment(db_session, opened[0].id, gateway=fake_gateway)

    outcome = await reconciliation.process_gateway_status(
        db_session,
        txn.merchant_ref_no,
        "SETLD",
        gateway_ref=txn.gateway_ref,
        raw={"transaction_status": "SETLD"},
        dispatcher=dispatcher,
    )
    replay = await reconciliation.process_gateway_status(
        db_session, txn.merchant_ref_no, "SETLD", gateway_ref=txn.gateway_ref
    )

    assert outcome == "applied"
    assert replay == "already_processed"
    [attempt] = await _attempts(db_session, opened[0].id)
    assert attempt.status == TransactionStatus.SUCCESS
    invoice = await invoices.get_invoice(db_session, opened[0].id)
    assert invoice.status == InvoiceStatus.PAID
    assert invoice.payment_reference == txn.gateway_ref
    assert dispatcher.notification_kinds() == ["payment_received"]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_gateway_ref_resolves_invoice(db_session, make_product, settings_lookup, fake_gateway):
    _, opened = await _ready_order(db_session, make_product, settings_lookup)
    txn = await reconciliation.submit_payment(db_session, opened[0].id, gateway=fake_gateway)

    outcome = await reconciliation.process_gateway_status(db_session, txn.gateway_ref, "00")

    assert outcome == "applied"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_rejected_status_fails_invoice_and_retry_reopens(
    db_session, make_product, settings_lookup, fake_gateway
):
    order, opened = await _ready_order(db_session, make_product, settings_lookup)
    txn = await reconciliation.submit_payment(db_session, opened[0].id, gateway=fake_gateway)

    outcome = await reconciliation.process_gateway_status(db_session, txn.merchant_ref_no, "REJEC")

    assert outcome == "failed"
    assert (await invoices.get_invoice(db_session, opened[0].id)).status == InvoiceStatus.FAILED
    order = await db_session.get(Order, order.id, populate_existing=True)
    assert order.payment_status == PaymentStatus.FAILED

    retry = await reconciliation.submit_payment(db_session, opened[0].id, gateway=fake_gateway)

    assert retry.merchant_ref_no != txn.merchant_ref_no
    assert (await invoices.get_invoice(db_session, opened[0].id)).status == InvoiceStatus.UNPAID
    statuses = [attempt.status for attempt in await _attempts(db_session, opened[0].id)]
    assert statuses == [TransactionStatus.FAILED, TransactionStatus.PENDING]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_pending_status_changes_nothing(db_session, make_product, settings_lookup, fake_gateway):
    _, opened = await _ready_order(db_session, make_product, settings_lookup)
    txn = await reconciliation.submit_payment(db_session, opened[0].id, gateway=fake_gateway)

    assert await reconciliation.process_gateway_status(db_session, txn.merchant_ref_no, "PENDING") == "pending"
    assert (await invoices.get_invoice(db_session, opened[0].id)).status == InvoiceStatus.UNPAID


@pytest.mark.asyncio
@pytest.mark.unit
async def test_settlement_for_unknown_reference(db_session):
    with pytest.raises(NotFoundError):
        await reconciliation.apply_settlement(db_session, "MR-DOES-NOT-EXIST")


# ---------------------------------------------------------------------------
# check_invoice_status
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_check_invoice_status_settles_from_inquiry(db_session, make_product, settings_lookup, fake_gateway):
    _, opened = await _ready_order(db_session, make_product, settings_lookup)
    txn = await reconciliation.submit_payment(db_session, opened[0].id, gateway=fake_gateway)
    fake_gateway.statuses[txn.merchant_ref_no] = "SETLD"

    invoice = await reconciliation.check_invoice_status(db_session, opened[0].id, gateway=fake_gateway)

    assert invoice.status == InvoiceStatus.PAID
    assert fake_gateway.inquiries == [txn.merchant_ref_no]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_check_invoice_status_survives_gateway_outage(db_session, make_product, settings_lookup, fake_gateway):
    _, opened = await _ready_order(db_session, make_product, settings_lookup)
    await reconciliation.submit_payment(db_session, opened[0].id, gateway=fake_gateway)
    fake_gateway.error = ExternalGatewayError("Gateway unavailable", status_code=503)

    invoice = await reconciliation.check_invoice_status(db_session, opened[0].id, gateway=fake_gateway)

    assert invoice.status == InvoiceStatus.UNPAID


@pytest.mark.asyncio
@pytest.mark.unit
async def test_check_invoice_status_without_attempt_skips_gateway(
    db_session, make_product, settings_lookup, fake_gateway
):
    _, opened = await _ready_order(db_session, make_product, settings_lookup)

    invoice = await reconciliation.check_invoice_status(db_session, opened[0].id, gateway=fake_gateway)

    assert invoice.status == InvoiceStatus.UNPAID
    assert fake_gateway.inquiries == []


# ---------------------------------------------------------------------------
# pay_with_wallet
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_pay_with_wallet(db_session, make_product, settings_lookup, dispatcher):
    user_id = unique_user_id()
    order, opened = await _ready_order(db_session, make_product, settings_lookup, user_id=user_id)
    await _fund_wallet(db_session, user_id, "120000")

    result = await reconciliation.pay_with_wallet(
        db_session, opened[0].id, user_id=user_id, dispatcher=dispatcher
    )

    assert result.applied
    assert result.invoice.status == InvoiceStatus.PAID
    assert await wallet.wallet_balance(db_session, user_id) == Decimal("20000")
    [attempt] = await _attempts(db_session, opened[0].id)
    assert attempt.status == TransactionStatus.SUCCESS
    assert attempt.gateway_ref == f"WALLET-{opened[0].invoice_number}"
    assert await ledger.account_balance(db_session, ledger.RETAIL_REVENUE) == Decimal("100000")
    assert await ledger.account_balance(db_session, ledger.PRIMARY_BANK) == Decimal("0")
    assert dispatcher.notification_kinds() == ["payment_received"]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_pay_with_wallet_insufficient_balance_changes_nothing(db_session, make_product, settings_lookup):
    user_id = unique_user_id()
    _, opened = await _ready_order(db_session, make_product, settings_lookup, user_id=user_id)
    await _fund_wallet(db_session, user_id, "99999")
    invoice_id = opened[0].id

    with pytest.raises(InsufficientWalletBalanceError):
        await reconciliation.pay_with_wallet(db_session, invoice_id, user_id=user_id)

    assert await wallet.wallet_balance(db_session, user_id) == Decimal("99999")
    assert (await invoices.get_invoice(db_session, invoice_id)).status == InvoiceStatus.UNPAID
    assert await _attempts(db_session, invoice_id) == []


@pytest.mark.asyncio
@pytest.mark.unit
async def test_pay_with_wallet_rejects_foreign_and_topup_invoices(db_session, make_product, settings_lookup):
    _, opened = await _ready_order(db_session, make_product, settings_lookup)
    topup = await invoices.create_topup_invoice(db_session, user_id="buyer-2", amount=Decimal("1000"))
    order_invoice_id, topup_id = opened[0].id, topup.id

    with pytest.raises(BusinessRuleViolation):
        await reconciliation.pay_with_wallet(db_session, order_invoice_id, user_id="someone-else")
    with pytest.raises(BusinessRuleViolation):
        await reconciliation.pay_with_wallet(db_session, topup_id, user_id="buyer-2")


# ---------------------------------------------------------------------------
# reconcile_pending_transactions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_reconciler_settles_stale_attempts(
    session_factory, chart_of_accounts, make_product, settings_lookup, fake_gateway
):
    settled_item = await make_product()
    failed_item = await make_product()
    refs = []
    async with session_factory() as db:
        for item in (settled_item, failed_item):
            _, opened = await orders.create_order(
                db, checkout_request([(item, 1)]), settings_lookup=settings_lookup
            )
            txn = await reconciliation.submit_payment(db, opened[0].id, gateway=fake_gateway)
            txn.created_at = utc_now() - timedelta(minutes=30)
            await db.commit()
            refs.append(txn.merchant_ref_no)
        # fresh attempt, younger than the cutoff
        _, opened = await orders.create_order(
            db, checkout_request([(settled_item, 1)]), settings_lookup=settings_lookup
        )
        await reconciliation.submit_payment(db, opened[0].id, gateway=fake_gateway)

    fake_gateway.statuses = {refs[0]: "SETLD", refs[1]: "REJEC"}

    report = await reconciliation.reconcile_pending_transactions(
        session_factory, fake_gateway, older_than_minutes=10
    )

    assert (report.checked, report.settled, report.failed, report.errors) == (2, 1, 1, 0)
    assert sorted(fake_gateway.inquiries) == sorted(refs)
