"""Unit tests for the order state machine.

Each test drives one order through its lifecycle on a single session and
checks order state, stock and ledger balances along the way.
"""

import asyncio
import json
import uuid
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest
from libs.common.datetime_utils import ensure_utc, utc_now
from pydantic import ValidationError
from services.commerce_service.errors import (
    BusinessRuleViolation,
    InvalidTransitionError,
    NotFoundError,
    SoldOutError,
    VoucherError,
)
from services.commerce_service.models import (
    SOURCE_POS,
    FulfillmentStatus,
    InvoiceStatus,
    InvoiceType,
    JournalLine,
    OrderLog,
    OrderStatus,
    PaymentStatus,
    PaymentTransaction,
    Product,
    TransactionKind,
    WalletTransactionType,
)
from services.commerce_service.schemas import FixedDeposit, PercentDeposit, PosOrderRequest
from services.commerce_service.services import invoices, ledger, orders, reconciliation, wallet
from services.commerce_service.services.invoices import FinalizeOutcome
from services.commerce_service.shipping_client import ShippingClient
from sqlalchemy import func, select
from tests.factories import VoucherFactory, checkout_request, unique_user_id

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _of_type(invoices, invoice_type):
    return next(inv for inv in invoices if inv.type == invoice_type)


async def _settle(db, invoice, dispatcher=None):
    return await reconciliation.apply_settlement(
        db, invoice.invoice_number, gateway_ref=f"GW-{invoice.invoice_number}", dispatcher=dispatcher
    )


async def _status(db, invoice) -> InvoiceStatus:
    return (await invoices.get_invoice(db, invoice.id)).status


async def _product(db, product_id) -> Product:
    return await db.get(Product, product_id, populate_existing=True)


async def _balance(db, key) -> Decimal:
    return await ledger.account_balance(db, key)


async def _assert_ledger_balanced(db):
    totals = await db.execute(select(func.sum(JournalLine.debit), func.sum(JournalLine.credit)))
    total_debit, total_credit = totals.one()
    assert Decimal(total_debit or 0) == Decimal(total_credit or 0)


async def _actions(db, order_id) -> list[str]:
    result = await db.execute(
        select(OrderLog.action).where(OrderLog.order_id == order_id).order_by(OrderLog.created_at)
    )
    return list(result.scalars().all())


async def _pre_order_with_deposit_paid(db, make_product, settings_lookup, dispatcher=None, **product):
    item = await make_product(pre_order=True, **product)
    order, opened = await orders.create_order(
        db, checkout_request([(item, 1)]), settings_lookup=settings_lookup, dispatcher=dispatcher
    )
    await _settle(db, _of_type(opened, InvoiceType.DEPOSIT), dispatcher)
    return item, order, opened


# ---------------------------------------------------------------------------
# calculate_deposit
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_calculate_deposit_uses_default_percentage():
    deposit = orders.calculate_deposit(
        Decimal("1000000"), config=None, quantity=1, default_percentage=Decimal("30")
    )
    assert deposit == Decimal("300000.00")


@pytest.mark.unit
def test_calculate_deposit_percent_config_rounds_half_up():
    deposit = orders.calculate_deposit(
        Decimal("333.35"),
        config=PercentDeposit(deposit_value=Decimal("10")),
        quantity=1,
        default_percentage=Decimal("30"),
    )
    assert deposit == Decimal("33.34")


@pytest.mark.unit
def test_calculate_deposit_fixed_per_unit():
    deposit = orders.calculate_deposit(
        Decimal("2000000"),
        config=FixedDeposit(deposit_value=Decimal("250000")),
        quantity=2,
        default_percentage=Decimal("30"),
    )
    assert deposit == Decimal("500000.00")


@pytest.mark.unit
def test_calculate_deposit_fixed_falls_back_to_bare_value_then_percentage():
    # value x qty reaches the total, the bare value does not
    bare = orders.calculate_deposit(
        Decimal("500000"),
        config=FixedDeposit(deposit_value=Decimal("300000")),
        quantity=2,
        default_percentage=Decimal("30"),
    )
    assert bare == Decimal("300000.00")

    # neither fits: global percentage
    fallback = orders.calculate_deposit(
        Decimal("100000"),
        config=FixedDeposit(deposit_value=Decimal("150000")),
        quantity=1,
        default_percentage=Decimal("30"),
    )
    assert fallback == Decimal("30000.00")


@pytest.mark.unit
def test_calculate_deposit_zero_total():
    assert orders.calculate_deposit(
        Decimal("0"), config=None, quantity=1, default_percentage=Decimal("30")
    ) == Decimal("0")


# ---------------------------------------------------------------------------
# create_order
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_create_ready_order_with_voucher(db_session, make_product, settings_lookup, dispatcher):
    item = await make_product(price=Decimal("100000"), stock=5)
    voucher = VoucherFactory.create(code="HEMAT10", value=Decimal("10"))
    db_session.add(voucher)
    await db_session.commit()

    order, opened = await orders.create_order(
        db_session,
        checkout_request([(item, 2)], shipping_cost="15000", voucher_code="hemat10"),
        settings_lookup=settings_lookup,
        dispatcher=dispatcher,
    )

    assert order.status == OrderStatus.PENDING
    assert order.subtotal == Decimal("200000")
    assert order.discount_amount == Decimal("20000")
    assert order.total == Decimal("195000")
    assert order.remaining_balance == order.total
    assert order.voucher_code == "HEMAT10"
    assert not order.is_pre_order

    assert len(opened) == 1
    full = opened[0]
    assert full.type == InvoiceType.FULL
    assert full.amount == Decimal("195000")
    assert full.status == InvoiceStatus.UNPAID

    product = await _product(db_session, item.id)
    assert product.reserved_qty == 2
    assert product.stock == 5
    assert dispatcher.notification_kinds() == ["order_created"]

    await db_session.refresh(voucher)
    assert voucher.used_count == 1


@pytest.mark.asyncio
@pytest.mark.unit
async def test_create_pre_order_opens_deposit_and_dormant_balance(db_session, make_product, settings_lookup):
    item = await make_product(pre_order=True)

    order, opened = await orders.create_order(
        db_session, checkout_request([(item, 1)]), settings_lookup=settings_lookup
    )

    assert order.is_pre_order
    deposit = _of_type(opened, InvoiceType.DEPOSIT)
    balance = _of_type(opened, InvoiceType.BALANCE)
    assert deposit.amount == Decimal("300000")
    assert deposit.status == InvoiceStatus.UNPAID
    assert balance.amount == Decimal("700000")
    assert balance.status == InvoiceStatus.PENDING_ARRIVAL
    assert balance.due_date is None


@pytest.mark.asyncio
@pytest.mark.unit
async def test_full_deposit_pre_order_has_no_balance_invoice(db_session, make_product, settings_lookup):
    item = await make_product(
        pre_order=True, pre_order_config={"deposit_type": "percent", "deposit_value": "100"}
    )

    _, opened = await orders.create_order(
        db_session, checkout_request([(item, 1)]), settings_lookup=settings_lookup
    )

    assert [inv.type for inv in opened] == [InvoiceType.DEPOSIT]
    assert opened[0].amount == Decimal("1000000")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_create_order_sold_out_rolls_back_every_line(db_session, make_product, settings_lookup):
    plenty = await make_product(stock=10)
    scarce = await make_product(stock=1)

    with pytest.raises(SoldOutError) as exc_info:
        await orders.create_order(
            db_session,
            checkout_request([(plenty, 3), (scarce, 2)]),
            settings_lookup=settings_lookup,
        )

    assert exc_info.value.product_id == scarce.id
    assert (await _product(db_session, plenty.id)).reserved_qty == 0
    assert (await _product(db_session, scarce.id)).reserved_qty == 0


@pytest.mark.asyncio
@pytest.mark.unit
async def test_create_order_with_invalid_voucher_reserves_nothing(db_session, make_product, settings_lookup):
    item = await make_product(stock=3)

    with pytest.raises(VoucherError):
        await orders.create_order(
            db_session,
            checkout_request([(item, 1)], voucher_code="NOPE"),
            settings_lookup=settings_lookup,
        )

    assert (await _product(db_session, item.id)).reserved_qty == 0


@pytest.mark.asyncio
@pytest.mark.unit
async def test_create_order_unknown_product(db_session, make_product, settings_lookup):
    item = await make_product(is_active=False)

    with pytest.raises(NotFoundError):
        await orders.create_order(
            db_session, checkout_request([(item, 1)]), settings_lookup=settings_lookup
        )


@pytest.mark.asyncio
@pytest.mark.unit
async def test_simultaneous_checkouts_for_last_unit(
    session_factory, chart_of_accounts, make_product, settings_lookup
):
    item = await make_product(stock=1)

    async def checkout():
        async with session_factory() as db:
            try:
                await orders.create_order(
                    db, checkout_request([(item, 1)]), settings_lookup=settings_lookup
                )
            except SoldOutError:
                return "sold_out"
            return "ok"

    outcomes = await asyncio.gather(*(checkout() for _ in range(5)))

    assert sorted(outcomes) == ["ok"] + ["sold_out"] * 4
    async with session_factory() as db:
        product = await _product(db, item.id)
        assert (product.stock, product.reserved_qty) == (1, 1)


# ---------------------------------------------------------------------------
# Pre-order lifecycle
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_pre_order_full_lifecycle(db_session, make_product, settings_lookup, dispatcher):
    item, order, opened = await _pre_order_with_deposit_paid(
        db_session, make_product, settings_lookup, dispatcher
    )

    # Deposit paid: held as a liability
    order = await orders.get_order_detail(db_session, order.id)
    assert order.status == OrderStatus.PRE_ORDER
    assert order.payment_status == PaymentStatus.DEPOSIT_PAID
    assert order.deposit_paid == Decimal("300000")
    assert order.remaining_balance == Decimal("700000")
    assert await _balance(db_session, ledger.CUSTOMER_DEPOSIT) == Decimal("300000")
    assert (await _product(db_session, item.id)).reserved_qty == 1

    # Goods arrive: balance invoice opens
    order = await orders.mark_arrived(
        db_session, order.id, settings_lookup=settings_lookup, dispatcher=dispatcher
    )
    balance = _of_type(order.invoices, InvoiceType.BALANCE)
    assert order.status == OrderStatus.PAYMENT_DUE
    assert order.payment_status == PaymentStatus.BALANCE_DUE
    assert balance.status == InvoiceStatus.UNPAID
    due_in = ensure_utc(balance.due_date) - utc_now()
    assert timedelta(days=6, hours=23) < due_in <= timedelta(days=7)

    # Balance paid: ready to ship, stock committed
    await _settle(db_session, balance, dispatcher)
    order = await orders.get_order_detail(db_session, order.id)
    assert order.status == OrderStatus.PROCESSING
    assert order.payment_status == PaymentStatus.PAID_FULL
    assert order.fulfillment_status == FulfillmentStatus.READY_TO_SHIP
    assert order.remaining_balance == Decimal("0")
    product = await _product(db_session, item.id)
    assert (product.stock, product.reserved_qty) == (4, 0)

    # Ship: deposit recognized as revenue, COGS booked
    order = await orders.ship_order(
        db_session, order.id, courier="jne", tracking_number="JNE123", dispatcher=dispatcher
    )
    assert order.status == OrderStatus.SHIPPED
    assert order.fulfillment_status == FulfillmentStatus.SHIPPED
    assert await _balance(db_session, ledger.CUSTOMER_DEPOSIT) == Decimal("0")
    assert await _balance(db_session, ledger.PO_REVENUE) == Decimal("1000000")
    assert await _balance(db_session, ledger.PRIMARY_BANK) == Decimal("1000000")
    assert await _balance(db_session, ledger.COGS_EXPENSE) == Decimal("650000")
    assert await _balance(db_session, ledger.INVENTORY_ASSET) == Decimal("-650000")

    order = await orders.confirm_delivery(db_session, order.id, dispatcher=dispatcher)
    assert order.status == OrderStatus.COMPLETED
    assert order.fulfillment_status == FulfillmentStatus.DELIVERED

    await _assert_ledger_balanced(db_session)
    assert dispatcher.notification_kinds() == [
        "order_created",
        "deposit_received",
        "balance_due",
        "payment_received",
        "order_shipped",
        "order_delivered",
    ]
    assert "task_create_shipment" in dispatcher.job_names()
    assert await _actions(db_session, order.id) == [
        "order_created",
        "deposit_paid",
        "goods_arrived",
        "payment_received",
        "shipped",
        "delivered",
    ]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_mark_arrived_applies_final_shipping_cost(db_session, make_product, settings_lookup):
    _, order, _ = await _pre_order_with_deposit_paid(db_session, make_product, settings_lookup)

    order = await orders.mark_arrived(
        db_session, order.id, settings_lookup=settings_lookup, final_shipping_cost=Decimal("20000")
    )

    balance = _of_type(order.invoices, InvoiceType.BALANCE)
    assert order.shipping_cost == Decimal("20000")
    assert order.total == Decimal("1020000")
    assert order.remaining_balance == Decimal("720000")
    assert balance.amount == Decimal("720000")


def _rates_client(handler) -> ShippingClient:
    return ShippingClient(
        base_url="https://ship.test", api_key="ship-key", transport=httpx.MockTransport(handler)
    )


@pytest.mark.asyncio
@pytest.mark.unit
async def test_mark_arrived_quotes_shipping_from_item_weight(db_session, make_product, settings_lookup):
    _, order, _ = await _pre_order_with_deposit_paid(db_session, make_product, settings_lookup)
    requests = []

    def handler(request):
        requests.append(json.loads(request.content))
        return httpx.Response(200, json={"pricing": [{"courier_code": "jne", "price": 25000}]})

    order = await orders.mark_arrived(
        db_session, order.id, settings_lookup=settings_lookup, shipping=_rates_client(handler)
    )

    [body] = requests
    assert body["destination_postal_code"] == "40111"
    assert body["couriers"] == "jne"
    # 500g item billed at the one kilogram minimum
    assert body["items"][0]["weight"] == 1000
    balance = _of_type(order.invoices, InvoiceType.BALANCE)
    assert order.shipping_cost == Decimal("25000")
    assert order.remaining_balance == Decimal("725000")
    assert balance.amount == Decimal("725000")
    assert balance.status == InvoiceStatus.UNPAID


@pytest.mark.asyncio
@pytest.mark.unit
async def test_mark_arrived_keeps_shipping_cost_when_quote_fails(db_session, make_product, settings_lookup):
    _, order, _ = await _pre_order_with_deposit_paid(db_session, make_product, settings_lookup)

    def handler(request):
        return httpx.Response(503, json={"message": "Rates unavailable"})

    order = await orders.mark_arrived(
        db_session, order.id, settings_lookup=settings_lookup, shipping=_rates_client(handler)
    )

    assert order.status == OrderStatus.PAYMENT_DUE
    assert order.shipping_cost == Decimal("0")
    assert _of_type(order.invoices, InvoiceType.BALANCE).amount == Decimal("700000")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_mark_arrived_explicit_cost_skips_quote(db_session, make_product, settings_lookup):
    _, order, _ = await _pre_order_with_deposit_paid(db_session, make_product, settings_lookup)

    def handler(request):
        raise AssertionError("no rate request expected")

    order = await orders.mark_arrived(
        db_session,
        order.id,
        settings_lookup=settings_lookup,
        final_shipping_cost=Decimal("15000"),
        shipping=_rates_client(handler),
    )

    assert order.remaining_balance == Decimal("715000")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_mark_arrived_uses_product_due_days(db_session, make_product, settings_lookup):
    _, order, _ = await _pre_order_with_deposit_paid(
        db_session,
        make_product,
        settings_lookup,
        pre_order_config={"deposit_type": "percent", "deposit_value": "30", "balance_due_days": 3},
    )

    order = await orders.mark_arrived(db_session, order.id, settings_lookup=settings_lookup)

    balance = _of_type(order.invoices, InvoiceType.BALANCE)
    due_in = ensure_utc(balance.due_date) - utc_now()
    assert timedelta(days=2, hours=23) < due_in <= timedelta(days=3)


@pytest.mark.asyncio
@pytest.mark.unit
async def test_mark_arrived_fully_paid_pre_order_is_ready_to_ship(
    db_session, make_product, settings_lookup, dispatcher
):
    item, order, _ = await _pre_order_with_deposit_paid(
        db_session,
        make_product,
        settings_lookup,
        pre_order_config={"deposit_type": "percent", "deposit_value": "100"},
    )

    order = await orders.mark_arrived(
        db_session, order.id, settings_lookup=settings_lookup, dispatcher=dispatcher
    )

    assert order.status == OrderStatus.PROCESSING
    assert order.fulfillment_status == FulfillmentStatus.READY_TO_SHIP
    assert order.stock_committed
    assert "ready_to_ship" in dispatcher.notification_kinds()


@pytest.mark.asyncio
@pytest.mark.unit
async def test_mark_arrived_rejects_ready_stock_order(db_session, make_product, settings_lookup):
    item = await make_product()
    order, _ = await orders.create_order(
        db_session, checkout_request([(item, 1)]), settings_lookup=settings_lookup
    )

    with pytest.raises(InvalidTransitionError):
        await orders.mark_arrived(db_session, order.id, settings_lookup=settings_lookup)


@pytest.mark.asyncio
@pytest.mark.unit
async def test_ship_requires_full_payment(db_session, make_product, settings_lookup):
    _, order, _ = await _pre_order_with_deposit_paid(db_session, make_product, settings_lookup)

    with pytest.raises(InvalidTransitionError):
        await orders.ship_order(db_session, order.id, courier="jne")

    assert await _balance(db_session, ledger.PO_REVENUE) == Decimal("0")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_ship_twice_recognizes_revenue_once(db_session, make_product, settings_lookup):
    item = await make_product(price=Decimal("100000"), supplier_cost=Decimal("60000"))
    order, opened = await orders.create_order(
        db_session, checkout_request([(item, 1)]), settings_lookup=settings_lookup
    )
    await _settle(db_session, opened[0])

    await orders.ship_order(db_session, order.id, courier="jne")
    order = await orders.ship_order(db_session, order.id, courier="jne")

    assert order.status == OrderStatus.SHIPPED
    assert await _balance(db_session, ledger.RETAIL_REVENUE) == Decimal("100000")
    assert await _balance(db_session, ledger.COGS_EXPENSE) == Decimal("60000")


# ---------------------------------------------------------------------------
# Cancel / forfeit
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_cancel_after_deposit_refunds_to_wallet(db_session, make_product, settings_lookup, dispatcher):
    item, order, _ = await _pre_order_with_deposit_paid(db_session, make_product, settings_lookup)

    order = await orders.cancel_order(
        db_session, order.id, reason="Customer request", dispatcher=dispatcher
    )

    assert order.status == OrderStatus.CANCELLED
    assert order.fulfillment_status == FulfillmentStatus.CANCELLED
    assert order.payment_status == PaymentStatus.REFUNDED
    assert order.refunded_amount == Decimal("300000")
    assert await _status(db_session, _of_type(order.invoices, InvoiceType.BALANCE)) == InvoiceStatus.CANCELLED
    assert (await _product(db_session, item.id)).reserved_qty == 0

    assert await wallet.wallet_balance(db_session, order.user_id) == Decimal("300000")
    assert await _balance(db_session, ledger.CUSTOMER_DEPOSIT) == Decimal("0")
    assert await _balance(db_session, ledger.WALLET_LIABILITY) == Decimal("300000")
    await _assert_ledger_balanced(db_session)
    assert dispatcher.notification_kinds() == ["order_cancelled"]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_cancel_after_full_payment_restocks(db_session, make_product, settings_lookup):
    item = await make_product(stock=5)
    order, opened = await orders.create_order(
        db_session, checkout_request([(item, 2)]), settings_lookup=settings_lookup
    )
    await _settle(db_session, opened[0])
    assert (await _product(db_session, item.id)).stock == 3

    order = await orders.cancel_order(db_session, order.id, reason="Out of region")

    product = await _product(db_session, item.id)
    assert (product.stock, product.reserved_qty) == (5, 0)
    assert await _balance(db_session, ledger.RETAIL_REVENUE) == Decimal("0")
    assert await wallet.wallet_balance(db_session, order.user_id) == Decimal("200000")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_cancel_shipped_order_is_rejected(db_session, make_product, settings_lookup):
    item = await make_product()
    order, opened = await orders.create_order(
        db_session, checkout_request([(item, 1)]), settings_lookup=settings_lookup
    )
    await _settle(db_session, opened[0])
    await orders.ship_order(db_session, order.id, courier="jne")

    with pytest.raises(InvalidTransitionError):
        await orders.cancel_order(db_session, order.id, reason="Too late")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_forfeit_moves_deposit_to_other_income(db_session, make_product, settings_lookup, dispatcher):
    item, order, _ = await _pre_order_with_deposit_paid(db_session, make_product, settings_lookup)
    await orders.mark_arrived(db_session, order.id, settings_lookup=settings_lookup)

    order = await orders.forfeit_pre_order(db_session, order.id, dispatcher=dispatcher)

    assert order.status == OrderStatus.CANCELLED
    assert await _status(db_session, _of_type(order.invoices, InvoiceType.BALANCE)) == InvoiceStatus.EXPIRED
    assert await _balance(db_session, ledger.CUSTOMER_DEPOSIT) == Decimal("0")
    assert await _balance(db_session, ledger.OTHER_INCOME) == Decimal("300000")
    assert await wallet.wallet_balance(db_session, order.user_id) == Decimal("0")
    assert (await _product(db_session, item.id)).reserved_qty == 0
    assert "deposit_forfeited" in dispatcher.notification_kinds()


# ---------------------------------------------------------------------------
# Late payments
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_payment_after_cancellation_becomes_wallet_credit(
    db_session, make_product, settings_lookup, dispatcher
):
    item = await make_product(price=Decimal("150000"))
    order, opened = await orders.create_order(
        db_session, checkout_request([(item, 1)]), settings_lookup=settings_lookup
    )
    await orders.cancel_order(db_session, order.id, reason="Changed mind")

    result = await _settle(db_session, opened[0], dispatcher)

    assert result.outcome == FinalizeOutcome.APPLIED_LATE
    assert result.invoice.status == InvoiceStatus.PAID_LATE
    order = await orders.get_order_detail(db_session, order.id)
    assert order.status == OrderStatus.CANCELLED
    assert (await _product(db_session, item.id)).stock == 10

    assert await wallet.wallet_balance(db_session, order.user_id) == Decimal("150000")
    assert await _balance(db_session, ledger.PRIMARY_BANK) == Decimal("150000")
    assert await _balance(db_session, ledger.RETAIL_REVENUE) == Decimal("0")
    assert await _balance(db_session, ledger.WALLET_LIABILITY) == Decimal("150000")
    assert "late_payment_refunded" in await _actions(db_session, order.id)
    assert dispatcher.notification_kinds() == ["late_payment_credited"]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_late_balance_after_forfeit_credits_wallet(db_session, make_product, settings_lookup):
    _, order, opened = await _pre_order_with_deposit_paid(db_session, make_product, settings_lookup)
    await orders.mark_arrived(db_session, order.id, settings_lookup=settings_lookup)
    await orders.forfeit_pre_order(db_session, order.id)

    result = await _settle(db_session, _of_type(opened, InvoiceType.BALANCE))

    assert result.outcome == FinalizeOutcome.APPLIED_LATE
    assert await wallet.wallet_balance(db_session, order.user_id) == Decimal("700000")
    assert await _balance(db_session, ledger.OTHER_INCOME) == Decimal("300000")
    await _assert_ledger_balanced(db_session)


# ---------------------------------------------------------------------------
# Refunds and recalculation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_partial_then_full_refund(db_session, make_product, settings_lookup, dispatcher):
    item = await make_product(price=Decimal("200000"))
    order, opened = await orders.create_order(
        db_session, checkout_request([(item, 1)]), settings_lookup=settings_lookup
    )
    await _settle(db_session, opened[0])

    order = await orders.refund_order(
        db_session, order.id, amount=Decimal("50000"), reason="Damaged box", dispatcher=dispatcher
    )
    order_id = order.id
    assert order.payment_status == PaymentStatus.REFUNDED_PARTIAL
    assert order.refunded_amount == Decimal("50000")
    assert await _balance(db_session, ledger.PRIMARY_BANK) == Decimal("150000")
    assert await _balance(db_session, ledger.RETAIL_REVENUE) == Decimal("150000")

    with pytest.raises(BusinessRuleViolation):
        await orders.refund_order(db_session, order_id, amount=Decimal("150000.01"), reason="Too much")

    order = await orders.refund_order(db_session, order_id, amount=Decimal("150000"), reason="Returned")
    assert order.payment_status == PaymentStatus.REFUNDED
    assert await _balance(db_session, ledger.PRIMARY_BANK) == Decimal("0")
    assert dispatcher.notification_kinds() == ["refund_issued"]
    await _assert_ledger_balanced(db_session)


@pytest.mark.asyncio
@pytest.mark.unit
async def test_refund_on_unpaid_order_is_rejected(db_session, make_product, settings_lookup):
    item = await make_product()
    order, _ = await orders.create_order(
        db_session, checkout_request([(item, 1)]), settings_lookup=settings_lookup
    )

    with pytest.raises(BusinessRuleViolation):
        await orders.refund_order(db_session, order.id, amount=Decimal("1"), reason="Nothing paid")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_recalculate_payment_totals_repairs_drift(db_session, make_product, settings_lookup):
    _, order, _ = await _pre_order_with_deposit_paid(db_session, make_product, settings_lookup)
    order = await orders.get_order_detail(db_session, order.id)
    order.deposit_paid = Decimal("0")
    order.remaining_balance = Decimal("1000000")
    await db_session.commit()

    order = await orders.recalculate_payment_totals(db_session, order.id)

    assert order.deposit_paid == Decimal("300000")
    assert order.remaining_balance == Decimal("700000")
    assert order.payment_status == PaymentStatus.DEPOSIT_PAID


@pytest.mark.asyncio
@pytest.mark.unit
async def test_refund_returns_each_payment_the_way_it_came(db_session, make_product, settings_lookup):
    user_id = unique_user_id()
    item = await make_product(pre_order=True)
    order, opened = await orders.create_order(
        db_session, checkout_request([(item, 1)], user_id=user_id), settings_lookup=settings_lookup
    )
    deposit = _of_type(opened, InvoiceType.DEPOSIT)
    await wallet.credit_wallet(
        db_session,
        user_id=user_id,
        amount=Decimal("300000"),
        transaction_type=WalletTransactionType.ADJUSTMENT,
        idempotency_key=f"fund:{user_id}",
    )
    await db_session.commit()
    await reconciliation.pay_with_wallet(db_session, deposit.id, user_id=user_id)
    order = await orders.mark_arrived(db_session, order.id, settings_lookup=settings_lookup)
    balance = _of_type(order.invoices, InvoiceType.BALANCE)
    await _settle(db_session, balance)
    assert await _balance(db_session, ledger.PRIMARY_BANK) == Decimal("700000")

    order = await orders.refund_order(
        db_session, order.id, amount=Decimal("1000000"), reason="Run cancelled by maker"
    )

    assert order.payment_status == PaymentStatus.REFUNDED
    assert await wallet.wallet_balance(db_session, user_id) == Decimal("300000")
    assert await _balance(db_session, ledger.PRIMARY_BANK) == Decimal("0")
    result = await db_session.execute(
        select(PaymentTransaction.invoice_id, PaymentTransaction.method, PaymentTransaction.amount).where(
            PaymentTransaction.kind == TransactionKind.REFUND
        )
    )
    refunds = {(invoice_id, method): amount for invoice_id, method, amount in result.all()}
    assert refunds == {
        (deposit.id, "wallet"): Decimal("300000"),
        (balance.id, "gateway"): Decimal("700000"),
    }
    await _assert_ledger_balanced(db_session)


# ---------------------------------------------------------------------------
# Point of sale
# ---------------------------------------------------------------------------


def _pos_request(items, **overrides) -> PosOrderRequest:
    return PosOrderRequest.model_validate(
        {
            "items": [{"product_id": str(product.id), "quantity": qty} for product, qty in items],
            **overrides,
        }
    )


@pytest.mark.asyncio
@pytest.mark.unit
async def test_pos_cash_sale_hands_over_ready_stock(db_session, make_product, settings_lookup, dispatcher):
    item = await make_product(stock=5)

    order, opened = await orders.create_pos_order(
        db_session,
        _pos_request([(item, 2)], customer_name="Walk-in Rina"),
        settings_lookup=settings_lookup,
        actor="cashier-1",
        dispatcher=dispatcher,
    )

    assert order.order_number.startswith("POS-")
    assert order.source == SOURCE_POS
    assert order.user_id == orders.POS_GUEST_USER
    assert order.total == Decimal("200000")
    assert order.status == OrderStatus.COMPLETED
    assert order.payment_status == PaymentStatus.PAID
    assert order.fulfillment_status == FulfillmentStatus.DELIVERED
    assert await _status(db_session, opened[0]) == InvoiceStatus.PAID
    product = await _product(db_session, item.id)
    assert (product.stock, product.reserved_qty) == (3, 0)

    assert await _balance(db_session, ledger.CASH) == Decimal("200000")
    assert await _balance(db_session, ledger.PRIMARY_BANK) == Decimal("0")
    assert await _balance(db_session, ledger.RETAIL_REVENUE) == Decimal("200000")
    assert await _balance(db_session, ledger.COGS_EXPENSE) == Decimal("120000")
    await _assert_ledger_balanced(db_session)
    assert "handed_over" in await _actions(db_session, order.id)
    assert dispatcher.notification_kinds() == ["payment_received"]
    assert dispatcher.job_names() == []


@pytest.mark.asyncio
@pytest.mark.unit
async def test_pos_gateway_sale_waits_for_payment(db_session, make_product, settings_lookup):
    item = await make_product(stock=5)

    order, opened = await orders.create_pos_order(
        db_session,
        _pos_request([(item, 1)], payment_method="gateway", user_id="member-7"),
        settings_lookup=settings_lookup,
    )

    assert order.user_id == "member-7"
    assert order.status == OrderStatus.PENDING
    assert order.payment_status == PaymentStatus.UNPAID
    assert opened[0].status == InvoiceStatus.UNPAID
    product = await _product(db_session, item.id)
    assert (product.stock, product.reserved_qty) == (5, 1)
    assert await _balance(db_session, ledger.CASH) == Decimal("0")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_pos_cash_pre_order_takes_deposit(db_session, make_product, settings_lookup):
    item = await make_product(pre_order=True)

    order, opened = await orders.create_pos_order(
        db_session, _pos_request([(item, 1)]), settings_lookup=settings_lookup
    )

    assert [inv.type for inv in opened] == [InvoiceType.DEPOSIT, InvoiceType.BALANCE]
    assert order.status == OrderStatus.PRE_ORDER
    assert order.payment_status == PaymentStatus.DEPOSIT_PAID
    assert order.deposit_paid == Decimal("300000")
    assert order.remaining_balance == Decimal("700000")
    product = await _product(db_session, item.id)
    assert (product.stock, product.reserved_qty) == (5, 1)
    assert await _balance(db_session, ledger.CASH) == Decimal("300000")
    assert await _balance(db_session, ledger.CUSTOMER_DEPOSIT) == Decimal("300000")
    await _assert_ledger_balanced(db_session)


@pytest.mark.asyncio
@pytest.mark.unit
async def test_pos_pre_order_paid_in_full_ships_on_arrival(db_session, make_product, settings_lookup):
    item = await make_product(pre_order=True)

    order, opened = await orders.create_pos_order(
        db_session,
        _pos_request([(item, 1)], pre_order_payment="full"),
        settings_lookup=settings_lookup,
    )

    assert [inv.type for inv in opened] == [InvoiceType.DEPOSIT]
    assert opened[0].amount == Decimal("1000000")
    assert order.payment_status == PaymentStatus.PAID_FULL
    assert order.remaining_balance == Decimal("0")

    order = await orders.mark_arrived(db_session, order.id, settings_lookup=settings_lookup)

    assert order.status == OrderStatus.PROCESSING
    assert order.fulfillment_status == FulfillmentStatus.READY_TO_SHIP
    product = await _product(db_session, item.id)
    assert (product.stock, product.reserved_qty) == (4, 0)


@pytest.mark.asyncio
@pytest.mark.unit
async def test_pos_sold_out_leaves_stock_untouched(db_session, make_product, settings_lookup):
    item = await make_product(stock=1)

    with pytest.raises(SoldOutError):
        await orders.create_pos_order(db_session, _pos_request([(item, 2)]), settings_lookup=settings_lookup)

    product = await _product(db_session, item.id)
    assert (product.stock, product.reserved_qty) == (1, 0)
    assert await _balance(db_session, ledger.CASH) == Decimal("0")


@pytest.mark.unit
def test_pos_request_rejects_wallet_payment():
    with pytest.raises(ValidationError):
        PosOrderRequest.model_validate(
            {"items": [{"product_id": str(uuid.uuid4()), "quantity": 1}], "payment_method": "wallet"}
        )


# ---------------------------------------------------------------------------
# Shipping provider updates
# ---------------------------------------------------------------------------


async def _paid_order_with_shipment(db, make_product, settings_lookup, provider_id="SHIP-1"):
    item = await make_product()
    order, opened = await orders.create_order(
        db, checkout_request([(item, 1)]), settings_lookup=settings_lookup
    )
    await _settle(db, opened[0])
    order = await orders.get_order_detail(db, order.id)
    order.shipping_provider_order_id = provider_id
    order.courier = "sicepat"
    await db.commit()
    return order


@pytest.mark.asyncio
@pytest.mark.unit
async def test_picked_up_then_delivered(db_session, make_product, settings_lookup, dispatcher):
    order = await _paid_order_with_shipment(db_session, make_product, settings_lookup)

    await orders.apply_shipping_status(db_session, "SHIP-1", "picked_up", dispatcher=dispatcher)
    order = await orders.get_order_detail(db_session, order.id)
    assert order.status == OrderStatus.SHIPPED
    # Provider order exists already, no new booking
    assert "task_create_shipment" not in dispatcher.job_names()

    await orders.apply_shipping_status(db_session, "SHIP-1", "delivered", dispatcher=dispatcher)
    order = await orders.get_order_detail(db_session, order.id)
    assert order.status == OrderStatus.COMPLETED
    assert await _balance(db_session, ledger.COGS_EXPENSE) == Decimal("60000")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_returned_shipment_does_not_cancel(db_session, make_product, settings_lookup):
    order = await _paid_order_with_shipment(db_session, make_product, settings_lookup)
    await orders.ship_order(db_session, order.id, courier="sicepat")

    await orders.apply_shipping_status(db_session, "SHIP-1", "returned")

    order = await orders.get_order_detail(db_session, order.id)
    assert order.status == OrderStatus.SHIPPED
    assert order.fulfillment_status == FulfillmentStatus.RETURNED
    assert "returned" in await _actions(db_session, order.id)


@pytest.mark.asyncio
@pytest.mark.unit
async def test_waybill_price_and_unknown_provider_updates(db_session, make_product, settings_lookup):
    order = await _paid_order_with_shipment(db_session, make_product, settings_lookup)

    await orders.apply_shipping_waybill(db_session, "SHIP-1", "WB-777")
    await orders.record_shipping_price(db_session, "SHIP-1", Decimal("99000"))
    await orders.apply_shipping_status(db_session, "SHIP-1", "courier_not_found")
    assert await orders.apply_shipping_status(db_session, "SHIP-404", "delivered") is None

    order = await orders.get_order_detail(db_session, order.id)
    assert order.tracking_number == "WB-777"
    assert order.shipping_cost == Decimal("0")
    actions = await _actions(db_session, order.id)
    assert {"waybill_updated", "shipping_price_updated", "courier_not_found"} <= set(actions)
