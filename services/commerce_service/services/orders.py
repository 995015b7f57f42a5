"""Order state machine.

Every public operation here is one atomic unit: it locks the order row, applies
inventory, invoice and ledger changes, commits, and only then hands
notifications and shipping-provider calls to the background dispatcher.
Any exception before the commit rolls the whole unit back.
"""

import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from libs.common.datetime_utils import compact_timestamp, utc_now
from libs.common.logging import get_logger
from services.commerce_service.dispatch import (
    JOB_CANCEL_SHIPMENT,
    JOB_CREATE_SHIPMENT,
    BackgroundDispatcher,
)
from services.commerce_service.errors import (
    BusinessRuleViolation,
    ExternalGatewayError,
    InvalidTransitionError,
    NotFoundError,
    SoldOutError,
)
from services.commerce_service.models import (
    SOURCE_POS,
    AccountType,
    FulfillmentStatus,
    Invoice,
    InvoiceStatus,
    InvoiceType,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    PaymentTransaction,
    Product,
    TransactionKind,
    TransactionStatus,
    WalletTransactionType,
)
from services.commerce_service.schemas import (
    CheckoutItem,
    CheckoutRequest,
    FixedDeposit,
    PercentDeposit,
    PosOrderRequest,
    parse_pre_order_config,
)
from services.commerce_service.services import inventory, invoices, ledger, vouchers, wallet
from services.commerce_service.services._helpers import (
    get_order_detail,
    lock_order,
    log_order,
    order_payload,
)
from services.commerce_service.services.notifications import (
    PendingNotification,
    dispatch_notifications,
)
from services.commerce_service.services.settings_lookup import SettingsLookup
from services.commerce_service.shipping_client import (
    COURIER_NOT_FOUND,
    DELIVERED,
    IN_TRANSIT,
    PICKED_UP,
    RETURNED,
    ShippingClient,
)
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
ADMIN_ACTOR = "admin"
POS_ORDER_PREFIX = "POS"
POS_GUEST_USER = "pos-guest"
POS_CASH_REFERENCE_PREFIX = "POS-CASH-"


@dataclass
class _AfterCommit:
    """Work an operation decided on, to run once its transaction committed."""

    notifications: list[PendingNotification] = field(default_factory=list)
    jobs: list[tuple[str, tuple, str]] = field(default_factory=list)

    def job(self, name: str, *args, dedupe_key: str) -> None:
        self.jobs.append((name, args, dedupe_key))

    def notify(self, order: Order, kind: str, dedupe_key: str, **extra) -> None:
        self.notifications.append(
            PendingNotification(kind=kind, dedupe_key=dedupe_key, payload=order_payload(order, **extra))
        )

    def extend(self, other: "_AfterCommit") -> None:
        self.notifications.extend(other.notifications)
        self.jobs.extend(other.jobs)

    async def run(self, dispatcher: Optional[BackgroundDispatcher]) -> None:
        if dispatcher is None:
            return
        for name, args, dedupe_key in self.jobs:
            await dispatcher.submit(name, *args, dedupe_key=dedupe_key)
        await dispatch_notifications(dispatcher, self.notifications)


# ---------------------------------------------------------------------------
# Deposit sizing
# ---------------------------------------------------------------------------


def calculate_deposit(
    total: Decimal,
    *,
    config: Optional[Union[FixedDeposit, PercentDeposit]],
    quantity: int,
    default_percentage: Decimal,
) -> Decimal:
    """Deposit for a pre-order.

    A fixed config charges ``value x quantity`` (or the bare value when that
    would not be below the total); a percent config overrides the global
    percentage. Anything unusable falls back to ``default_percentage``.
    """
    if total <= 0:
        return ZERO

    if isinstance(config, FixedDeposit):
        for candidate in (config.deposit_value * quantity, config.deposit_value):
            if ZERO < candidate < total:
                return ledger.quantize(candidate)

    percentage = default_percentage
    if isinstance(config, PercentDeposit):
        percentage = config.deposit_value

    deposit = (total * percentage / HUNDRED).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return min(deposit, total)


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


async def _load_products(db: AsyncSession, product_ids: set[uuid.UUID]) -> dict[uuid.UUID, Product]:
    result = await db.execute(select(Product).where(Product.id.in_(product_ids)))
    return {product.id: product for product in result.scalars().all()}


def _check_products(products: dict[uuid.UUID, Product], items: list[CheckoutItem]) -> None:
    for item in items:
        product = products.get(item.product_id)
        if not product or not product.is_active:
            raise NotFoundError(f"Product {item.product_id} is not available")


async def _reserve_lines(
    db: AsyncSession,
    order: Order,
    items: list[CheckoutItem],
    products: dict[uuid.UUID, Product],
) -> Decimal:
    """Reserve every line and attach the order items; returns the subtotal."""
    subtotal = ZERO
    for position, item in enumerate(items):
        product = products[item.product_id]
        reserved = await inventory.reserve_stock(db, product.id, item.quantity, order_id=order.id)
        if not reserved:
            raise SoldOutError(product.id, product.name, item.quantity)

        line_total = ledger.quantize(product.price * item.quantity)
        subtotal += line_total
        order.items.append(
            OrderItem(
                product_id=product.id,
                position=position,
                product_name=product.name,
                quantity=item.quantity,
                unit_price=product.price,
                line_total=line_total,
                cogs_snapshot=product.supplier_cost,
            )
        )
    return subtotal


async def create_order(
    db: AsyncSession,
    payload: CheckoutRequest,
    *,
    settings_lookup: SettingsLookup,
    dispatcher: Optional[BackgroundDispatcher] = None,
) -> tuple[Order, list[Invoice]]:
    """Turn a checkout into an order with reserved stock and opening invoice(s).

    All-or-nothing: if any line cannot be reserved the transaction is rolled
    back and SoldOutError is raised.
    """
    products = await _load_products(db, {item.product_id for item in payload.items})
    _check_products(products, payload.items)

    order = Order(
        id=uuid.uuid4(),
        order_number=Order.generate_order_number(),
        user_id=payload.user_id,
        customer_email=payload.customer_email,
        billing_address=payload.billing_address.model_dump(mode="json"),
        shipping_address=(
            payload.shipping_address.model_dump(mode="json")
            if payload.shipping_address
            else None
        ),
        payment_method=payload.payment_method,
        notes=payload.notes,
        status=OrderStatus.PENDING,
        payment_status=PaymentStatus.UNPAID,
        fulfillment_status=FulfillmentStatus.UNFULFILLED,
    )

    try:
        subtotal = await _reserve_lines(db, order, payload.items, products)

        applied_voucher = await vouchers.apply_voucher_if_present(
            db, payload.voucher_code, user_id=payload.user_id, subtotal=subtotal
        )
        discount = applied_voucher.discount if applied_voucher else ZERO
        shipping = ledger.quantize(payload.shipping_cost)

        order.subtotal = ledger.quantize(subtotal)
        order.shipping_cost = shipping
        order.discount_amount = ledger.quantize(discount)
        order.total = max(ledger.quantize(subtotal + shipping - discount), ZERO)
        order.remaining_balance = order.total
        order.voucher_code = applied_voucher.voucher.code if applied_voucher else None

        first_product = products[payload.items[0].product_id]
        order.is_pre_order = first_product.is_pre_order
        db.add(order)
        await db.flush()

        if applied_voucher:
            await vouchers.redeem_voucher(db, applied_voucher, user_id=payload.user_id, order_id=order.id)

        ttl_hours = await settings_lookup.invoice_ttl_hours(db)
        due_date = utc_now() + timedelta(hours=ttl_hours)
        opened = await _open_invoices(
            db,
            order,
            first_product=first_product,
            quantity=sum(i.quantity for i in payload.items if i.product_id == first_product.id),
            due_date=due_date,
            settings_lookup=settings_lookup,
        )

        log_order(
            db,
            order.id,
            "order_created",
            actor=payload.user_id,
            note=f"Order placed with {len(payload.items)} item(s)",
            is_customer_visible=True,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "Created order %s for %s (total=%s, pre_order=%s)",
        order.order_number,
        order.user_id,
        order.total,
        order.is_pre_order,
        extra={"extra_fields": {"order_id": str(order.id), "total": str(order.total)}},
    )

    after = _AfterCommit()
    after.notify(
        order,
        "order_created",
        f"order_created:{order.id}",
        invoice_number=opened[0].invoice_number,
        amount_due=str(opened[0].amount),
    )
    await after.run(dispatcher)

    return await get_order_detail(db, order.id), opened


async def _open_invoices(
    db: AsyncSession,
    order: Order,
    *,
    first_product: Product,
    quantity: int,
    due_date,
    settings_lookup: SettingsLookup,
    deposit_config: Optional[Union[FixedDeposit, PercentDeposit]] = None,
) -> list[Invoice]:
    if not order.is_pre_order:
        full = invoices.build_invoice(
            order=order,
            user_id=order.user_id,
            invoice_type=InvoiceType.FULL,
            amount=order.total,
            due_date=due_date,
        )
        db.add(full)
        await db.flush()
        return [full]

    deposit_amount = calculate_deposit(
        order.total,
        config=deposit_config or parse_pre_order_config(first_product.pre_order_config),
        quantity=quantity,
        default_percentage=await settings_lookup.deposit_percentage(db),
    )
    deposit = invoices.build_invoice(
        order=order,
        user_id=order.user_id,
        invoice_type=InvoiceType.DEPOSIT,
        amount=deposit_amount,
        due_date=due_date,
    )
    opened = [deposit]

    balance_amount = order.total - deposit_amount
    if balance_amount > 0:
        opened.append(
            invoices.build_invoice(
                order=order,
                user_id=order.user_id,
                invoice_type=InvoiceType.BALANCE,
                amount=balance_amount,
                status=InvoiceStatus.PENDING_ARRIVAL,
            )
        )
    db.add_all(opened)
    await db.flush()
    return opened


# ---------------------------------------------------------------------------
# Point of sale
# ---------------------------------------------------------------------------


async def create_pos_order(
    db: AsyncSession,
    payload: PosOrderRequest,
    *,
    settings_lookup: SettingsLookup,
    actor: str = ADMIN_ACTOR,
    dispatcher: Optional[BackgroundDispatcher] = None,
) -> tuple[Order, list[Invoice]]:
    """Counter sale, reserved and invoiced the same way as a checkout.

    Cash settles the opening invoice inside the same transaction: ready
    stock is taken out at once and the money is booked to the cash account.
    Gateway (QR) sales leave it unpaid for the normal pay and reconcile flow.
    A pre-order paid in full takes a 100% deposit, so the goods are still
    released through arrival.
    """
    products = await _load_products(db, {item.product_id for item in payload.items})
    _check_products(products, payload.items)

    order = Order(
        id=uuid.uuid4(),
        order_number=Order.generate_order_number(POS_ORDER_PREFIX),
        user_id=payload.user_id or POS_GUEST_USER,
        customer_email=payload.customer_email,
        billing_address={"recipient_name": payload.customer_name or "Walk-in guest"},
        payment_method=payload.payment_method,
        notes=payload.notes,
        source=SOURCE_POS,
        status=OrderStatus.PENDING,
        payment_status=PaymentStatus.UNPAID,
        fulfillment_status=FulfillmentStatus.UNFULFILLED,
    )
    after = _AfterCommit()

    try:
        subtotal = ledger.quantize(await _reserve_lines(db, order, payload.items, products))
        order.subtotal = subtotal
        order.shipping_cost = ZERO
        order.discount_amount = ZERO
        order.total = subtotal
        order.remaining_balance = subtotal

        first_product = products[payload.items[0].product_id]
        order.is_pre_order = first_product.is_pre_order
        db.add(order)
        await db.flush()

        ttl_hours = await settings_lookup.invoice_ttl_hours(db)
        opened = await _open_invoices(
            db,
            order,
            first_product=first_product,
            quantity=sum(i.quantity for i in payload.items if i.product_id == first_product.id),
            due_date=utc_now() + timedelta(hours=ttl_hours),
            settings_lookup=settings_lookup,
            deposit_config=(
                PercentDeposit(deposit_value=HUNDRED)
                if payload.pre_order_payment == "full"
                else None
            ),
        )
        log_order(
            db,
            order.id,
            "order_created",
            actor=actor,
            note=f"POS order via {payload.payment_method.value}",
            is_customer_visible=True,
        )

        if payload.payment_method == PaymentMethod.CASH:
            settlement = await invoices.settle_invoice(
                db,
                opened[0],
                payment_method=PaymentMethod.CASH,
                reference=f"{POS_CASH_REFERENCE_PREFIX}{order.order_number}",
            )
            after.notifications.extend(settlement.notifications)
            if not order.is_pre_order:
                await _hand_over_locked(db, order, actor)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "Created POS order %s (%s, total=%s)",
        order.order_number,
        payload.payment_method.value,
        order.total,
        extra={"extra_fields": {"order_id": str(order.id), "actor": actor}},
    )
    await after.run(dispatcher)
    return await get_order_detail(db, order.id), opened


async def _hand_over_locked(db: AsyncSession, order: Order, actor: str) -> None:
    """Paid ready stock leaves the counter with the customer."""
    await _post_cogs(db, order)
    now = utc_now()
    order.status = OrderStatus.COMPLETED
    order.fulfillment_status = FulfillmentStatus.DELIVERED
    order.shipped_at = now
    order.completed_at = now
    log_order(db, order.id, "handed_over", actor=actor, note="Collected at the counter", is_customer_visible=True)


# ---------------------------------------------------------------------------
# Pre-order arrival
# ---------------------------------------------------------------------------


async def mark_arrived(
    db: AsyncSession,
    order_id: uuid.UUID,
    *,
    settings_lookup: SettingsLookup,
    final_shipping_cost: Optional[Decimal] = None,
    actor: str = ADMIN_ACTOR,
    dispatcher: Optional[BackgroundDispatcher] = None,
    shipping: Optional[ShippingClient] = None,
) -> Order:
    """Pre-ordered goods arrived: ready to ship, or open the balance invoice.

    Without an explicit ``final_shipping_cost`` the balance is priced from a
    courier rate quote for the summed item weight, when a shipping client is
    given. A failed quote keeps the shipping cost charged at checkout.
    """
    if final_shipping_cost is None and shipping is not None:
        final_shipping_cost = await _quote_arrival_shipping(db, order_id, shipping)

    after = _AfterCommit()
    try:
        order = await lock_order(db, order_id)
        if not order.is_pre_order:
            raise InvalidTransitionError("Only pre-order orders can be marked as arrived")
        if order.status != OrderStatus.PRE_ORDER:
            raise InvalidTransitionError(
                f"Order {order.order_number} cannot be marked arrived while {order.status.value}"
            )

        if order.remaining_balance <= 0:
            order.status = OrderStatus.PROCESSING
            order.fulfillment_status = FulfillmentStatus.READY_TO_SHIP
            await invoices.commit_order_stock(db, order)
            log_order(db, order.id, "goods_arrived", actor=actor, note="Fully paid, ready to ship", is_customer_visible=True)
            after.notify(order, "ready_to_ship", f"ready_to_ship:{order.id}")
        else:
            balance = await invoices.find_order_invoice(
                db, order.id, InvoiceType.BALANCE, {InvoiceStatus.PENDING_ARRIVAL}
            )
            if not balance:
                raise InvalidTransitionError(
                    f"Order {order.order_number} has no dormant balance invoice"
                )

            delta = ZERO
            if final_shipping_cost is not None:
                delta = ledger.quantize(final_shipping_cost) - order.shipping_cost
                order.shipping_cost = ledger.quantize(final_shipping_cost)
                order.total = max(order.total + delta, ZERO)
                order.remaining_balance = max(order.remaining_balance + delta, ZERO)

            due_days = await _balance_due_days(db, order, settings_lookup)
            due_date = utc_now() + timedelta(days=due_days)
            invoices.activate_balance_invoice(balance, due_date=due_date, amount_delta=delta)

            order.status = OrderStatus.PAYMENT_DUE
            order.payment_status = PaymentStatus.BALANCE_DUE
            log_order(
                db,
                order.id,
                "goods_arrived",
                actor=actor,
                note=f"Balance {balance.amount} due by {due_date.date().isoformat()}",
                is_customer_visible=True,
            )
            after.notify(
                order,
                "balance_due",
                f"balance_due:{balance.id}",
                invoice_number=balance.invoice_number,
                amount_due=str(balance.amount),
                due_date=due_date.isoformat(),
            )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    await after.run(dispatcher)
    return await get_order_detail(db, order_id)


async def _quote_arrival_shipping(
    db: AsyncSession, order_id: uuid.UUID, shipping: ShippingClient
) -> Optional[Decimal]:
    order = await get_order_detail(db, order_id)
    address = order.shipping_address or order.billing_address or {}
    postal_code = address.get("postal_code")
    if (
        not order.is_pre_order
        or order.status != OrderStatus.PRE_ORDER
        or order.remaining_balance <= 0
        or not postal_code
    ):
        await db.commit()
        return None

    weight = 0
    for item in order.items:
        product = await db.get(Product, item.product_id)
        weight += (product.weight_grams if product else 0) * item.quantity
    courier = order.courier
    value = order.subtotal
    # read-only; no transaction is held across the provider call
    await db.commit()

    try:
        quote = await shipping.quote_rate(
            destination_postal_code=postal_code,
            courier=courier,
            weight_grams=weight,
            value=value,
        )
    except ExternalGatewayError as exc:
        logger.warning(
            "Shipping quote failed for order %s, keeping checkout shipping cost: %s",
            order.order_number,
            exc,
        )
        return None
    if quote <= 0:
        return None
    logger.info(
        "Quoted shipping %s for order %s (%sg)",
        quote,
        order.order_number,
        weight,
        extra={"extra_fields": {"order_id": str(order_id)}},
    )
    return quote

async def _balance_due_days(
    db: AsyncSession, order: Order, settings_lookup: SettingsLookup
) -> int:
    if order.items:
        product = await db.get(Product, order.items[0].product_id)
        config = parse_pre_order_config(product.pre_order_config) if product else None
        if config and config.balance_due_days:
            return config.balance_due_days
    return await settings_lookup.balance_due_days(db)


# ---------------------------------------------------------------------------
# Ship / deliver
# ---------------------------------------------------------------------------


def _is_shipped(order: Order) -> bool:
    return order.status in (OrderStatus.SHIPPED, OrderStatus.COMPLETED) or (
        order.fulfillment_status in (FulfillmentStatus.SHIPPED, FulfillmentStatus.DELIVERED)
    )


async def _post_cogs(db: AsyncSession, order: Order) -> None:
    cogs_total = sum((item.cogs_snapshot * item.quantity for item in order.items), ZERO)
    if cogs_total <= 0:
        return
    cogs_expense = await ledger.resolve_account(
        db, ledger.COGS_EXPENSE, fallback_type=AccountType.COGS
    )
    inventory_asset = await ledger.resolve_account(db, ledger.INVENTORY_ASSET)
    await ledger.post_journal(
        db,
        reference_id=order.order_number,
        reference_type="order_cogs",
        description=f"COGS for {order.order_number}",
        lines=[
            ledger.debit(cogs_expense, cogs_total),
            ledger.credit(inventory_asset, cogs_total),
        ],
    )


async def _ship_locked(
    db: AsyncSession,
    order: Order,
    *,
    courier: Optional[str],
    tracking_number: Optional[str],
    actor: str,
) -> _AfterCommit:
    after = _AfterCommit()
    if order.status == OrderStatus.CANCELLED:
        raise InvalidTransitionError(f"Order {order.order_number} is cancelled")
    if order.status != OrderStatus.PROCESSING or order.remaining_balance > 0:
        raise InvalidTransitionError(
            f"Order {order.order_number} must be paid in full before shipping"
        )

    await invoices.commit_order_stock(db, order)

    order.courier = courier or order.courier
    order.tracking_number = tracking_number or order.tracking_number
    order.status = OrderStatus.SHIPPED
    order.fulfillment_status = FulfillmentStatus.SHIPPED
    order.shipped_at = utc_now()

    if order.deposit_paid > 0:
        deposit_liability = await ledger.resolve_account(
            db, ledger.CUSTOMER_DEPOSIT, fallback_type=AccountType.LIABILITY
        )
        po_revenue = await ledger.resolve_account(
            db, ledger.PO_REVENUE, ledger.GENERIC_REVENUE, fallback_type=AccountType.REVENUE
        )
        await ledger.post_journal(
            db,
            reference_id=order.order_number,
            reference_type="order_revenue",
            description=f"Revenue recognition for {order.order_number}",
            lines=[
                ledger.debit(deposit_liability, order.deposit_paid),
                ledger.credit(po_revenue, order.deposit_paid),
            ],
        )

    await _post_cogs(db, order)

    log_order(
        db,
        order.id,
        "shipped",
        actor=actor,
        note=f"Shipped via {order.courier or 'courier'}"
        + (f" ({order.tracking_number})" if order.tracking_number else ""),
        is_customer_visible=True,
    )
    if not order.shipping_provider_order_id:
        after.job(JOB_CREATE_SHIPMENT, str(order.id), dedupe_key=f"shipment:create:{order.id}")
    after.notify(
        order,
        "order_shipped",
        f"order_shipped:{order.id}",
        courier=order.courier,
        tracking_number=order.tracking_number,
    )
    return after


async def ship_order(
    db: AsyncSession,
    order_id: uuid.UUID,
    *,
    courier: str,
    tracking_number: Optional[str] = None,
    actor: str = ADMIN_ACTOR,
    dispatcher: Optional[BackgroundDispatcher] = None,
) -> Order:
    """Ship a fully paid order and recognize revenue and COGS exactly once."""
    try:
        order = await lock_order(db, order_id)
        if _is_shipped(order):
            logger.info("Order %s already shipped, skipping", order.order_number)
            await db.rollback()
            return await get_order_detail(db, order_id)
        after = await _ship_locked(
            db, order, courier=courier, tracking_number=tracking_number, actor=actor
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Order %s shipped via %s", order.order_number, courier)
    await after.run(dispatcher)
    return await get_order_detail(db, order_id)


def _complete_locked(db: AsyncSession, order: Order, actor: str) -> _AfterCommit:
    after = _AfterCommit()
    order.status = OrderStatus.COMPLETED
    order.fulfillment_status = FulfillmentStatus.DELIVERED
    order.completed_at = utc_now()
    log_order(db, order.id, "delivered", actor=actor, note="Order delivered", is_customer_visible=True)
    after.notify(order, "order_delivered", f"order_delivered:{order.id}")
    return after


async def confirm_delivery(
    db: AsyncSession,
    order_id: uuid.UUID,
    *,
    actor: str = ADMIN_ACTOR,
    dispatcher: Optional[BackgroundDispatcher] = None,
) -> Order:
    try:
        order = await lock_order(db, order_id)
        if order.status == OrderStatus.COMPLETED:
            await db.rollback()
            return await get_order_detail(db, order_id)
        if order.status != OrderStatus.SHIPPED:
            raise InvalidTransitionError(
                f"Order {order.order_number} must be shipped before delivery is confirmed"
            )
        after = _complete_locked(db, order, actor)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    await after.run(dispatcher)
    return await get_order_detail(db, order_id)


# ---------------------------------------------------------------------------
# Cancel / forfeit
# ---------------------------------------------------------------------------


async def _release_order_stock(db: AsyncSession, order: Order, note: str) -> None:
    for item in order.items:
        if order.stock_committed:
            await inventory.restock(db, item.product_id, item.quantity, order_id=order.id, note=note)
        else:
            await inventory.release_reservation(
                db, item.product_id, item.quantity, order_id=order.id, note=note
            )
    order.stock_committed = False


async def _payment_sources(db: AsyncSession, order: Order, paid: list[Invoice]) -> list[tuple]:
    """(account, amount, invoice) credited by each paid invoice, oldest first."""
    revenue_recognized = _is_shipped(order)
    sources = []
    for invoice in paid:
        if invoice.type == InvoiceType.DEPOSIT and revenue_recognized:
            account = await ledger.resolve_account(
                db, ledger.PO_REVENUE, ledger.GENERIC_REVENUE, fallback_type=AccountType.REVENUE
            )
        else:
            account = await ledger.resolve_invoice_credit_account(db, invoice.type)
        sources.append((account, invoice.amount, invoice))
    return sources


def _take_from_sources(sources: list[tuple], already_refunded: Decimal, amount: Decimal) -> list[tuple]:
    """Split a refund across payment sources, most recent payment first."""
    skip = already_refunded
    taken = []
    for account, paid_amount, invoice in reversed(sources):
        available = paid_amount
        if skip > 0:
            used = min(skip, available)
            available -= used
            skip -= used
        if available <= 0 or amount <= 0:
            continue
        portion = min(available, amount)
        taken.append((account, portion, invoice))
        amount -= portion
    return taken


async def _refund_destination(db: AsyncSession, method: Optional[PaymentMethod]):
    """Money goes back the way the invoice was paid."""
    if method == PaymentMethod.WALLET:
        return await ledger.resolve_account(db, ledger.WALLET_LIABILITY)
    if method == PaymentMethod.CASH:
        return await ledger.resolve_cash_account(db)
    return await ledger.resolve_bank_account(db)


async def _refund_to_wallet(db: AsyncSession, order: Order, reason: str) -> Decimal:
    paid = await invoices.paid_invoices(db, order.id)
    total_paid = sum((inv.amount for inv in paid), ZERO)
    refundable = total_paid - order.refunded_amount
    if refundable <= 0:
        return ZERO

    sources = _take_from_sources(
        await _payment_sources(db, order, paid), order.refunded_amount, refundable
    )
    wallet_liability = await ledger.resolve_account(db, ledger.WALLET_LIABILITY)
    await ledger.post_journal(
        db,
        reference_id=order.order_number,
        reference_type="order_cancel_refund",
        description=f"Cancellation refund to wallet for {order.order_number}",
        lines=[ledger.debit(account, portion) for account, portion, _ in sources]
        + [ledger.credit(wallet_liability, refundable)],
    )
    await wallet.credit_wallet(
        db,
        user_id=order.user_id,
        amount=refundable,
        transaction_type=WalletTransactionType.REFUND,
        idempotency_key=f"cancel-refund:{order.id}",
        reference_type="order",
        reference_id=order.order_number,
        description=f"Refund for cancelled order: {reason}",
    )
    order.refunded_amount = ledger.quantize(order.refunded_amount + refundable)
    order.payment_status = PaymentStatus.REFUNDED
    return refundable


async def cancel_locked(
    db: AsyncSession,
    order: Order,
    *,
    reason: str,
    actor: str,
    refund_to_wallet: bool = True,
    invoice_status: InvoiceStatus = InvoiceStatus.CANCELLED,
) -> _AfterCommit:
    """Cancel an order already locked by the caller; does not commit."""
    if not order.is_cancellable:
        raise InvalidTransitionError(
            f"Order {order.order_number} cannot be cancelled while {order.status.value}"
        )
    after = _AfterCommit()

    await _release_order_stock(db, order, note=f"Order cancelled: {reason}")
    await invoices.close_open_invoices(db, order.id, invoice_status)

    refunded = ZERO
    if refund_to_wallet:
        refunded = await _refund_to_wallet(db, order, reason)

    order.status = OrderStatus.CANCELLED
    order.fulfillment_status = FulfillmentStatus.CANCELLED
    order.cancelled_at = utc_now()
    order.cancel_reason = reason
    log_order(
        db,
        order.id,
        "cancelled",
        actor=actor,
        note=reason + (f" (refunded {refunded} to wallet)" if refunded else ""),
        is_customer_visible=True,
    )

    if order.shipping_provider_order_id:
        after.job(
            JOB_CANCEL_SHIPMENT,
            str(order.id),
            order.shipping_provider_order_id,
            dedupe_key=f"shipment:cancel:{order.id}",
        )
    after.notify(
        order,
        "order_cancelled",
        f"order_cancelled:{order.id}",
        reason=reason,
        refunded_amount=str(refunded),
    )
    return after


async def cancel_order(
    db: AsyncSession,
    order_id: uuid.UUID,
    *,
    reason: str,
    actor: str = ADMIN_ACTOR,
    dispatcher: Optional[BackgroundDispatcher] = None,
) -> Order:
    """Cancel, release stock and refund anything paid as wallet credit."""
    try:
        order = await lock_order(db, order_id)
        after = await cancel_locked(db, order, reason=reason, actor=actor)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Order %s cancelled by %s: %s", order.order_number, actor, reason)
    await after.run(dispatcher)
    return await get_order_detail(db, order_id)


async def forfeit_locked(db: AsyncSession, order: Order, *, actor: str, reason: str) -> _AfterCommit:
    """Cancel an overdue pre-order and recognize its deposit as other income."""
    after = await cancel_locked(
        db,
        order,
        reason=reason,
        actor=actor,
        refund_to_wallet=False,
        invoice_status=InvoiceStatus.EXPIRED,
    )
    if order.deposit_paid > 0:
        deposit_liability = await ledger.resolve_account(
            db, ledger.CUSTOMER_DEPOSIT, fallback_type=AccountType.LIABILITY
        )
        other_income = await ledger.resolve_account(db, ledger.OTHER_INCOME)
        await ledger.post_journal(
            db,
            reference_id=order.order_number,
            reference_type="deposit_forfeiture",
            description=f"Deposit forfeited on {order.order_number}",
            lines=[
                ledger.debit(deposit_liability, order.deposit_paid),
                ledger.credit(other_income, order.deposit_paid),
            ],
        )
    log_order(
        db,
        order.id,
        "deposit_forfeited",
        actor=actor,
        note=f"Deposit {order.deposit_paid} forfeited",
        is_customer_visible=True,
    )
    after.notify(
        order,
        "deposit_forfeited",
        f"deposit_forfeited:{order.id}",
        deposit_paid=str(order.deposit_paid),
    )
    return after


async def forfeit_pre_order(
    db: AsyncSession,
    order_id: uuid.UUID,
    *,
    actor: str = ADMIN_ACTOR,
    reason: str = "Balance not paid; deposit forfeited",
    dispatcher: Optional[BackgroundDispatcher] = None,
) -> Order:
    try:
        order = await lock_order(db, order_id)
        if not order.is_pre_order:
            raise InvalidTransitionError("Only pre-order deposits can be forfeited")
        after = await forfeit_locked(db, order, actor=actor, reason=reason)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.warning("Order %s deposit forfeited by %s", order.order_number, actor)
    await after.run(dispatcher)
    return await get_order_detail(db, order_id)


# ---------------------------------------------------------------------------
# Refunds and payment totals
# ---------------------------------------------------------------------------


async def refund_order(
    db: AsyncSession,
    order_id: uuid.UUID,
    *,
    amount: Decimal,
    reason: str,
    actor: str = ADMIN_ACTOR,
    dispatcher: Optional[BackgroundDispatcher] = None,
) -> Order:
    """Refund up to the amount paid, reversing the original recognition."""
    amount = ledger.quantize(amount)
    after = _AfterCommit()
    try:
        order = await lock_order(db, order_id)
        paid = await invoices.paid_invoices(db, order.id)
        total_paid = sum((inv.amount for inv in paid), ZERO)
        refundable = total_paid - order.refunded_amount
        if amount <= 0:
            raise BusinessRuleViolation("Refund amount must be positive")
        if amount > refundable:
            raise BusinessRuleViolation(
                f"Refund {amount} exceeds refundable amount {refundable}"
            )

        sources = _take_from_sources(
            await _payment_sources(db, order, paid), order.refunded_amount, amount
        )
        lines = []
        refund_txns = []
        wallet_total = ZERO
        for account, portion, invoice in sources:
            method = invoice.payment_method or order.payment_method
            destination = await _refund_destination(db, method)
            lines += [ledger.debit(account, portion), ledger.credit(destination, portion)]
            if method == PaymentMethod.WALLET:
                wallet_total += portion
            refund_txn = PaymentTransaction(
                invoice_id=invoice.id,
                merchant_ref_no=f"RF{uuid.uuid4().hex[:12].upper()}{compact_timestamp()[-6:]}",
                method=(method or PaymentMethod.GATEWAY).value,
                amount=portion,
                kind=TransactionKind.REFUND,
                status=TransactionStatus.SUCCESS,
            )
            db.add(refund_txn)
            refund_txns.append(refund_txn)
        await ledger.post_journal(
            db,
            reference_id=order.order_number,
            reference_type="order_refund",
            description=f"Refund for {order.order_number}: {reason}",
            lines=lines,
        )
        await db.flush()
        refund_key = refund_txns[0].id

        if wallet_total > 0:
            await wallet.credit_wallet(
                db,
                user_id=order.user_id,
                amount=wallet_total,
                transaction_type=WalletTransactionType.REFUND,
                idempotency_key=f"refund:{refund_key}",
                reference_type="order",
                reference_id=order.order_number,
                description=reason,
            )

        order.refunded_amount = ledger.quantize(order.refunded_amount + amount)
        order.payment_status = (
            PaymentStatus.REFUNDED
            if order.refunded_amount >= total_paid
            else PaymentStatus.REFUNDED_PARTIAL
        )
        log_order(
            db,
            order.id,
            "refunded",
            actor=actor,
            note=f"Refunded {amount}: {reason}",
            is_customer_visible=True,
        )
        after.notify(
            order,
            "refund_issued",
            f"refund_issued:{refund_key}",
            amount=str(amount),
            to_wallet=str(wallet_total),
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Refunded %s on order %s", amount, order.order_number)
    await after.run(dispatcher)
    return await get_order_detail(db, order_id)


async def recalculate_payment_totals(db: AsyncSession, order_id: uuid.UUID) -> Order:
    """Recompute deposit_paid and remaining_balance from paid invoices."""
    try:
        order = await lock_order(db, order_id)
        paid = await invoices.paid_invoices(db, order.id)
        total_paid = sum((inv.amount for inv in paid), ZERO)
        order.deposit_paid = sum(
            (inv.amount for inv in paid if inv.type == InvoiceType.DEPOSIT), ZERO
        )
        order.remaining_balance = max(order.total - total_paid, ZERO)

        if order.payment_status not in (PaymentStatus.REFUNDED, PaymentStatus.REFUNDED_PARTIAL):
            if paid and order.remaining_balance == 0:
                order.payment_status = PaymentStatus.PAID_FULL
            elif order.deposit_paid > 0:
                order.payment_status = PaymentStatus.DEPOSIT_PAID
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return await get_order_detail(db, order_id)


# ---------------------------------------------------------------------------
# Shipping provider updates
# ---------------------------------------------------------------------------


async def _lock_by_provider_id(db: AsyncSession, provider_order_id: str) -> Optional[Order]:
    result = await db.execute(
        select(Order.id).where(Order.shipping_provider_order_id == provider_order_id)
    )
    order_id = result.scalar_one_or_none()
    if order_id is None:
        return None
    return await lock_order(db, order_id)


async def apply_shipping_status(
    db: AsyncSession,
    provider_order_id: str,
    status: str,
    *,
    dispatcher: Optional[BackgroundDispatcher] = None,
) -> Optional[Order]:
    """Translate a normalized provider status into an order transition.

    ``status`` is one of picked_up, in_transit, delivered, returned,
    courier_not_found. A shipped order is never cancelled from here.
    """
    after = _AfterCommit()
    try:
        order = await _lock_by_provider_id(db, provider_order_id)
        if order is None:
            logger.warning("Shipping update for unknown provider order %s", provider_order_id)
            await db.commit()  # read-only; keeps the caller's loaded objects
            return None

        moving = status in (PICKED_UP, IN_TRANSIT, DELIVERED)
        if moving and order.status == OrderStatus.PROCESSING and order.remaining_balance <= 0:
            after.extend(
                await _ship_locked(
                    db, order, courier=order.courier, tracking_number=order.tracking_number, actor="shipping"
                )
            )

        if status == DELIVERED and order.status == OrderStatus.SHIPPED:
            after.extend(_complete_locked(db, order, "shipping"))
        elif status == RETURNED and order.fulfillment_status != FulfillmentStatus.RETURNED:
            order.fulfillment_status = FulfillmentStatus.RETURNED
            log_order(db, order.id, "returned", actor="shipping", note="Shipment returned to sender")
        elif status == COURIER_NOT_FOUND:
            log_order(db, order.id, "courier_not_found", actor="shipping", note="Provider could not assign a courier")
        elif moving and order.status not in (OrderStatus.SHIPPED, OrderStatus.COMPLETED):
            logger.warning(
                "Ignoring %s for order %s in status %s",
                status,
                order.order_number,
                order.status.value,
            )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    await after.run(dispatcher)
    return order


async def apply_shipping_waybill(
    db: AsyncSession, provider_order_id: str, waybill_id: str
) -> Optional[Order]:
    try:
        order = await _lock_by_provider_id(db, provider_order_id)
        if order is None:
            await db.commit()
            return None
        if order.tracking_number != waybill_id:
            order.tracking_number = waybill_id
            log_order(db, order.id, "waybill_updated", actor="shipping", note=waybill_id, is_customer_visible=True)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return order


async def record_shipping_price(
    db: AsyncSession, provider_order_id: str, price: Decimal
) -> Optional[Order]:
    """Provider-side price changes are logged for review, never applied to totals."""
    try:
        order = await _lock_by_provider_id(db, provider_order_id)
        if order is None:
            await db.commit()
            return None
        log_order(
            db,
            order.id,
            "shipping_price_updated",
            actor="shipping",
            note=f"Provider price {price} (charged {order.shipping_cost})",
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return order
