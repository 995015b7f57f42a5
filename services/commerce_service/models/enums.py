"""Enum definitions for commerce service models."""

import enum


def enum_values(enum_cls):
    """Return persistent DB values for SAEnum mappings."""
    return [member.value for member in enum_cls]


class ProductType(str, enum.Enum):
    READY = "ready"
    PRE_ORDER = "pre_order"


class StockMovementType(str, enum.Enum):
    RESERVE = "reserve"
    RELEASE = "release"
    SALE = "sale"
    RESTOCK = "restock"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PRE_ORDER = "pre_order"
    PAYMENT_DUE = "payment_due"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_ORDER_STATUSES = frozenset(
    {OrderStatus.SHIPPED, OrderStatus.COMPLETED, OrderStatus.CANCELLED}
)


class PaymentStatus(str, enum.Enum):
    UNPAID = "unpaid"
    DEPOSIT_PAID = "deposit_paid"
    BALANCE_DUE = "balance_due"
    PAID = "paid"
    PAID_FULL = "paid_full"
    FAILED = "failed"
    REFUNDED = "refunded"
    REFUNDED_PARTIAL = "refunded_partial"


class FulfillmentStatus(str, enum.Enum):
    UNFULFILLED = "unfulfilled"
    READY_TO_SHIP = "ready_to_ship"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    RETURNED = "returned"
    CANCELLED = "cancelled"


class InvoiceType(str, enum.Enum):
    FULL = "full"
    DEPOSIT = "deposit"
    BALANCE = "balance"
    TOPUP = "topup"


class InvoiceStatus(str, enum.Enum):
    PENDING_ARRIVAL = "pending_arrival"
    UNPAID = "unpaid"
    PAID = "paid"
    PAID_LATE = "paid_late"
    EXPIRED = "expired"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Statuses a settlement may transition an invoice out of.
FINALIZABLE_INVOICE_STATUSES = frozenset(
    {
        InvoiceStatus.UNPAID,
        InvoiceStatus.EXPIRED,
        InvoiceStatus.FAILED,
        InvoiceStatus.CANCELLED,
    }
)
LATE_INVOICE_STATUSES = frozenset(
    {InvoiceStatus.EXPIRED, InvoiceStatus.CANCELLED, InvoiceStatus.FAILED}
)
SETTLED_INVOICE_STATUSES = frozenset({InvoiceStatus.PAID, InvoiceStatus.PAID_LATE})


class PaymentMethod(str, enum.Enum):
    GATEWAY = "gateway"
    WALLET = "wallet"
    MANUAL = "manual"
    CASH = "cash"


class TransactionKind(str, enum.Enum):
    PAYMENT = "payment"
    REFUND = "refund"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class AccountType(str, enum.Enum):
    ASSET = "asset"
    LIABILITY = "liability"
    EQUITY = "equity"
    REVENUE = "revenue"
    EXPENSE = "expense"
    COGS = "cogs"


DEBIT_NORMAL_ACCOUNT_TYPES = frozenset(
    {AccountType.ASSET, AccountType.EXPENSE, AccountType.COGS}
)


class WalletDirection(str, enum.Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class WalletTransactionType(str, enum.Enum):
    TOPUP = "topup"
    PAYMENT = "payment"
    REFUND = "refund"
    LATE_PAYMENT_CREDIT = "late_payment_credit"
    ADJUSTMENT = "adjustment"


class DiscountType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"
