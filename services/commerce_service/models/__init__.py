"""Commerce Service models package."""

from services.commerce_service.models.billing import Invoice, PaymentTransaction
from services.commerce_service.models.catalog import (
    Product,
    StockMovement,
    StoreSetting,
    Voucher,
    VoucherUsage,
)
from services.commerce_service.models.enums import (
    DEBIT_NORMAL_ACCOUNT_TYPES,
    FINALIZABLE_INVOICE_STATUSES,
    LATE_INVOICE_STATUSES,
    SETTLED_INVOICE_STATUSES,
    TERMINAL_ORDER_STATUSES,
    AccountType,
    DiscountType,
    FulfillmentStatus,
    InvoiceStatus,
    InvoiceType,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    ProductType,
    StockMovementType,
    TransactionKind,
    TransactionStatus,
    WalletDirection,
    WalletTransactionType,
)
from services.commerce_service.models.ledger import Account, JournalEntry, JournalLine
from services.commerce_service.models.orders import (
    SOURCE_ONLINE,
    SOURCE_POS,
    Order,
    OrderItem,
    OrderLog,
)
from services.commerce_service.models.wallet import StoreWallet, WalletTransaction

__all__ = [
    "Account",
    "AccountType",
    "DEBIT_NORMAL_ACCOUNT_TYPES",
    "DiscountType",
    "FINALIZABLE_INVOICE_STATUSES",
    "FulfillmentStatus",
    "Invoice",
    "InvoiceStatus",
    "InvoiceType",
    "JournalEntry",
    "JournalLine",
    "LATE_INVOICE_STATUSES",
    "Order",
    "OrderItem",
    "OrderLog",
    "OrderStatus",
    "PaymentMethod",
    "PaymentStatus",
    "PaymentTransaction",
    "Product",
    "ProductType",
    "SETTLED_INVOICE_STATUSES",
    "SOURCE_ONLINE",
    "SOURCE_POS",
    "StockMovement",
    "StockMovementType",
    "StoreSetting",
    "StoreWallet",
    "TERMINAL_ORDER_STATUSES",
    "TransactionKind",
    "TransactionStatus",
    "Voucher",
    "VoucherUsage",
    "WalletDirection",
    "WalletTransaction",
    "WalletTransactionType",
]
