"""create commerce tables

Revision ID: c0a1b2d3e401
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "c0a1b2d3e401"
down_revision = None
branch_labels = None
depends_on = None


ENUMS = {
    "commerce_product_type_enum": ("ready", "pre_order"),
    "commerce_stock_movement_type_enum": ("reserve", "release", "sale", "restock"),
    "commerce_discount_type_enum": ("percentage", "fixed"),
    "commerce_order_status_enum": (
        "pending",
        "pre_order",
        "payment_due",
        "processing",
        "shipped",
        "completed",
        "cancelled",
    ),
    "commerce_payment_status_enum": (
        "unpaid",
        "deposit_paid",
        "balance_due",
        "paid",
        "paid_full",
        "failed",
        "refunded",
        "refunded_partial",
    ),
    "commerce_payment_method_enum": ("gateway", "wallet", "manual", "cash"),
    "commerce_fulfillment_status_enum": (
        "unfulfilled",
        "ready_to_ship",
        "shipped",
        "delivered",
        "returned",
        "cancelled",
    ),
    "commerce_invoice_type_enum": ("full", "deposit", "balance", "topup"),
    "commerce_invoice_status_enum": (
        "pending_arrival",
        "unpaid",
        "paid",
        "paid_late",
        "expired",
        "failed",
        "cancelled",
    ),
    "commerce_transaction_kind_enum": ("payment", "refund"),
    "commerce_transaction_status_enum": ("pending", "success", "failed"),
    "commerce_account_type_enum": (
        "asset",
        "liability",
        "equity",
        "revenue",
        "expense",
        "cogs",
    ),
    "commerce_wallet_direction_enum": ("credit", "debit"),
    "commerce_wallet_transaction_type_enum": (
        "topup",
        "payment",
        "refund",
        "late_payment_credit",
        "adjustment",
    ),
}


def _enum(name: str) -> postgresql.ENUM:
    # Types are created once up front; several tables share them
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), nullable=True)]
    if updated:
        columns.append(sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True))
    return columns


def upgrade() -> None:
    bind = op.get_bind()
    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------
    op.create_table(
        "commerce_products",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("sku", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("price", sa.Numeric(20, 2), nullable=False),
        sa.Column("supplier_cost", sa.Numeric(20, 2), nullable=False),
        sa.Column("weight_grams", sa.Integer(), nullable=False),
        sa.Column("product_type", _enum("commerce_product_type_enum"), nullable=False),
        sa.Column("pre_order_config", sa.JSON(), nullable=True),
        sa.Column("stock", sa.Integer(), nullable=False),
        sa.Column("reserved_qty", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("stock >= 0", name="ck_commerce_products_non_negative_stock"),
        sa.CheckConstraint(
            "reserved_qty >= 0 AND reserved_qty <= stock",
            name="ck_commerce_products_valid_reserved",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_commerce_products"),
        sa.UniqueConstraint("sku", name="uq_commerce_products_sku"),
    )

    op.create_table(
        "commerce_stock_movements",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("product_id", sa.Uuid(), nullable=False),
        sa.Column("order_id", sa.Uuid(), nullable=True),
        sa.Column(
            "movement_type", _enum("commerce_stock_movement_type_enum"), nullable=False
        ),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(
            ["product_id"],
            ["commerce_products.id"],
            name="fk_commerce_stock_movements_product_id_commerce_products",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_commerce_stock_movements"),
    )

    op.create_table(
        "commerce_vouchers",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("code", sa.String(length=50), nullable=False),
        sa.Column("discount_type", _enum("commerce_discount_type_enum"), nullable=False),
        sa.Column("value", sa.Numeric(20, 2), nullable=False),
        sa.Column("max_discount", sa.Numeric(20, 2), nullable=True),
        sa.Column("min_purchase", sa.Numeric(20, 2), nullable=False),
        sa.Column("usage_limit", sa.Integer(), nullable=True),
        sa.Column("used_count", sa.Integer(), nullable=False),
        sa.Column("per_user_limit", sa.Integer(), nullable=True),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_timestamps(updated=False),
        sa.PrimaryKeyConstraint("id", name="pk_commerce_vouchers"),
        sa.UniqueConstraint("code", name="uq_commerce_vouchers_code"),
    )

    op.create_table(
        "commerce_voucher_usages",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("voucher_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("order_id", sa.Uuid(), nullable=False),
        sa.Column("discount_applied", sa.Numeric(20, 2), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["voucher_id"],
            ["commerce_vouchers.id"],
            name="fk_commerce_voucher_usages_voucher_id_commerce_vouchers",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_commerce_voucher_usages"),
    )
    op.create_index(
        "ix_commerce_voucher_usages_user_id", "commerce_voucher_usages", ["user_id"]
    )

    op.create_table(
        "commerce_settings",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("key", sa.String(length=100), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("group", sa.String(length=50), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_commerce_settings"),
        sa.UniqueConstraint("key", name="uq_commerce_settings_key"),
    )

    # ------------------------------------------------------------------
    # Orders & billing
    # ------------------------------------------------------------------
    op.create_table(
        "commerce_orders",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("order_number", sa.String(length=30), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("customer_email", sa.String(length=255), nullable=True),
        sa.Column("billing_address", sa.JSON(), nullable=True),
        sa.Column("shipping_address", sa.JSON(), nullable=True),
        sa.Column("subtotal", sa.Numeric(20, 2), nullable=False),
        sa.Column("shipping_cost", sa.Numeric(20, 2), nullable=False),
        sa.Column("discount_amount", sa.Numeric(20, 2), nullable=False),
        sa.Column("total", sa.Numeric(20, 2), nullable=False),
        sa.Column("deposit_paid", sa.Numeric(20, 2), nullable=False),
        sa.Column("remaining_balance", sa.Numeric(20, 2), nullable=False),
        sa.Column("refunded_amount", sa.Numeric(20, 2), nullable=False),
        sa.Column("voucher_code", sa.String(length=50), nullable=True),
        sa.Column("status", _enum("commerce_order_status_enum"), nullable=False),
        sa.Column(
            "payment_status", _enum("commerce_payment_status_enum"), nullable=False
        ),
        sa.Column(
            "payment_method", _enum("commerce_payment_method_enum"), nullable=False
        ),
        sa.Column("is_pre_order", sa.Boolean(), nullable=False),
        sa.Column("source", sa.String(length=20), nullable=False),
        sa.Column("stock_committed", sa.Boolean(), nullable=False),
        sa.Column(
            "fulfillment_status",
            _enum("commerce_fulfillment_status_enum"),
            nullable=False,
        ),
        sa.Column("courier", sa.String(length=100), nullable=True),
        sa.Column("tracking_number", sa.String(length=100), nullable=True),
        sa.Column("shipping_provider_order_id", sa.String(length=100), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        sa.Column("shipped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "remaining_balance >= 0", name="ck_commerce_orders_non_negative_remaining"
        ),
        sa.CheckConstraint("total >= 0", name="ck_commerce_orders_non_negative_total"),
        sa.PrimaryKeyConstraint("id", name="pk_commerce_orders"),
        sa.UniqueConstraint("order_number", name="uq_commerce_orders_order_number"),
    )
    op.create_index("ix_commerce_orders_user_id", "commerce_orders", ["user_id"])
    op.create_index("ix_commerce_orders_status", "commerce_orders", ["status"])
    op.create_index(
        "ix_commerce_orders_shipping_provider_order_id",
        "commerce_orders",
        ["shipping_provider_order_id"],
    )

    op.create_table(
        "commerce_order_items",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("order_id", sa.Uuid(), nullable=False),
        sa.Column("product_id", sa.Uuid(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("product_name", sa.String(length=255), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price", sa.Numeric(20, 2), nullable=False),
        sa.Column("line_total", sa.Numeric(20, 2), nullable=False),
        sa.Column("cogs_snapshot", sa.Numeric(20, 2), nullable=False),
        sa.CheckConstraint("quantity > 0", name="ck_commerce_order_items_positive_quantity"),
        sa.ForeignKeyConstraint(
            ["order_id"],
            ["commerce_orders.id"],
            name="fk_commerce_order_items_order_id_commerce_orders",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["product_id"],
            ["commerce_products.id"],
            name="fk_commerce_order_items_product_id_commerce_products",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_commerce_order_items"),
    )

    op.create_table(
        "commerce_order_logs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("order_id", sa.Uuid(), nullable=False),
        sa.Column("actor", sa.String(length=100), nullable=False),
        sa.Column("action", sa.String(length=50), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("is_customer_visible", sa.Boolean(), nullable=False),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(
            ["order_id"],
            ["commerce_orders.id"],
            name="fk_commerce_order_logs_order_id_commerce_orders",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_commerce_order_logs"),
    )

    op.create_table(
        "commerce_invoices",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("invoice_number", sa.String(length=64), nullable=False),
        sa.Column("order_id", sa.Uuid(), nullable=True),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("type", _enum("commerce_invoice_type_enum"), nullable=False),
        sa.Column("amount", sa.Numeric(20, 2), nullable=False),
        sa.Column("status", _enum("commerce_invoice_status_enum"), nullable=False),
        sa.Column("payment_method", _enum("commerce_payment_method_enum"), nullable=True),
        sa.Column("payment_reference", sa.String(length=100), nullable=True),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reminder_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reminder_stage", sa.String(length=10), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount >= 0", name="ck_commerce_invoices_non_negative_amount"),
        sa.ForeignKeyConstraint(
            ["order_id"],
            ["commerce_orders.id"],
            name="fk_commerce_invoices_order_id_commerce_orders",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_commerce_invoices"),
        sa.UniqueConstraint("invoice_number", name="uq_commerce_invoices_invoice_number"),
    )
    op.create_index("ix_commerce_invoices_order_id", "commerce_invoices", ["order_id"])
    op.create_index("ix_commerce_invoices_user_id", "commerce_invoices", ["user_id"])
    op.create_index("ix_commerce_invoices_status", "commerce_invoices", ["status"])

    op.create_table(
        "commerce_payment_transactions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("invoice_id", sa.Uuid(), nullable=False),
        sa.Column("merchant_ref_no", sa.String(length=64), nullable=False),
        sa.Column("gateway_ref", sa.String(length=100), nullable=True),
        sa.Column("method", sa.String(length=50), nullable=False),
        sa.Column("amount", sa.Numeric(20, 2), nullable=False),
        sa.Column("kind", _enum("commerce_transaction_kind_enum"), nullable=False),
        sa.Column("status", _enum("commerce_transaction_status_enum"), nullable=False),
        sa.Column("payment_url", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("raw_response", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["invoice_id"],
            ["commerce_invoices.id"],
            name="fk_commerce_payment_transactions_invoice_id_commerce_invoices",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_commerce_payment_transactions"),
        sa.UniqueConstraint(
            "merchant_ref_no", name="uq_commerce_payment_transactions_merchant_ref_no"
        ),
    )
    op.create_index(
        "ix_commerce_payment_transactions_invoice_id",
        "commerce_payment_transactions",
        ["invoice_id"],
    )
    op.create_index(
        "ix_commerce_payment_transactions_gateway_ref",
        "commerce_payment_transactions",
        ["gateway_ref"],
    )

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------
    op.create_table(
        "commerce_accounts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("code", sa.String(length=20), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("type", _enum("commerce_account_type_enum"), nullable=False),
        sa.Column("mapping_key", sa.String(length=50), nullable=True),
        sa.Column("balance", sa.Numeric(20, 2), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_timestamps(updated=False),
        sa.PrimaryKeyConstraint("id", name="pk_commerce_accounts"),
        sa.UniqueConstraint("code", name="uq_commerce_accounts_code"),
        sa.UniqueConstraint("mapping_key", name="uq_commerce_accounts_mapping_key"),
    )

    op.create_table(
        "commerce_journal_entries",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("entry_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("reference_id", sa.String(length=100), nullable=True),
        sa.Column("reference_type", sa.String(length=50), nullable=True),
        sa.Column("reversal_of_id", sa.Uuid(), nullable=True),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(
            ["reversal_of_id"],
            ["commerce_journal_entries.id"],
            name="fk_commerce_journal_entries_reversal_of_id_commerce_journal_entries",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_commerce_journal_entries"),
    )
    op.create_index(
        "ix_commerce_journal_entries_reference_id",
        "commerce_journal_entries",
        ["reference_id"],
    )

    op.create_table(
        "commerce_journal_lines",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("entry_id", sa.Uuid(), nullable=False),
        sa.Column("account_id", sa.Uuid(), nullable=False),
        sa.Column("debit", sa.Numeric(20, 2), nullable=False),
        sa.Column("credit", sa.Numeric(20, 2), nullable=False),
        sa.Column("memo", sa.String(length=255), nullable=True),
        sa.CheckConstraint(
            "debit >= 0 AND credit >= 0",
            name="ck_commerce_journal_lines_non_negative_sides",
        ),
        sa.ForeignKeyConstraint(
            ["entry_id"],
            ["commerce_journal_entries.id"],
            name="fk_commerce_journal_lines_entry_id_commerce_journal_entries",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["account_id"],
            ["commerce_accounts.id"],
            name="fk_commerce_journal_lines_account_id_commerce_accounts",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_commerce_journal_lines"),
    )
    op.create_index(
        "ix_commerce_journal_lines_account_id", "commerce_journal_lines", ["account_id"]
    )

    # ------------------------------------------------------------------
    # Store credit
    # ------------------------------------------------------------------
    op.create_table(
        "commerce_wallets",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("balance", sa.Numeric(20, 2), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("balance >= 0", name="ck_commerce_wallets_non_negative_balance"),
        sa.PrimaryKeyConstraint("id", name="pk_commerce_wallets"),
        sa.UniqueConstraint("user_id", name="uq_commerce_wallets_user_id"),
    )

    op.create_table(
        "commerce_wallet_transactions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("wallet_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("direction", _enum("commerce_wallet_direction_enum"), nullable=False),
        sa.Column(
            "transaction_type",
            _enum("commerce_wallet_transaction_type_enum"),
            nullable=False,
        ),
        sa.Column("amount", sa.Numeric(20, 2), nullable=False),
        sa.Column("balance_before", sa.Numeric(20, 2), nullable=False),
        sa.Column("balance_after", sa.Numeric(20, 2), nullable=False),
        sa.Column("reference_type", sa.String(length=30), nullable=True),
        sa.Column("reference_id", sa.String(length=100), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("idempotency_key", sa.String(length=150), nullable=False),
        *_timestamps(updated=False),
        sa.CheckConstraint(
            "amount > 0", name="ck_commerce_wallet_transactions_positive_amount"
        ),
        sa.ForeignKeyConstraint(
            ["wallet_id"],
            ["commerce_wallets.id"],
            name="fk_commerce_wallet_transactions_wallet_id_commerce_wallets",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_commerce_wallet_transactions"),
        sa.UniqueConstraint(
            "idempotency_key", name="uq_commerce_wallet_transactions_idempotency_key"
        ),
    )
    op.create_index(
        "ix_commerce_wallet_transactions_wallet_id",
        "commerce_wallet_transactions",
        ["wallet_id"],
    )
    op.create_index(
        "ix_commerce_wallet_transactions_user_id",
        "commerce_wallet_transactions",
        ["user_id"],
    )


def downgrade() -> None:
    op.drop_table("commerce_wallet_transactions")
    op.drop_table("commerce_wallets")
    op.drop_table("commerce_journal_lines")
    op.drop_table("commerce_journal_entries")
    op.drop_table("commerce_accounts")
    op.drop_table("commerce_payment_transactions")
    op.drop_table("commerce_invoices")
    op.drop_table("commerce_order_logs")
    op.drop_table("commerce_order_items")
    op.drop_table("commerce_orders")
    op.drop_table("commerce_settings")
    op.drop_table("commerce_voucher_usages")
    op.drop_table("commerce_vouchers")
    op.drop_table("commerce_stock_movements")
    op.drop_table("commerce_products")

    bind = op.get_bind()
    for name in reversed(list(ENUMS)):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
