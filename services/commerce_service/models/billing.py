"""Invoice and payment attempt models."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from libs.common.datetime_utils import compact_timestamp, utc_now
from libs.db.base import Base
from services.commerce_service.models.enums import (
    InvoiceStatus,
    InvoiceType,
    PaymentMethod,
    TransactionKind,
    TransactionStatus,
    enum_values,
)
from sqlalchemy import JSON, CheckConstraint, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship


class Invoice(Base):
    """A payable unit. ``order_id`` is null for standalone wallet top-ups."""

    __tablename__ = "commerce_invoices"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    invoice_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    order_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("commerce_orders.id"), nullable=True, index=True
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    type: Mapped[InvoiceType] = mapped_column(
        SAEnum(InvoiceType, values_callable=enum_values, name="commerce_invoice_type_enum"),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    status: Mapped[InvoiceStatus] = mapped_column(
        SAEnum(InvoiceStatus, values_callable=enum_values, name="commerce_invoice_status_enum"),
        default=InvoiceStatus.UNPAID,
        nullable=False,
        index=True,
    )
    payment_method: Mapped[Optional[PaymentMethod]] = mapped_column(
        SAEnum(
            PaymentMethod,
            values_callable=enum_values,
            name="commerce_payment_method_enum",
        ),
        nullable=True,
    )
    payment_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reminder_sent_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # Last staged balance reminder sent ("h3", "h1")
    reminder_stage: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    __table_args__ = (CheckConstraint("amount >= 0", name="non_negative_amount"),)

    order = relationship("Order", back_populates="invoices")
    transactions = relationship("PaymentTransaction", back_populates="invoice")

    @staticmethod
    def generate_invoice_number(
        invoice_type: InvoiceType, order_number: Optional[str] = None
    ) -> str:
        """INV-{order}-{TYPE}-{timestamp}; top-ups use INV-TOPUP-{random}-{timestamp}."""
        stamp = compact_timestamp()
        if order_number:
            return f"INV-{order_number}-{invoice_type.value.upper()}-{stamp}"
        return f"INV-{invoice_type.value.upper()}-{uuid.uuid4().hex[:6].upper()}-{stamp}"

    def __repr__(self):
        return f"<Invoice {self.invoice_number} {self.type} {self.status}>"


class PaymentTransaction(Base):
    """One attempt to pay (or refund) an invoice through the gateway."""

    __tablename__ = "commerce_payment_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("commerce_invoices.id"), nullable=False, index=True
    )
    merchant_ref_no: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    gateway_ref: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    method: Mapped[str] = mapped_column(String(50), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)

    kind: Mapped[TransactionKind] = mapped_column(
        SAEnum(
            TransactionKind,
            values_callable=enum_values,
            name="commerce_transaction_kind_enum",
        ),
        default=TransactionKind.PAYMENT,
        nullable=False,
    )
    status: Mapped[TransactionStatus] = mapped_column(
        SAEnum(
            TransactionStatus,
            values_callable=enum_values,
            name="commerce_transaction_status_enum",
        ),
        default=TransactionStatus.PENDING,
        nullable=False,
    )
    payment_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    raw_response: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    invoice = relationship("Invoice", back_populates="transactions")

    def __repr__(self):
        return f"<PaymentTransaction {self.merchant_ref_no} {self.status}>"
