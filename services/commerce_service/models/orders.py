"""Order, order item and order audit log models."""

import random
import string
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base
from services.commerce_service.models.enums import (
    FulfillmentStatus,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    enum_values,
)
from sqlalchemy import JSON, Boolean, CheckConstraint, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

ZERO = Decimal("0")

SOURCE_ONLINE = "online"
SOURCE_POS = "pos"


class Order(Base):
    """Customer order.

    ``status`` drives the fulfillment lifecycle, ``payment_status`` the
    financial one. ``remaining_balance`` always equals ``total`` minus the sum
    of paid invoices.
    """

    __tablename__ = "commerce_orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Serialized AddressSnapshot payloads
    billing_address: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    shipping_address: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Amounts
    subtotal: Mapped[Decimal] = mapped_column(Numeric(20, 2), default=ZERO, nullable=False)
    shipping_cost: Mapped[Decimal] = mapped_column(Numeric(20, 2), default=ZERO, nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(
        Numeric(20, 2), default=ZERO, nullable=False
    )
    total: Mapped[Decimal] = mapped_column(Numeric(20, 2), default=ZERO, nullable=False)
    deposit_paid: Mapped[Decimal] = mapped_column(Numeric(20, 2), default=ZERO, nullable=False)
    remaining_balance: Mapped[Decimal] = mapped_column(
        Numeric(20, 2), default=ZERO, nullable=False
    )
    refunded_amount: Mapped[Decimal] = mapped_column(
        Numeric(20, 2), default=ZERO, nullable=False
    )
    voucher_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Lifecycle
    status: Mapped[OrderStatus] = mapped_column(
        SAEnum(OrderStatus, values_callable=enum_values, name="commerce_order_status_enum"),
        default=OrderStatus.PENDING,
        nullable=False,
        index=True,
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        SAEnum(
            PaymentStatus, values_callable=enum_values, name="commerce_payment_status_enum"
        ),
        default=PaymentStatus.UNPAID,
        nullable=False,
    )
    payment_method: Mapped[PaymentMethod] = mapped_column(
        SAEnum(
            PaymentMethod, values_callable=enum_values, name="commerce_payment_method_enum"
        ),
        default=PaymentMethod.GATEWAY,
        nullable=False,
    )
    is_pre_order: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # online checkout or point-of-sale counter
    source: Mapped[str] = mapped_column(String(20), default=SOURCE_ONLINE, nullable=False)
    # True once reserved stock has been converted to a permanent deduction
    stock_committed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Fulfillment
    fulfillment_status: Mapped[FulfillmentStatus] = mapped_column(
        SAEnum(
            FulfillmentStatus,
            values_callable=enum_values,
            name="commerce_fulfillment_status_enum",
        ),
        default=FulfillmentStatus.UNFULFILLED,
        nullable=False,
    )
    courier: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    tracking_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    shipping_provider_order_id: Mapped[Optional[str]] = mapped_column(
        String(100), nullable=True, index=True
    )

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    shipped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("remaining_balance >= 0", name="non_negative_remaining"),
        CheckConstraint("total >= 0", name="non_negative_total"),
    )

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.position",
    )
    logs = relationship(
        "OrderLog",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderLog.created_at",
    )
    invoices = relationship("Invoice", back_populates="order")

    @staticmethod
    def generate_order_number(prefix: str = "ORD") -> str:
        """Generate a unique order number like ORD-20260101-7XK2QD (POS-... at the counter)."""
        date_part = utc_now().strftime("%Y%m%d")
        random_part = "".join(random.choices(string.ascii_uppercase + string.digits, k=6))
        return f"{prefix}-{date_part}-{random_part}"

    @property
    def is_cancellable(self) -> bool:
        return self.status not in (
            OrderStatus.SHIPPED,
            OrderStatus.COMPLETED,
            OrderStatus.CANCELLED,
        ) and self.fulfillment_status not in (
            FulfillmentStatus.SHIPPED,
            FulfillmentStatus.DELIVERED,
        )

    def __repr__(self):
        return f"<Order {self.order_number} {self.status} {self.payment_status}>"


class OrderItem(Base):
    """Order line with a cost snapshot taken at order time."""

    __tablename__ = "commerce_order_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("commerce_orders.id", ondelete="CASCADE"), nullable=False
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("commerce_products.id"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    line_total: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    cogs_snapshot: Mapped[Decimal] = mapped_column(
        Numeric(20, 2), default=ZERO, nullable=False
    )

    __table_args__ = (CheckConstraint("quantity > 0", name="positive_quantity"),)

    order = relationship("Order", back_populates="items")

    def __repr__(self):
        return f"<OrderItem {self.product_name} x{self.quantity}>"


class OrderLog(Base):
    """Append-only audit trail entry for an order."""

    __tablename__ = "commerce_order_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("commerce_orders.id", ondelete="CASCADE"), nullable=False
    )
    actor: Mapped[str] = mapped_column(String(100), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_customer_visible: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    order = relationship("Order", back_populates="logs")

    def __repr__(self):
        return f"<OrderLog {self.action} by {self.actor}>"
