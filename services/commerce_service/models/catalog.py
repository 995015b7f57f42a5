"""Product stock records, vouchers and runtime settings."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base
from services.commerce_service.models.enums import (
    DiscountType,
    ProductType,
    StockMovementType,
    enum_values,
)
from sqlalchemy import JSON, Boolean, CheckConstraint, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey, Integer, Numeric, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

# ============================================================================
# PRODUCT STOCK
# ============================================================================


class Product(Base):
    """The slice of a catalog product the order engine depends on.

    ``stock`` is physically owned inventory, ``reserved_qty`` is inventory
    promised to open orders.
    """

    __tablename__ = "commerce_products"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    sku: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    price: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    supplier_cost: Mapped[Decimal] = mapped_column(
        Numeric(20, 2), default=Decimal("0"), nullable=False
    )
    weight_grams: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    product_type: Mapped[ProductType] = mapped_column(
        SAEnum(ProductType, values_callable=enum_values, name="commerce_product_type_enum"),
        default=ProductType.READY,
        nullable=False,
    )
    # Serialized PreOrderConfig; parse with schemas.parse_pre_order_config
    pre_order_config: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reserved_qty: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("stock >= 0", name="non_negative_stock"),
        CheckConstraint(
            "reserved_qty >= 0 AND reserved_qty <= stock", name="valid_reserved"
        ),
    )

    movements = relationship("StockMovement", back_populates="product")

    @property
    def available_stock(self) -> int:
        return self.stock - self.reserved_qty

    @property
    def is_pre_order(self) -> bool:
        return self.product_type == ProductType.PRE_ORDER

    def __repr__(self):
        return f"<Product {self.sku} stock={self.stock} reserved={self.reserved_qty}>"


class StockMovement(Base):
    """Audit trail for stock and reservation changes."""

    __tablename__ = "commerce_stock_movements"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("commerce_products.id", ondelete="CASCADE"), nullable=False
    )
    order_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    movement_type: Mapped[StockMovementType] = mapped_column(
        SAEnum(
            StockMovementType,
            values_callable=enum_values,
            name="commerce_stock_movement_type_enum",
        ),
        nullable=False,
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    product = relationship("Product", back_populates="movements")

    def __repr__(self):
        return f"<StockMovement {self.movement_type} qty={self.quantity}>"


# ============================================================================
# VOUCHERS
# ============================================================================


class Voucher(Base):
    """Discount code re-validated at checkout."""

    __tablename__ = "commerce_vouchers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    discount_type: Mapped[DiscountType] = mapped_column(
        SAEnum(DiscountType, values_callable=enum_values, name="commerce_discount_type_enum"),
        nullable=False,
    )
    value: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    max_discount: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 2), nullable=True)
    min_purchase: Mapped[Decimal] = mapped_column(
        Numeric(20, 2), default=Decimal("0"), nullable=False
    )

    usage_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    used_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    per_user_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    starts_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    def __repr__(self):
        return f"<Voucher {self.code} {self.discount_type} {self.value}>"


class VoucherUsage(Base):
    __tablename__ = "commerce_voucher_usages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    voucher_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("commerce_vouchers.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    order_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    discount_applied: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    used_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


# ============================================================================
# RUNTIME SETTINGS
# ============================================================================


class StoreSetting(Base):
    """Admin-editable key/value configuration (deposit percentage, due days...)."""

    __tablename__ = "commerce_settings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    key: Mapped[str] = mapped_column(String(100), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    group: Mapped[str] = mapped_column(String(50), default="general", nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    __table_args__ = (UniqueConstraint("key", name="uq_commerce_settings_key"),)

    def __repr__(self):
        return f"<StoreSetting {self.key}={self.value}>"
