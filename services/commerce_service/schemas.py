"""Pydantic schemas for commerce service."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from libs.common.logging import get_logger
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator
from services.commerce_service.models import (
    FulfillmentStatus,
    InvoiceStatus,
    InvoiceType,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
)

logger = get_logger(__name__)

# ============================================================================
# PRE-ORDER CONFIG
# ============================================================================


class FixedDeposit(BaseModel):
    """Deposit of a fixed amount per unit."""

    deposit_type: Literal["fixed"] = "fixed"
    deposit_value: Decimal = Field(..., gt=0)
    balance_due_days: Optional[int] = Field(None, ge=1, le=90)


class PercentDeposit(BaseModel):
    """Deposit as a percentage of the order total."""

    deposit_type: Literal["percent"] = "percent"
    deposit_value: Decimal = Field(..., gt=0, le=100)
    balance_due_days: Optional[int] = Field(None, ge=1, le=90)


PreOrderConfig = Annotated[
    Union[FixedDeposit, PercentDeposit], Field(discriminator="deposit_type")
]
_pre_order_config_adapter = TypeAdapter(PreOrderConfig)


def parse_pre_order_config(
    raw: Optional[dict],
) -> Optional[Union[FixedDeposit, PercentDeposit]]:
    """Load a stored pre-order config; malformed rows fall back to global defaults."""
    if not raw:
        return None
    try:
        return _pre_order_config_adapter.validate_python(raw)
    except ValidationError as exc:
        logger.warning(
            "Ignoring malformed pre-order config",
            extra={"extra_fields": {"config": raw, "error": str(exc)}},
        )
        return None


def dump_pre_order_config(config: Union[FixedDeposit, PercentDeposit]) -> dict:
    return config.model_dump(mode="json")


# ============================================================================
# CHECKOUT SCHEMAS
# ============================================================================


class AddressSnapshot(BaseModel):
    recipient_name: str = Field(..., max_length=255)
    phone: str = Field(..., max_length=30)
    address_line: str = Field(..., max_length=500)
    city: str = Field(..., max_length=100)
    province: Optional[str] = Field(None, max_length=100)
    postal_code: str = Field(..., max_length=20)
    country: str = Field("ID", max_length=2)


class CheckoutItem(BaseModel):
    product_id: uuid.UUID
    quantity: int = Field(..., gt=0, le=1000)


class CheckoutRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=255)
    customer_email: Optional[str] = Field(None, max_length=255)
    items: list[CheckoutItem] = Field(..., min_length=1)
    billing_address: AddressSnapshot
    shipping_address: Optional[AddressSnapshot] = None
    # Quoted by the shipping collaborator before checkout
    shipping_cost: Decimal = Field(Decimal("0"), ge=0)
    payment_method: PaymentMethod = PaymentMethod.GATEWAY
    voucher_code: Optional[str] = Field(None, max_length=50)
    notes: Optional[str] = Field(None, max_length=1000)


class PosOrderRequest(BaseModel):
    """Counter sale rung up by staff."""

    # Walk-in customers without an account are booked to the POS guest user
    user_id: Optional[str] = Field(None, min_length=1, max_length=255)
    customer_name: Optional[str] = Field(None, max_length=255)
    customer_email: Optional[str] = Field(None, max_length=255)
    items: list[CheckoutItem] = Field(..., min_length=1)
    payment_method: PaymentMethod = PaymentMethod.CASH
    # Pre-orders only: take the usual deposit or the whole price now
    pre_order_payment: Literal["deposit", "full"] = "deposit"
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator("payment_method")
    @classmethod
    def counter_payment_method(cls, value: PaymentMethod) -> PaymentMethod:
        if value not in (PaymentMethod.CASH, PaymentMethod.GATEWAY):
            raise ValueError("POS orders are paid in cash or through the gateway")
        return value


# ============================================================================
# ORDER / INVOICE RESPONSES
# ============================================================================


class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    product_id: uuid.UUID
    product_name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


class OrderLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    actor: str
    action: str
    note: Optional[str] = None
    created_at: datetime


class InvoiceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    invoice_number: str
    order_id: Optional[uuid.UUID] = None
    type: InvoiceType
    amount: Decimal
    status: InvoiceStatus
    due_date: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    payment_method: Optional[PaymentMethod] = None


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    order_number: str
    user_id: str
    status: OrderStatus
    payment_status: PaymentStatus
    fulfillment_status: FulfillmentStatus
    is_pre_order: bool
    source: str
    subtotal: Decimal
    shipping_cost: Decimal
    discount_amount: Decimal
    total: Decimal
    deposit_paid: Decimal
    remaining_balance: Decimal
    refunded_amount: Decimal
    voucher_code: Optional[str] = None
    courier: Optional[str] = None
    tracking_number: Optional[str] = None
    created_at: datetime
    items: list[OrderItemResponse] = []


class OrderDetailResponse(OrderResponse):
    invoices: list[InvoiceResponse] = []
    logs: list[OrderLogResponse] = []


class CheckoutResponse(BaseModel):
    order: OrderResponse
    invoices: list[InvoiceResponse]


# ============================================================================
# PAYMENT SCHEMAS
# ============================================================================


class PaymentSubmissionResponse(BaseModel):
    invoice_id: uuid.UUID
    merchant_ref_no: str
    gateway_ref: Optional[str] = None
    payment_url: Optional[str] = None


class WalletPayRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=255)


class SettlementResponse(BaseModel):
    invoice_id: uuid.UUID
    invoice_status: InvoiceStatus
    outcome: str


class GatewayNotification(BaseModel):
    """Push callback body. Field presence is checked explicitly."""

    model_config = ConfigDict(extra="allow")

    merchant_ref_no: Optional[str] = None
    gateway_ref: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[Decimal] = None


class ShippingWebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    event: str
    order_id: str
    status: Optional[str] = None
    courier_waybill_id: Optional[str] = None
    price: Optional[Decimal] = None


# ============================================================================
# WALLET SCHEMAS
# ============================================================================


class TopupRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=255)
    amount: Decimal = Field(..., gt=0)


class WalletResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    balance: Decimal


# ============================================================================
# ADMIN SCHEMAS
# ============================================================================


class MarkArrivedRequest(BaseModel):
    final_shipping_cost: Optional[Decimal] = Field(None, ge=0)


class ShipRequest(BaseModel):
    courier: str = Field(..., max_length=100)
    tracking_number: Optional[str] = Field(None, max_length=100)


class CancelRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class RefundRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=1000)


class SweepReportResponse(BaseModel):
    expired_invoices: int = 0
    cancelled_orders: int = 0
    reminders_sent: int = 0
    balance_reminders_sent: int = 0
    forfeited_orders: int = 0
    failures: int = 0
