"""Server-side voucher validation and redemption."""

import uuid
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from libs.common.datetime_utils import ensure_utc, utc_now
from libs.common.logging import get_logger
from services.commerce_service.errors import VoucherError
from services.commerce_service.models import DiscountType, Voucher, VoucherUsage
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

CENT = Decimal("0.01")


@dataclass(frozen=True)
class AppliedVoucher:
    voucher: Voucher
    discount: Decimal


def calculate_discount(voucher: Voucher, subtotal: Decimal) -> Decimal:
    """Percentage (capped by max_discount) or fixed, never above the subtotal."""
    if voucher.discount_type == DiscountType.PERCENTAGE:
        discount = (subtotal * voucher.value / Decimal("100")).quantize(
            CENT, rounding=ROUND_HALF_UP
        )
        if voucher.max_discount is not None and voucher.max_discount > 0:
            discount = min(discount, voucher.max_discount)
    else:
        discount = voucher.value
    return max(min(discount, subtotal), Decimal("0"))


async def validate_voucher(
    db: AsyncSession,
    *,
    code: str,
    user_id: str,
    subtotal: Decimal,
) -> AppliedVoucher:
    """
    Look up and validate a voucher code for ``user_id``.

    Raises VoucherError for unknown, inactive, out-of-window, exhausted or
    below-minimum vouchers. Client-supplied discount amounts are never used.
    """
    normalized = code.strip().upper()
    result = await db.execute(
        select(Voucher).where(Voucher.code == normalized, Voucher.is_active.is_(True))
    )
    voucher = result.scalar_one_or_none()
    if not voucher:
        raise VoucherError(f"Invalid voucher code: {normalized}")

    now = utc_now()
    starts_at = ensure_utc(voucher.starts_at)
    expires_at = ensure_utc(voucher.expires_at)
    if starts_at and starts_at > now:
        raise VoucherError("Voucher is not yet active")
    if expires_at and expires_at < now:
        raise VoucherError("Voucher has expired")

    if voucher.usage_limit is not None and voucher.used_count >= voucher.usage_limit:
        raise VoucherError("Voucher has reached its usage limit")

    if voucher.per_user_limit is not None:
        used_by_user = await db.scalar(
            select(func.count(VoucherUsage.id)).where(
                VoucherUsage.voucher_id == voucher.id,
                VoucherUsage.user_id == user_id,
            )
        )
        if (used_by_user or 0) >= voucher.per_user_limit:
            raise VoucherError("You have already used this voucher")

    if subtotal < voucher.min_purchase:
        raise VoucherError(f"Minimum purchase for this voucher is {voucher.min_purchase}")

    return AppliedVoucher(voucher=voucher, discount=calculate_discount(voucher, subtotal))


async def redeem_voucher(
    db: AsyncSession,
    applied: AppliedVoucher,
    *,
    user_id: str,
    order_id: uuid.UUID,
) -> None:
    """Record usage and bump the global counter without exceeding the limit."""
    voucher = applied.voucher
    result = await db.execute(
        update(Voucher)
        .where(
            Voucher.id == voucher.id,
            or_(Voucher.usage_limit.is_(None), Voucher.used_count < Voucher.usage_limit),
        )
        .values(used_count=Voucher.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise VoucherError("Voucher has reached its usage limit")

    db.add(
        VoucherUsage(
            voucher_id=voucher.id,
            user_id=user_id,
            order_id=order_id,
            discount_applied=applied.discount,
        )
    )
    logger.info("Voucher %s redeemed on order %s (-%s)", voucher.code, order_id, applied.discount)


async def apply_voucher_if_present(
    db: AsyncSession,
    code: Optional[str],
    *,
    user_id: str,
    subtotal: Decimal,
) -> Optional[AppliedVoucher]:
    if not code or not code.strip():
        return None
    return await validate_voucher(db, code=code, user_id=user_id, subtotal=subtotal)
