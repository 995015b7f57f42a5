"""Stock reservation arithmetic.

Every change is a single conditional UPDATE so the database settles races
between concurrent checkouts; nothing here reads stock and then writes it.
"""

import uuid
from typing import Optional

from libs.common.logging import get_logger
from services.commerce_service.models import Product, StockMovement, StockMovementType
from sqlalchemy import case, update
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


def _record_movement(
    db: AsyncSession,
    product_id: uuid.UUID,
    movement_type: StockMovementType,
    quantity: int,
    order_id: Optional[uuid.UUID],
    note: Optional[str] = None,
) -> None:
    db.add(
        StockMovement(
            product_id=product_id,
            order_id=order_id,
            movement_type=movement_type,
            quantity=quantity,
            note=note,
        )
    )


async def reserve_stock(
    db: AsyncSession,
    product_id: uuid.UUID,
    quantity: int,
    *,
    order_id: Optional[uuid.UUID] = None,
) -> bool:
    """Reserve ``quantity`` only if ``stock - reserved_qty >= quantity``.

    Returns False when the product does not have enough available stock.
    """
    if quantity <= 0:
        raise ValueError("quantity must be positive")

    result = await db.execute(
        update(Product)
        .where(
            Product.id == product_id,
            Product.is_active.is_(True),
            (Product.stock - Product.reserved_qty) >= quantity,
        )
        .values(reserved_qty=Product.reserved_qty + quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info(
            "Reservation rejected for product %s (qty=%d)",
            product_id,
            quantity,
            extra={"extra_fields": {"product_id": str(product_id), "quantity": quantity}},
        )
        return False

    _record_movement(db, product_id, StockMovementType.RESERVE, quantity, order_id)
    return True


async def release_reservation(
    db: AsyncSession,
    product_id: uuid.UUID,
    quantity: int,
    *,
    order_id: Optional[uuid.UUID] = None,
    note: Optional[str] = None,
) -> None:
    """Return reserved units to available stock, never below zero reserved."""
    await db.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(
            reserved_qty=case(
                (Product.reserved_qty >= quantity, Product.reserved_qty - quantity),
                else_=0,
            )
        )
        .execution_options(synchronize_session=False)
    )
    _record_movement(db, product_id, StockMovementType.RELEASE, -quantity, order_id, note)


async def commit_reservation(
    db: AsyncSession,
    product_id: uuid.UUID,
    quantity: int,
    *,
    order_id: Optional[uuid.UUID] = None,
) -> None:
    """Convert a reservation into a permanent stock deduction (payment settled)."""
    await db.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(
            stock=Product.stock - quantity,
            reserved_qty=case(
                (Product.reserved_qty >= quantity, Product.reserved_qty - quantity),
                else_=0,
            ),
        )
        .execution_options(synchronize_session=False)
    )
    _record_movement(db, product_id, StockMovementType.SALE, -quantity, order_id)


async def restock(
    db: AsyncSession,
    product_id: uuid.UUID,
    quantity: int,
    *,
    order_id: Optional[uuid.UUID] = None,
    note: Optional[str] = None,
) -> None:
    """Put committed units back on the shelf (cancellation after payment)."""
    await db.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(stock=Product.stock + quantity)
        .execution_options(synchronize_session=False)
    )
    _record_movement(db, product_id, StockMovementType.RESTOCK, quantity, order_id, note)
