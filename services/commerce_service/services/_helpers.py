"""Shared helpers for order and invoice operations."""

import uuid
from typing import Optional

from services.commerce_service.errors import NotFoundError
from services.commerce_service.models import Order, OrderLog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

SYSTEM_ACTOR = "system"


def log_order(
    db: AsyncSession,
    order_id: uuid.UUID,
    action: str,
    actor: str = SYSTEM_ACTOR,
    note: Optional[str] = None,
    is_customer_visible: bool = False,
) -> OrderLog:
    """Append an entry to the order's audit trail."""
    entry = OrderLog(
        order_id=order_id,
        actor=actor,
        action=action,
        note=note,
        is_customer_visible=is_customer_visible,
    )
    db.add(entry)
    return entry


async def lock_order(db: AsyncSession, order_id: uuid.UUID) -> Order:
    """Load an order with its items, holding a row lock for the transaction."""
    result = await db.execute(
        select(Order)
        .where(Order.id == order_id)
        .options(selectinload(Order.items))
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    order = result.scalar_one_or_none()
    if not order:
        raise NotFoundError(f"Order {order_id} not found")
    return order


async def get_order_detail(db: AsyncSession, order_id: uuid.UUID) -> Order:
    result = await db.execute(
        select(Order)
        .where(Order.id == order_id)
        .options(
            selectinload(Order.items),
            selectinload(Order.invoices),
            selectinload(Order.logs),
        )
        .execution_options(populate_existing=True)
    )
    order = result.scalar_one_or_none()
    if not order:
        raise NotFoundError(f"Order {order_id} not found")
    return order


def order_payload(order: Order, **extra) -> dict:
    """Template data shared by order notifications."""
    return {
        "email": order.customer_email,
        "order_id": str(order.id),
        "order_number": order.order_number,
        "total": str(order.total),
        "remaining_balance": str(order.remaining_balance),
        **extra,
    }
