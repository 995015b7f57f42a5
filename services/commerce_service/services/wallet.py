"""Store-credit wallet operations: atomic debit/credit with idempotency."""

from decimal import Decimal
from typing import Optional

from libs.common.logging import get_logger
from services.commerce_service.errors import InsufficientWalletBalanceError
from services.commerce_service.models import (
    StoreWallet,
    WalletDirection,
    WalletTransaction,
    WalletTransactionType,
)
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


async def get_wallet(db: AsyncSession, user_id: str) -> Optional[StoreWallet]:
    result = await db.execute(select(StoreWallet).where(StoreWallet.user_id == user_id))
    return result.scalar_one_or_none()


async def get_or_create_wallet(db: AsyncSession, user_id: str) -> StoreWallet:
    """Return the user's wallet, creating an empty one on first use."""
    wallet = await get_wallet(db, user_id)
    if wallet:
        return wallet

    try:
        async with db.begin_nested():
            wallet = StoreWallet(user_id=user_id, balance=Decimal("0"))
            db.add(wallet)
    except IntegrityError:
        # Created concurrently by another transaction
        wallet = await get_wallet(db, user_id)
        if wallet is None:
            raise
    return wallet


async def _find_by_idempotency_key(
    db: AsyncSession, idempotency_key: str
) -> Optional[WalletTransaction]:
    result = await db.execute(
        select(WalletTransaction).where(WalletTransaction.idempotency_key == idempotency_key)
    )
    return result.scalar_one_or_none()


async def credit_wallet(
    db: AsyncSession,
    *,
    user_id: str,
    amount: Decimal,
    transaction_type: WalletTransactionType,
    idempotency_key: str,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    description: Optional[str] = None,
) -> WalletTransaction:
    """Add store credit. Replaying the same idempotency key is a no-op."""
    existing = await _find_by_idempotency_key(db, idempotency_key)
    if existing:
        logger.info("Wallet credit %s already applied", idempotency_key)
        return existing

    wallet = await get_or_create_wallet(db, user_id)
    result = await db.execute(
        update(StoreWallet)
        .where(StoreWallet.id == wallet.id)
        .values(balance=StoreWallet.balance + amount)
        .returning(StoreWallet.balance)
        .execution_options(synchronize_session=False)
    )
    balance_after = Decimal(result.scalar_one())

    txn = WalletTransaction(
        wallet_id=wallet.id,
        user_id=user_id,
        direction=WalletDirection.CREDIT,
        transaction_type=transaction_type,
        amount=amount,
        balance_before=balance_after - amount,
        balance_after=balance_after,
        reference_type=reference_type,
        reference_id=reference_id,
        description=description,
        idempotency_key=idempotency_key,
    )
    db.add(txn)
    await db.flush()

    logger.info(
        "Credited %s to wallet of %s (%s), balance=%s",
        amount,
        user_id,
        transaction_type.value,
        balance_after,
    )
    return txn


async def debit_wallet(
    db: AsyncSession,
    *,
    user_id: str,
    amount: Decimal,
    transaction_type: WalletTransactionType,
    idempotency_key: str,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    description: Optional[str] = None,
) -> WalletTransaction:
    """Spend store credit only if the balance covers ``amount``."""
    existing = await _find_by_idempotency_key(db, idempotency_key)
    if existing:
        logger.info("Wallet debit %s already applied", idempotency_key)
        return existing

    wallet = await get_wallet(db, user_id)
    if wallet is None:
        raise InsufficientWalletBalanceError("Wallet balance is insufficient")

    result = await db.execute(
        update(StoreWallet)
        .where(StoreWallet.id == wallet.id, StoreWallet.balance >= amount)
        .values(balance=StoreWallet.balance - amount)
        .returning(StoreWallet.balance)
        .execution_options(synchronize_session=False)
    )
    balance_after = result.scalar_one_or_none()
    if balance_after is None:
        raise InsufficientWalletBalanceError("Wallet balance is insufficient")
    balance_after = Decimal(balance_after)

    txn = WalletTransaction(
        wallet_id=wallet.id,
        user_id=user_id,
        direction=WalletDirection.DEBIT,
        transaction_type=transaction_type,
        amount=amount,
        balance_before=balance_after + amount,
        balance_after=balance_after,
        reference_type=reference_type,
        reference_id=reference_id,
        description=description,
        idempotency_key=idempotency_key,
    )
    db.add(txn)
    await db.flush()

    logger.info(
        "Debited %s from wallet of %s (%s), balance=%s",
        amount,
        user_id,
        transaction_type.value,
        balance_after,
    )
    return txn


async def wallet_balance(db: AsyncSession, user_id: str) -> Decimal:
    result = await db.execute(select(StoreWallet.balance).where(StoreWallet.user_id == user_id))
    balance = result.scalar_one_or_none()
    return Decimal(balance) if balance is not None else Decimal("0")
