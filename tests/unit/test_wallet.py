"""Unit tests for store-credit wallet operations.

Tests call the wallet functions directly with the db_session fixture.
"""

from decimal import Decimal

import pytest
from services.commerce_service.errors import InsufficientWalletBalanceError
from services.commerce_service.models import WalletDirection, WalletTransactionType
from services.commerce_service.services.wallet import (
    credit_wallet,
    debit_wallet,
    get_or_create_wallet,
    wallet_balance,
)
from tests.factories import unique_user_id


async def _fund(db, user_id, amount="100000", key=None):
    return await credit_wallet(
        db,
        user_id=user_id,
        amount=Decimal(amount),
        transaction_type=WalletTransactionType.TOPUP,
        idempotency_key=key or f"fund:{user_id}",
    )


@pytest.mark.asyncio
@pytest.mark.unit
async def test_get_or_create_wallet_starts_empty_and_is_reused(db_session):
    user_id = unique_user_id()

    first = await get_or_create_wallet(db_session, user_id)
    second = await get_or_create_wallet(db_session, user_id)

    assert first.id == second.id
    assert first.balance == Decimal("0")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_credit_wallet_records_balance_snapshots(db_session):
    user_id = unique_user_id()

    txn = await _fund(db_session, user_id, "250000")
    await db_session.commit()

    assert txn.direction == WalletDirection.CREDIT
    assert txn.balance_before == Decimal("0")
    assert txn.balance_after == Decimal("250000")
    assert await wallet_balance(db_session, user_id) == Decimal("250000")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_credit_wallet_is_idempotent(db_session):
    user_id = unique_user_id()

    first = await _fund(db_session, user_id, "50000", key="late:abc")
    second = await _fund(db_session, user_id, "50000", key="late:abc")
    await db_session.commit()

    assert first.id == second.id
    assert await wallet_balance(db_session, user_id) == Decimal("50000")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_debit_wallet_reduces_balance(db_session):
    user_id = unique_user_id()
    await _fund(db_session, user_id, "100000")

    txn = await debit_wallet(
        db_session,
        user_id=user_id,
        amount=Decimal("40000"),
        transaction_type=WalletTransactionType.PAYMENT,
        idempotency_key="pay:1",
    )
    await db_session.commit()

    assert txn.direction == WalletDirection.DEBIT
    assert txn.balance_before == Decimal("100000")
    assert txn.balance_after == Decimal("60000")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_debit_wallet_rejects_insufficient_balance(db_session):
    user_id = unique_user_id()
    await _fund(db_session, user_id, "10000")

    with pytest.raises(InsufficientWalletBalanceError):
        await debit_wallet(
            db_session,
            user_id=user_id,
            amount=Decimal("10000.01"),
            transaction_type=WalletTransactionType.PAYMENT,
            idempotency_key="pay:2",
        )

    assert await wallet_balance(db_session, user_id) == Decimal("10000")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_debit_wallet_without_wallet_is_insufficient(db_session):
    with pytest.raises(InsufficientWalletBalanceError):
        await debit_wallet(
            db_session,
            user_id=unique_user_id(),
            amount=Decimal("1"),
            transaction_type=WalletTransactionType.PAYMENT,
            idempotency_key="pay:3",
        )


@pytest.mark.asyncio
@pytest.mark.unit
async def test_wallet_balance_defaults_to_zero(db_session):
    assert await wallet_balance(db_session, unique_user_id()) == Decimal("0")
