"""Double-entry ledger: balanced journal posting and account resolution."""

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from libs.common.logging import get_logger
from services.commerce_service.errors import (
    AccountResolutionError,
    LedgerError,
    LedgerImbalanceError,
    NotFoundError,
)
from services.commerce_service.models import (
    DEBIT_NORMAL_ACCOUNT_TYPES,
    Account,
    AccountType,
    Invoice,
    InvoiceType,
    JournalEntry,
    JournalLine,
)
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

ZERO = Decimal("0")
CENT = Decimal("0.01")

# ---------------------------------------------------------------------------
# Mapping keys
# ---------------------------------------------------------------------------
PRIMARY_BANK = "PRIMARY_BANK"
CASH = "CASH"
WALLET_LIABILITY = "WALLET_LIABILITY"
CUSTOMER_DEPOSIT = "CUSTOMER_DEPOSIT"
PO_REVENUE = "PO_REVENUE"
RETAIL_REVENUE = "RETAIL_REVENUE"
GENERIC_REVENUE = "GENERIC_REVENUE"
OTHER_INCOME = "OTHER_INCOME"
COGS_EXPENSE = "COGS_EXPENSE"
INVENTORY_ASSET = "INVENTORY_ASSET"

# Account codes tried after the mapping keys when locating the bank account
FALLBACK_BANK_CODES = ("1002", "1001")

CREDIT_KEYS_BY_INVOICE_TYPE = {
    InvoiceType.TOPUP: (CUSTOMER_DEPOSIT,),
    InvoiceType.DEPOSIT: (CUSTOMER_DEPOSIT,),
    InvoiceType.BALANCE: (PO_REVENUE, GENERIC_REVENUE),
    InvoiceType.FULL: (RETAIL_REVENUE, GENERIC_REVENUE),
}


@dataclass(frozen=True)
class LedgerLine:
    """One side of a journal entry before it is persisted."""

    account_id: uuid.UUID
    debit: Decimal = ZERO
    credit: Decimal = ZERO
    memo: Optional[str] = None


def debit(account: Account, amount: Decimal, memo: Optional[str] = None) -> LedgerLine:
    return LedgerLine(account_id=account.id, debit=amount, memo=memo)


def credit(account: Account, amount: Decimal, memo: Optional[str] = None) -> LedgerLine:
    return LedgerLine(account_id=account.id, credit=amount, memo=memo)


def quantize(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENT)


def balance_delta(account_type: AccountType, debit_amount: Decimal, credit_amount: Decimal) -> Decimal:
    """Signed change to an account's cached balance for one line."""
    if account_type in DEBIT_NORMAL_ACCOUNT_TYPES:
        return debit_amount - credit_amount
    return credit_amount - debit_amount


def _validate_lines(lines: list[LedgerLine]) -> tuple[Decimal, Decimal]:
    if len(lines) < 2:
        raise LedgerError("A journal entry needs at least two lines")

    total_debit = ZERO
    total_credit = ZERO
    for line in lines:
        if line.debit < 0 or line.credit < 0:
            raise LedgerError("Journal line amounts must not be negative")
        if (line.debit > 0) == (line.credit > 0):
            raise LedgerError("Each journal line must be either a debit or a credit")
        total_debit += quantize(line.debit)
        total_credit += quantize(line.credit)

    if total_debit != total_credit:
        raise LedgerImbalanceError(
            f"Unbalanced journal entry: debit {total_debit} != credit {total_credit}"
        )
    return total_debit, total_credit


async def post_journal(
    db: AsyncSession,
    *,
    reference_id: str,
    reference_type: str,
    description: str,
    lines: Iterable[LedgerLine],
    reversal_of_id: Optional[uuid.UUID] = None,
) -> JournalEntry:
    """Persist a balanced journal entry and update cached account balances.

    The entry is validated before anything touches the session; an imbalanced
    entry is never written. Balances are adjusted with in-place UPDATEs so
    concurrent postings against the same account do not lose updates.
    The caller owns the transaction.
    """
    lines = list(lines)
    total_debit, _ = _validate_lines(lines)

    account_ids = {line.account_id for line in lines}
    result = await db.execute(select(Account).where(Account.id.in_(account_ids)))
    accounts = {account.id: account for account in result.scalars().all()}
    missing = account_ids - accounts.keys()
    if missing:
        raise AccountResolutionError(f"Unknown ledger account(s): {sorted(map(str, missing))}")

    entry = JournalEntry(
        description=description,
        reference_id=reference_id,
        reference_type=reference_type,
        reversal_of_id=reversal_of_id,
    )
    for line in lines:
        entry.lines.append(
            JournalLine(
                account_id=line.account_id,
                debit=quantize(line.debit),
                credit=quantize(line.credit),
                memo=line.memo,
            )
        )
    db.add(entry)
    await db.flush()

    for line in lines:
        account = accounts[line.account_id]
        delta = balance_delta(account.type, quantize(line.debit), quantize(line.credit))
        await db.execute(
            update(Account)
            .where(Account.id == account.id)
            .values(balance=Account.balance + delta)
            .execution_options(synchronize_session=False)
        )

    logger.info(
        "Posted journal entry %s (%s:%s) for %s",
        entry.id,
        reference_type,
        reference_id,
        total_debit,
        extra={
            "extra_fields": {
                "journal_entry_id": str(entry.id),
                "reference_type": reference_type,
                "reference_id": reference_id,
                "amount": str(total_debit),
            }
        },
    )
    return entry


async def reverse_entry(
    db: AsyncSession,
    entry_id: uuid.UUID,
    *,
    description: Optional[str] = None,
) -> JournalEntry:
    """Post the mirror image of an existing entry."""
    original = await db.get(JournalEntry, entry_id)
    if not original:
        raise NotFoundError(f"Journal entry {entry_id} not found")

    mirrored = [
        LedgerLine(
            account_id=line.account_id,
            debit=line.credit,
            credit=line.debit,
            memo=line.memo,
        )
        for line in original.lines
    ]
    return await post_journal(
        db,
        reference_id=original.reference_id or str(original.id),
        reference_type=f"{original.reference_type or 'entry'}_reversal",
        description=description or f"Reversal of: {original.description}",
        lines=mirrored,
        reversal_of_id=original.id,
    )


# ---------------------------------------------------------------------------
# Account resolution
# ---------------------------------------------------------------------------


async def find_account_by_key(db: AsyncSession, mapping_key: str) -> Optional[Account]:
    result = await db.execute(
        select(Account).where(
            Account.mapping_key == mapping_key,
            Account.is_active.is_(True),
        )
    )
    return result.scalar_one_or_none()


async def _first_account_of_type(
    db: AsyncSession, account_type: AccountType
) -> Optional[Account]:
    result = await db.execute(
        select(Account)
        .where(Account.type == account_type, Account.is_active.is_(True))
        .order_by(Account.code.asc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def resolve_account(
    db: AsyncSession,
    *mapping_keys: str,
    fallback_type: Optional[AccountType] = None,
) -> Account:
    """Resolve the first mapped account among ``mapping_keys``.

    Falls back to the first active account of ``fallback_type``. Raises
    AccountResolutionError when nothing matches.
    """
    for key in mapping_keys:
        account = await find_account_by_key(db, key)
        if account:
            return account

    if fallback_type is not None:
        account = await _first_account_of_type(db, fallback_type)
        if account:
            logger.warning(
                "No account mapped for %s, falling back to %s %s",
                "/".join(mapping_keys),
                account.code,
                account.name,
            )
            return account

    raise AccountResolutionError(
        f"No ledger account configured for {'/'.join(mapping_keys) or fallback_type}"
    )


async def resolve_bank_account(db: AsyncSession) -> Account:
    """Primary bank, then cash, then well-known codes, then a bank/cash-named asset."""
    for key in (PRIMARY_BANK, CASH):
        account = await find_account_by_key(db, key)
        if account:
            return account

    for code in FALLBACK_BANK_CODES:
        result = await db.execute(
            select(Account).where(Account.code == code, Account.is_active.is_(True))
        )
        account = result.scalar_one_or_none()
        if account:
            return account

    result = await db.execute(
        select(Account)
        .where(
            Account.type == AccountType.ASSET,
            Account.is_active.is_(True),
            or_(Account.name.ilike("%bank%"), Account.name.ilike("%cash%")),
        )
        .order_by(Account.code.asc())
        .limit(1)
    )
    account = result.scalar_one_or_none()
    if account:
        return account

    raise AccountResolutionError("No bank or cash account configured")


async def resolve_cash_account(db: AsyncSession) -> Account:
    """Cash drawer account; stores without one bank counter sales directly."""
    account = await find_account_by_key(db, CASH)
    if account:
        return account
    return await resolve_bank_account(db)


async def resolve_invoice_credit_account(db: AsyncSession, invoice_type: InvoiceType) -> Account:
    """Account credited when an invoice of ``invoice_type`` is paid."""
    fallback = (
        AccountType.LIABILITY
        if invoice_type in (InvoiceType.TOPUP, InvoiceType.DEPOSIT)
        else AccountType.REVENUE
    )
    return await resolve_account(
        db, *CREDIT_KEYS_BY_INVOICE_TYPE[invoice_type], fallback_type=fallback
    )


async def record_payment(
    db: AsyncSession,
    invoice: Invoice,
    gateway_ref: Optional[str] = None,
    *,
    wallet_funded: bool = False,
    cash_funded: bool = False,
) -> Optional[JournalEntry]:
    """Journal a settled invoice.

    Dr bank (cash for counter sales, wallet liability for store-credit
    payments) / Cr the deposit liability or revenue account matching the
    invoice type. Never skips: an
    unresolvable account raises and aborts the caller's transaction.
    """
    if wallet_funded:
        debit_account = await resolve_account(db, WALLET_LIABILITY)
    elif cash_funded:
        debit_account = await resolve_cash_account(db)
    else:
        debit_account = await resolve_bank_account(db)
    credit_account = await resolve_invoice_credit_account(db, invoice.type)

    amount = quantize(invoice.amount)
    if amount == 0:
        logger.info("Invoice %s settled with zero amount, no journal", invoice.invoice_number)
        return None
    reference = gateway_ref or invoice.invoice_number
    return await post_journal(
        db,
        reference_id=reference,
        reference_type="invoice_payment",
        description=f"Payment for {invoice.invoice_number} ({invoice.type.value})",
        lines=[
            debit(debit_account, amount, memo=invoice.invoice_number),
            credit(credit_account, amount, memo=invoice.invoice_number),
        ],
    )


async def account_balance(db: AsyncSession, mapping_key: str) -> Decimal:
    account = await find_account_by_key(db, mapping_key)
    if not account:
        raise NotFoundError(f"No account mapped to {mapping_key}")
    await db.refresh(account, attribute_names=["balance"])
    return account.balance
