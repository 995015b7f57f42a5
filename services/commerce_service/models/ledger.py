"""Double-entry ledger models."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base
from services.commerce_service.models.enums import AccountType, enum_values
from sqlalchemy import Boolean, CheckConstraint, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

ZERO = Decimal("0")


class Account(Base):
    """Chart-of-accounts entry with a cached running balance."""

    __tablename__ = "commerce_accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[AccountType] = mapped_column(
        SAEnum(AccountType, values_callable=enum_values, name="commerce_account_type_enum"),
        nullable=False,
    )
    # Semantic lookup key, e.g. PRIMARY_BANK or CUSTOMER_DEPOSIT
    mapping_key: Mapped[Optional[str]] = mapped_column(String(50), unique=True, nullable=True)
    balance: Mapped[Decimal] = mapped_column(Numeric(20, 2), default=ZERO, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    def __repr__(self):
        return f"<Account {self.code} {self.name} balance={self.balance}>"


class JournalEntry(Base):
    """Immutable journal entry; corrections are posted as reversing entries."""

    __tablename__ = "commerce_journal_entries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    entry_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    reference_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    reference_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    reversal_of_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("commerce_journal_entries.id"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    lines = relationship(
        "JournalLine",
        back_populates="entry",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def total_debit(self) -> Decimal:
        return sum((line.debit for line in self.lines), ZERO)

    @property
    def total_credit(self) -> Decimal:
        return sum((line.credit for line in self.lines), ZERO)

    def __repr__(self):
        return f"<JournalEntry {self.reference_type}:{self.reference_id}>"


class JournalLine(Base):
    __tablename__ = "commerce_journal_lines"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    entry_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("commerce_journal_entries.id", ondelete="CASCADE"), nullable=False
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("commerce_accounts.id"), nullable=False, index=True
    )
    debit: Mapped[Decimal] = mapped_column(Numeric(20, 2), default=ZERO, nullable=False)
    credit: Mapped[Decimal] = mapped_column(Numeric(20, 2), default=ZERO, nullable=False)
    memo: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        CheckConstraint("debit >= 0 AND credit >= 0", name="non_negative_sides"),
    )

    entry = relationship("JournalEntry", back_populates="lines")
    account = relationship("Account")

    def __repr__(self):
        return f"<JournalLine dr={self.debit} cr={self.credit}>"
