"""Store-credit wallet models."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base
from services.commerce_service.models.enums import (
    WalletDirection,
    WalletTransactionType,
    enum_values,
)
from sqlalchemy import CheckConstraint, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship


class StoreWallet(Base):
    """Per-user store-credit balance."""

    __tablename__ = "commerce_wallets"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    balance: Mapped[Decimal] = mapped_column(
        Numeric(20, 2), default=Decimal("0"), nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    __table_args__ = (CheckConstraint("balance >= 0", name="non_negative_balance"),)

    transactions = relationship("WalletTransaction", back_populates="wallet")

    def __repr__(self):
        return f"<StoreWallet {self.user_id} balance={self.balance}>"


class WalletTransaction(Base):
    """Wallet movement with balance snapshots for auditability."""

    __tablename__ = "commerce_wallet_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    wallet_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("commerce_wallets.id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    direction: Mapped[WalletDirection] = mapped_column(
        SAEnum(
            WalletDirection, values_callable=enum_values, name="commerce_wallet_direction_enum"
        ),
        nullable=False,
    )
    transaction_type: Mapped[WalletTransactionType] = mapped_column(
        SAEnum(
            WalletTransactionType,
            values_callable=enum_values,
            name="commerce_wallet_transaction_type_enum",
        ),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    balance_before: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)

    reference_type: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    reference_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(150), unique=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (CheckConstraint("amount > 0", name="positive_amount"),)

    wallet = relationship("StoreWallet", back_populates="transactions")

    def __repr__(self):
        return f"<WalletTransaction {self.direction} {self.amount} ({self.transaction_type})>"
