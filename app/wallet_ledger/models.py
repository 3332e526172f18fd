import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on the way back; treat naive values as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_id() -> str:
    return str(uuid.uuid4())


MONEY_PRECISION = 20
MONEY_SCALE = 8
MONEY = Numeric(MONEY_PRECISION, MONEY_SCALE)
ZERO = Decimal("0")
MAX_PAGE_SIZE = 100


class Base(DeclarativeBase):
    pass


class EntryType(str, enum.Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    INVESTMENT = "investment"
    RETURN = "return"
    FEE = "fee"
    REFUND = "refund"


class EntryStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELED = "canceled"


CREDIT_TYPES = frozenset({EntryType.DEPOSIT, EntryType.RETURN})
DEBIT_TYPES = frozenset(
    {EntryType.WITHDRAWAL, EntryType.INVESTMENT, EntryType.FEE, EntryType.REFUND}
)


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    property_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    payment_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    wallet_address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )
    expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class WalletAccount(Base):
    __tablename__ = "wallet_accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    balance: Mapped[Decimal] = mapped_column(MONEY, default=ZERO, nullable=False)
    available_balance: Mapped[Decimal] = mapped_column(
        MONEY, default=ZERO, nullable=False
    )
    pending_deposits: Mapped[Decimal] = mapped_column(
        MONEY, default=ZERO, nullable=False
    )
    pending_withdrawals: Mapped[Decimal] = mapped_column(
        MONEY, default=ZERO, nullable=False
    )
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class LedgerEntry(Base):
    """Itemized wallet mutation; ``amount`` is a positive magnitude."""

    __tablename__ = "ledger_entries"
    __table_args__ = (
        UniqueConstraint(
            "wallet_id", "reference", "type", name="uq_ledger_wallet_reference_type"
        ),
        Index("ix_ledger_wallet_created", "wallet_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    wallet_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("wallet_accounts.id"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    reference: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    @property
    def signed_amount(self) -> Decimal:
        if EntryType(self.type) in CREDIT_TYPES:
            return self.amount
        return -self.amount


class AdminAction(Base):
    """Append-only audit trail of admin operations."""

    __tablename__ = "admin_actions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    admin_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    details: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
