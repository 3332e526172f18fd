"""Wallet ledger: the only code path that changes a wallet balance.

Each mutation locks the wallet row, writes one ``LedgerEntry`` and updates the
``WalletAccount`` inside a single transaction. The unique constraint on
``(wallet_id, reference, type)`` turns a repeated reference into a no-op even
when two writers race past the existence check.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import AsyncIterator, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .audit import record_admin_action
from .exceptions import InsufficientFundsError, NotFoundError, ValidationError
from .models import (
    CREDIT_TYPES,
    DEBIT_TYPES,
    MAX_PAGE_SIZE,
    MONEY_PRECISION,
    MONEY_SCALE,
    ZERO,
    EntryStatus,
    EntryType,
    LedgerEntry,
    WalletAccount,
    new_id,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class LedgerResult:
    entry: LedgerEntry
    wallet: WalletAccount
    applied: bool


def to_amount(value) -> Decimal:
    """Coerce ``value`` into a strictly positive Decimal the ``MONEY`` column holds exactly.

    Amounts with more than ``MONEY_SCALE`` fractional digits, or more integer
    digits than the column allows, are rejected rather than rounded on write.
    """
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid amount: {value}") from exc
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"Invalid amount: {value}")
    if amount.normalize().as_tuple().exponent < -MONEY_SCALE:
        raise ValidationError(
            f"Invalid amount: {value} has more than {MONEY_SCALE} decimal places"
        )
    if amount.adjusted() + 1 > MONEY_PRECISION - MONEY_SCALE:
        raise ValidationError(f"Invalid amount: {value} is too large")
    return amount


class WalletLedger:
    """Idempotent credits and debits against per-user wallets."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]):
        self._sessionmaker = sessionmaker

    @asynccontextmanager
    async def _unit_of_work(
        self, session: Optional[AsyncSession]
    ) -> AsyncIterator[AsyncSession]:
        if session is not None:
            yield session
            return
        async with self._sessionmaker.begin() as own_session:
            yield own_session

    # ------------------------------------------------------------------ locks

    async def lock_wallet(
        self, session: AsyncSession, user_id: str, create: bool = False
    ) -> Optional[WalletAccount]:
        stmt = (
            select(WalletAccount)
            .where(WalletAccount.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        wallet = (await session.execute(stmt)).scalar_one_or_none()
        if wallet is not None or not create:
            return wallet

        wallet = WalletAccount(
            id=new_id(),
            user_id=user_id,
            balance=ZERO,
            available_balance=ZERO,
            pending_deposits=ZERO,
            pending_withdrawals=ZERO,
            last_updated=utcnow(),
        )
        try:
            async with session.begin_nested():
                session.add(wallet)
        except IntegrityError:
            # Another transaction opened the wallet first.
            wallet = (await session.execute(stmt)).scalar_one()
        else:
            logger.info("Opened wallet %s for user %s", wallet.id, user_id)
        return wallet

    async def _lock_wallet_by_id(
        self, session: AsyncSession, wallet_id: str
    ) -> WalletAccount:
        stmt = (
            select(WalletAccount)
            .where(WalletAccount.id == wallet_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        wallet = (await session.execute(stmt)).scalar_one_or_none()
        if wallet is None:
            raise NotFoundError(f"Wallet not found: {wallet_id}")
        return wallet

    @staticmethod
    async def _find_entry(
        session: AsyncSession, wallet_id: str, reference: str, entry_type: EntryType
    ) -> Optional[LedgerEntry]:
        stmt = select(LedgerEntry).where(
            LedgerEntry.wallet_id == wallet_id,
            LedgerEntry.reference == reference,
            LedgerEntry.type == entry_type.value,
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    async def _insert_entry(
        self, session: AsyncSession, entry: LedgerEntry
    ) -> Optional[LedgerEntry]:
        """Insert ``entry`` or return the row that already owns its reference."""
        try:
            async with session.begin_nested():
                session.add(entry)
        except IntegrityError:
            existing = await self._find_entry(
                session, entry.wallet_id, entry.reference, EntryType(entry.type)
            )
            logger.info(
                "Concurrent %s for reference %s resolved to existing entry %s",
                entry.type,
                entry.reference,
                existing.id if existing else None,
            )
            return existing
        return None

    # ---------------------------------------------------------------- credits

    async def credit_wallet(
        self,
        user_id: str,
        amount,
        reference: str,
        entry_type: EntryType = EntryType.DEPOSIT,
        description: Optional[str] = None,
        session: Optional[AsyncSession] = None,
    ) -> LedgerResult:
        """Credit ``amount`` once per ``(wallet, reference, entry_type)``."""
        amount = to_amount(amount)
        entry_type = EntryType(entry_type)
        if entry_type not in CREDIT_TYPES:
            raise ValidationError(f"{entry_type.value} is not a credit entry type")
        if not reference:
            raise ValidationError("A reference is required for wallet credits")

        async with self._unit_of_work(session) as s:
            wallet = await self.lock_wallet(s, user_id, create=True)
            existing = await self._find_entry(s, wallet.id, reference, entry_type)
            if existing is not None:
                logger.info(
                    "Credit %s for wallet %s already applied; skipping",
                    reference,
                    wallet.id,
                )
                return LedgerResult(existing, wallet, applied=False)

            now = utcnow()
            entry = LedgerEntry(
                id=new_id(),
                wallet_id=wallet.id,
                type=entry_type.value,
                amount=amount,
                status=EntryStatus.COMPLETED.value,
                reference=reference,
                description=description,
                created_at=now,
                completed_at=now,
            )
            winner = await self._insert_entry(s, entry)
            if winner is not None:
                return LedgerResult(winner, wallet, applied=False)

            wallet.balance += amount
            wallet.available_balance += amount
            wallet.last_updated = now
            await s.flush()
            logger.info(
                "Credited %s to wallet %s (%s, reference %s)",
                amount,
                wallet.id,
                entry_type.value,
                reference,
            )
            return LedgerResult(entry, wallet, applied=True)

    # ----------------------------------------------------------------- debits

    async def debit_wallet(
        self,
        user_id: str,
        amount,
        reference: str,
        entry_type: EntryType,
        description: Optional[str] = None,
        session: Optional[AsyncSession] = None,
    ) -> LedgerResult:
        """Debit ``amount`` once per ``(wallet, reference, entry_type)``.

        Raises ``InsufficientFundsError`` when the wallet's available funds are
        below ``amount``; nothing is written in that case.
        """
        amount = to_amount(amount)
        entry_type = EntryType(entry_type)
        if entry_type not in DEBIT_TYPES:
            raise ValidationError(f"{entry_type.value} is not a debit entry type")
        if not reference:
            raise ValidationError("A reference is required for wallet debits")

        async with self._unit_of_work(session) as s:
            wallet = await self.lock_wallet(s, user_id)
            if wallet is None:
                raise NotFoundError(f"Wallet not found for user {user_id}")
            existing = await self._find_entry(s, wallet.id, reference, entry_type)
            if existing is not None:
                logger.info(
                    "Debit %s for wallet %s already applied; skipping",
                    reference,
                    wallet.id,
                )
                return LedgerResult(existing, wallet, applied=False)

            self._ensure_funds(wallet, amount)

            now = utcnow()
            entry = LedgerEntry(
                id=new_id(),
                wallet_id=wallet.id,
                type=entry_type.value,
                amount=amount,
                status=EntryStatus.COMPLETED.value,
                reference=reference,
                description=description,
                created_at=now,
                completed_at=now,
            )
            winner = await self._insert_entry(s, entry)
            if winner is not None:
                return LedgerResult(winner, wallet, applied=False)

            wallet.balance -= amount
            wallet.available_balance -= amount
            wallet.last_updated = now
            await s.flush()
            logger.info(
                "Debited %s from wallet %s (%s, reference %s)",
                amount,
                wallet.id,
                entry_type.value,
                reference,
            )
            return LedgerResult(entry, wallet, applied=True)

    @staticmethod
    def _ensure_funds(wallet: WalletAccount, amount: Decimal) -> None:
        if wallet.available_balance < amount:
            logger.warning(
                "Insufficient funds in wallet %s: available %s, requested %s",
                wallet.id,
                wallet.available_balance,
                amount,
            )
            raise InsufficientFundsError(
                f"Insufficient funds: available {wallet.available_balance}, "
                f"requested {amount}"
            )

    # ------------------------------------------------------------ withdrawals

    async def request_withdrawal(
        self,
        user_id: str,
        amount,
        reference: Optional[str] = None,
        description: Optional[str] = None,
    ) -> LedgerResult:
        """Reserve funds for a withdrawal that an admin settles later."""
        amount = to_amount(amount)
        reference = reference or new_id()

        async with self._sessionmaker.begin() as session:
            wallet = await self.lock_wallet(session, user_id)
            if wallet is None:
                raise NotFoundError(f"Wallet not found for user {user_id}")
            existing = await self._find_entry(
                session, wallet.id, reference, EntryType.WITHDRAWAL
            )
            if existing is not None:
                return LedgerResult(existing, wallet, applied=False)

            self._ensure_funds(wallet, amount)

            now = utcnow()
            entry = LedgerEntry(
                id=new_id(),
                wallet_id=wallet.id,
                type=EntryType.WITHDRAWAL.value,
                amount=amount,
                status=EntryStatus.PENDING.value,
                reference=reference,
                description=description,
                created_at=now,
            )
            winner = await self._insert_entry(session, entry)
            if winner is not None:
                return LedgerResult(winner, wallet, applied=False)

            wallet.available_balance -= amount
            wallet.pending_withdrawals += amount
            wallet.last_updated = now
            await session.flush()
            logger.info(
                "Withdrawal %s of %s requested from wallet %s",
                entry.id,
                amount,
                wallet.id,
            )
            return LedgerResult(entry, wallet, applied=True)

    async def _load_withdrawal(
        self, session: AsyncSession, entry_id: str
    ) -> LedgerEntry:
        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.id == entry_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        entry = (await session.execute(stmt)).scalar_one_or_none()
        if entry is None or entry.type != EntryType.WITHDRAWAL.value:
            raise NotFoundError(f"Withdrawal not found: {entry_id}")
        return entry

    async def complete_withdrawal(
        self, entry_id: str, session: Optional[AsyncSession] = None
    ) -> LedgerResult:
        async with self._unit_of_work(session) as s:
            entry = await self._load_withdrawal(s, entry_id)
            wallet = await self._lock_wallet_by_id(s, entry.wallet_id)
            if entry.status == EntryStatus.COMPLETED.value:
                return LedgerResult(entry, wallet, applied=False)
            if entry.status != EntryStatus.PENDING.value:
                raise ValidationError(f"Withdrawal {entry_id} is {entry.status}")

            now = utcnow()
            entry.status = EntryStatus.COMPLETED.value
            entry.completed_at = now
            wallet.balance -= entry.amount
            wallet.pending_withdrawals -= entry.amount
            wallet.last_updated = now
            await s.flush()
            logger.info("Withdrawal %s settled from wallet %s", entry.id, wallet.id)
            return LedgerResult(entry, wallet, applied=True)

    async def cancel_withdrawal(
        self, entry_id: str, session: Optional[AsyncSession] = None
    ) -> LedgerResult:
        async with self._unit_of_work(session) as s:
            entry = await self._load_withdrawal(s, entry_id)
            wallet = await self._lock_wallet_by_id(s, entry.wallet_id)
            if entry.status == EntryStatus.CANCELED.value:
                return LedgerResult(entry, wallet, applied=False)
            if entry.status != EntryStatus.PENDING.value:
                raise ValidationError(f"Withdrawal {entry_id} is {entry.status}")

            entry.status = EntryStatus.CANCELED.value
            wallet.available_balance += entry.amount
            wallet.pending_withdrawals -= entry.amount
            wallet.last_updated = utcnow()
            await s.flush()
            logger.info("Withdrawal %s canceled for wallet %s", entry.id, wallet.id)
            return LedgerResult(entry, wallet, applied=True)

    async def approve_withdrawal(self, entry_id: str, admin_id: str) -> LedgerResult:
        async with self._sessionmaker.begin() as session:
            result = await self.complete_withdrawal(entry_id, session=session)
            if result.applied:
                await record_admin_action(
                    session,
                    admin_id,
                    "approve_withdrawal",
                    entry_id,
                    details={"wallet_id": result.wallet.id, "amount": str(result.entry.amount)},
                )
        return result

    async def reject_withdrawal(
        self, entry_id: str, admin_id: str, reason: Optional[str] = None
    ) -> LedgerResult:
        async with self._sessionmaker.begin() as session:
            result = await self.cancel_withdrawal(entry_id, session=session)
            if result.applied:
                await record_admin_action(
                    session,
                    admin_id,
                    "reject_withdrawal",
                    entry_id,
                    reason=reason,
                    details={"wallet_id": result.wallet.id, "amount": str(result.entry.amount)},
                )
        return result

    async def admin_credit(
        self,
        wallet_id: str,
        amount,
        reference: str,
        admin_id: str,
        entry_type: EntryType = EntryType.DEPOSIT,
        reason: Optional[str] = None,
    ) -> LedgerResult:
        """Manually credit a wallet by id, audited as ``add_funds``.

        Repeating a ``reference`` returns the existing entry without a second
        credit or audit row.
        """
        async with self._sessionmaker.begin() as session:
            wallet = await self._lock_wallet_by_id(session, wallet_id)
            result = await self.credit_wallet(
                wallet.user_id,
                amount,
                reference,
                entry_type=entry_type,
                description=reason or f"Manual credit by admin {admin_id}",
                session=session,
            )
            if result.applied:
                await record_admin_action(
                    session,
                    admin_id,
                    "add_funds",
                    wallet_id,
                    reason=reason,
                    details={
                        "entry_id": result.entry.id,
                        "type": result.entry.type,
                        "amount": str(result.entry.amount),
                        "reference": reference,
                    },
                )
        return result

    # ------------------------------------------------------- pending deposits

    async def reserve_pending_deposit(
        self, session: AsyncSession, user_id: str, amount: Decimal
    ) -> WalletAccount:
        wallet = await self.lock_wallet(session, user_id, create=True)
        wallet.pending_deposits += amount
        wallet.last_updated = utcnow()
        return wallet

    async def release_pending_deposit(
        self, session: AsyncSession, user_id: str, amount: Decimal
    ) -> Optional[WalletAccount]:
        wallet = await self.lock_wallet(session, user_id)
        if wallet is None:
            return None
        wallet.pending_deposits = max(ZERO, wallet.pending_deposits - amount)
        wallet.last_updated = utcnow()
        return wallet

    # ---------------------------------------------------------------- queries

    async def get_balance(self, user_id: str) -> WalletAccount:
        async with self._sessionmaker() as session:
            stmt = select(WalletAccount).where(WalletAccount.user_id == user_id)
            wallet = (await session.execute(stmt)).scalar_one_or_none()
        if wallet is None:
            raise NotFoundError(f"Wallet not found for user {user_id}")
        return wallet

    async def get_wallet(self, wallet_id: str) -> WalletAccount:
        async with self._sessionmaker() as session:
            wallet = await session.get(WalletAccount, wallet_id)
        if wallet is None:
            raise NotFoundError(f"Wallet not found: {wallet_id}")
        return wallet

    async def list_entries(
        self,
        user_id: str,
        entry_type: Optional[str] = None,
        status: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[LedgerEntry], int]:
        """Return one page of entries (newest first) and the total match count."""
        if page < 1:
            raise ValidationError(f"Invalid page: {page}")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")

        wallet = await self.get_balance(user_id)

        conditions = [LedgerEntry.wallet_id == wallet.id]
        if entry_type and entry_type != "all":
            try:
                conditions.append(LedgerEntry.type == EntryType(entry_type).value)
            except ValueError as exc:
                raise ValidationError(f"Unknown entry type: {entry_type}") from exc
        if status and status != "all":
            try:
                conditions.append(LedgerEntry.status == EntryStatus(status).value)
            except ValueError as exc:
                raise ValidationError(f"Unknown entry status: {status}") from exc
        if start is not None:
            conditions.append(LedgerEntry.created_at >= start)
        if end is not None:
            conditions.append(LedgerEntry.created_at <= end)

        async with self._sessionmaker() as session:
            total = await session.scalar(
                select(func.count()).select_from(LedgerEntry).where(*conditions)
            )
            result = await session.execute(
                select(LedgerEntry)
                .where(*conditions)
                .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id)
                .offset((page - 1) * limit)
                .limit(limit)
            )
            entries = list(result.scalars().all())
        return entries, int(total or 0)
