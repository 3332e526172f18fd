"""Comparison of stored wallet balances with their ledger history."""

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .audit import record_admin_action
from .exceptions import NotFoundError
from .models import ZERO, EntryStatus, LedgerEntry, WalletAccount, utcnow

logger = logging.getLogger(__name__)

BALANCED = "balanced"
DISCREPANCY = "discrepancy_found"


@dataclass(frozen=True)
class ReconciliationReport:
    wallet_id: str
    actual_balance: Decimal
    expected_balance: Decimal
    discrepancy: Decimal
    transaction_count: int
    timestamp: datetime

    @property
    def status(self) -> str:
        return BALANCED if self.discrepancy == ZERO else DISCREPANCY

    @property
    def message(self) -> str:
        if self.status == BALANCED:
            return "Wallet balance matches transaction history"
        return f"Discrepancy of {self.discrepancy} detected"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "walletId": self.wallet_id,
            "actualBalance": str(self.actual_balance),
            "expectedBalance": str(self.expected_balance),
            "discrepancy": str(self.discrepancy),
            "transactionCount": self.transaction_count,
            "timestamp": self.timestamp.isoformat(),
            "status": self.status,
            "message": self.message,
        }


def _build_report(wallet: WalletAccount, entries: List[LedgerEntry]) -> ReconciliationReport:
    expected = sum((entry.signed_amount for entry in entries), ZERO)
    report = ReconciliationReport(
        wallet_id=wallet.id,
        actual_balance=wallet.balance,
        expected_balance=expected,
        discrepancy=wallet.balance - expected,
        transaction_count=len(entries),
        timestamp=utcnow(),
    )
    if report.status == DISCREPANCY:
        logger.warning(
            "Wallet %s out of balance: stored %s, ledger %s",
            wallet.id,
            wallet.balance,
            expected,
        )
    return report


def wallet_snapshot_query(wallet_id: Optional[str] = None) -> Select:
    """Select wallets under a share lock.

    Ledger writers lock the wallet row ``FOR UPDATE``, so while the share lock
    is held the stored balance and the entries read next come from the same
    committed state.
    """
    stmt = select(WalletAccount).order_by(WalletAccount.id).with_for_update(read=True)
    if wallet_id is not None:
        stmt = stmt.where(WalletAccount.id == wallet_id)
    return stmt


class ReconciliationEngine:
    """Never touches balances; discrepancies are reported for an operator to resolve.

    When an ``admin_id`` is given the run is recorded as an ``AdminAction`` in
    the same transaction as the read.
    """

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]):
        self._sessionmaker = sessionmaker

    async def reconcile(
        self, wallet_id: str, admin_id: Optional[str] = None
    ) -> ReconciliationReport:
        async with self._sessionmaker.begin() as session:
            wallet = (
                await session.execute(wallet_snapshot_query(wallet_id))
            ).scalar_one_or_none()
            if wallet is None:
                raise NotFoundError(f"Wallet not found: {wallet_id}")
            result = await session.execute(
                select(LedgerEntry).where(
                    LedgerEntry.wallet_id == wallet_id,
                    LedgerEntry.status == EntryStatus.COMPLETED.value,
                )
            )
            report = _build_report(wallet, list(result.scalars().all()))
            if admin_id is not None:
                await record_admin_action(
                    session,
                    admin_id,
                    "reconcile_wallet",
                    wallet_id,
                    details={
                        "status": report.status,
                        "discrepancy": str(report.discrepancy),
                    },
                )
        return report

    async def reconcile_all(
        self, admin_id: Optional[str] = None
    ) -> List[ReconciliationReport]:
        async with self._sessionmaker.begin() as session:
            wallets = (
                await session.execute(wallet_snapshot_query())
            ).scalars().all()
            result = await session.execute(
                select(LedgerEntry).where(
                    LedgerEntry.status == EntryStatus.COMPLETED.value
                )
            )
            by_wallet: Dict[str, List[LedgerEntry]] = defaultdict(list)
            for entry in result.scalars().all():
                by_wallet[entry.wallet_id].append(entry)

            reports = [
                _build_report(wallet, by_wallet.get(wallet.id, [])) for wallet in wallets
            ]
            out_of_balance = sum(1 for report in reports if report.status == DISCREPANCY)
            if admin_id is not None:
                await record_admin_action(
                    session,
                    admin_id,
                    "reconcile_all_wallets",
                    "all",
                    details={"wallets": len(reports), "discrepancies": out_of_balance},
                )

        logger.info(
            "Reconciled %d wallets, %d with discrepancies", len(reports), out_of_balance
        )
        return reports
