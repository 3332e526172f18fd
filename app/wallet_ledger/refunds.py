import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .audit import record_admin_action
from .exceptions import (
    InsufficientFundsError,
    NotFoundError,
    NotRefundableError,
    ValidationError,
)
from .ledger import WalletLedger
from .models import (
    EntryStatus,
    EntryType,
    LedgerEntry,
    PaymentTransaction,
    WalletAccount,
    utcnow,
)
from .notifications import REFUND_ISSUED, NotificationDispatcher
from .payment_service import PaymentService
from .state_machine import PaymentStatus, TransitionSource, evaluate_transition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefundResult:
    payment_id: str
    status: str
    refund_entry_id: str
    amount: Decimal
    wallet_balance: Decimal

    def as_dict(self) -> Dict[str, Any]:
        return {
            "paymentId": self.payment_id,
            "status": self.status,
            "refundEntryId": self.refund_entry_id,
            "amount": str(self.amount),
            "walletBalance": str(self.wallet_balance),
        }


class RefundProcessor:
    """Admin-only reversal of a credited payment.

    The status change, the wallet debit and the audit row commit together or
    not at all.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        ledger: WalletLedger,
        payments: PaymentService,
        notifications: Optional[NotificationDispatcher] = None,
    ):
        self._sessionmaker = sessionmaker
        self._ledger = ledger
        self._payments = payments
        self._notifications = notifications

    @staticmethod
    async def _deposit_entry(
        session: AsyncSession, payment: PaymentTransaction
    ) -> Optional[LedgerEntry]:
        stmt = (
            select(LedgerEntry)
            .join(WalletAccount, WalletAccount.id == LedgerEntry.wallet_id)
            .where(
                WalletAccount.user_id == payment.user_id,
                LedgerEntry.reference == payment.id,
                LedgerEntry.type == EntryType.DEPOSIT.value,
                LedgerEntry.status == EntryStatus.COMPLETED.value,
            )
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    async def request_refund(
        self, payment_id: str, reason: str, admin_id: str
    ) -> RefundResult:
        if not reason or not reason.strip():
            raise ValidationError("A refund reason is required")

        try:
            async with self._sessionmaker.begin() as session:
                stmt = (
                    select(PaymentTransaction)
                    .where(PaymentTransaction.id == payment_id)
                    .with_for_update()
                )
                payment = (await session.execute(stmt)).scalar_one_or_none()
                if payment is None:
                    raise NotFoundError(f"Payment not found: {payment_id}")

                current = PaymentStatus(payment.status)
                transition = evaluate_transition(
                    current, PaymentStatus.REFUNDED, TransitionSource.ADMIN
                )
                if not transition.applies:
                    raise NotRefundableError(f"cannot refund a {current.value} payment")

                deposit = await self._deposit_entry(session, payment)
                if deposit is None:
                    raise NotRefundableError(
                        f"payment {payment_id} was never credited to a wallet"
                    )

                result = await self._ledger.debit_wallet(
                    payment.user_id,
                    deposit.amount,
                    reference=payment.id,
                    entry_type=EntryType.REFUND,
                    description=f"Refund of payment {payment.id}: {reason}",
                    session=session,
                )
                payment.status = PaymentStatus.REFUNDED.value
                payment.updated_at = utcnow()
                await record_admin_action(
                    session,
                    admin_id,
                    "refund_payment",
                    payment.id,
                    reason=reason,
                    details={
                        "amount": str(deposit.amount),
                        "currency": payment.currency,
                        "refund_entry_id": result.entry.id,
                    },
                )
                refund = RefundResult(
                    payment_id=payment.id,
                    status=payment.status,
                    refund_entry_id=result.entry.id,
                    amount=deposit.amount,
                    wallet_balance=result.wallet.balance,
                )
                user_id = payment.user_id
                currency = payment.currency
        except InsufficientFundsError as exc:
            logger.warning(
                "Refund of payment %s requires manual handling: %s",
                payment_id,
                exc.message,
            )
            raise InsufficientFundsError(
                f"Refund of payment {payment_id} cannot be completed automatically; "
                f"{exc.message}"
            ) from exc

        await self._payments.invalidate_cache(payment_id)
        logger.info(
            "Refunded payment %s (%s %s) by admin %s",
            payment_id,
            refund.amount,
            currency,
            admin_id,
        )
        if self._notifications is not None:
            self._notifications.dispatch(
                REFUND_ISSUED,
                {
                    "paymentId": payment_id,
                    "userId": user_id,
                    "amount": str(refund.amount),
                    "currency": currency,
                    "reason": reason,
                },
            )
        return refund
