import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from redis.asyncio import Redis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .adapters.base import PaymentProvider
from .audit import record_admin_action
from .config import Settings
from .exceptions import NotFoundError, ProviderError, ValidationError
from .ledger import WalletLedger, to_amount
from .models import PaymentTransaction, as_utc, utcnow
from .notifications import PAYMENT_CONFIRMED, NotificationDispatcher
from .state_machine import (
    PaymentStatus,
    TransitionDecision,
    TransitionSource,
    evaluate_transition,
)
from .webhooks import WebhookEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookOutcome:
    payment_id: str
    decision: TransitionDecision
    status: str
    credited: bool = False
    reason: str = ""

    def as_dict(self) -> Dict[str, Any]:
        return {
            "paymentId": self.payment_id,
            "decision": self.decision.value,
            "status": self.status,
            "credited": self.credited,
            "reason": self.reason,
        }


def effective_status(snapshot: Dict[str, Any], now: Optional[datetime] = None) -> str:
    """Status as observed now: a pending payment past its expiry reads as expired."""
    status = snapshot["status"]
    expires_at = snapshot.get("expires_at")
    if status == PaymentStatus.PENDING.value and expires_at:
        if datetime.fromisoformat(expires_at) <= (now or utcnow()):
            return PaymentStatus.EXPIRED.value
    return status


class PaymentService:
    """Payment intents and provider webhook processing, with optional Redis caching."""

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        provider: PaymentProvider,
        ledger: WalletLedger,
        settings: Settings,
        redis: Optional[Redis] = None,
        notifications: Optional[NotificationDispatcher] = None,
    ):
        self._sessionmaker = sessionmaker
        self._provider = provider
        self._ledger = ledger
        self._settings = settings
        self._redis = redis
        self._notifications = notifications
        logger.info("PaymentService initialized with %s", provider.__class__.__name__)

    @staticmethod
    def _cache_key(payment_id: str) -> str:
        return f"payment:{payment_id}"

    @staticmethod
    def _snapshot(payment: PaymentTransaction) -> Dict[str, Any]:
        def iso(value: Optional[datetime]) -> Optional[str]:
            value = as_utc(value)
            return value.isoformat() if value is not None else None

        return {
            "payment_id": payment.id,
            "user_id": payment.user_id,
            "property_id": payment.property_id,
            "amount": str(payment.amount),
            "currency": payment.currency,
            "status": payment.status,
            "order_id": payment.order_id,
            "payment_url": payment.payment_url,
            "wallet_address": payment.wallet_address,
            "tx_hash": payment.tx_hash,
            "created_at": iso(payment.created_at),
            "updated_at": iso(payment.updated_at),
            "expires_at": iso(payment.expires_at),
        }

    async def _cache(self, snapshot: Dict[str, Any]) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.setex(
                self._cache_key(snapshot["payment_id"]),
                self._settings.CACHE_TTL_SECONDS,
                json.dumps(snapshot),
            )
        except Exception as exc:  # pragma: no cover - cache failure
            logger.warning("Failed to cache payment %s: %s", snapshot["payment_id"], exc)

    async def invalidate_cache(self, payment_id: str) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.delete(self._cache_key(payment_id))
        except Exception as exc:  # pragma: no cover - cache failure
            logger.warning("Failed to evict cached payment %s: %s", payment_id, exc)

    # --------------------------------------------------------------- intents

    def _validate_intent(self, user_id: str, amount, currency: str):
        if not user_id or not str(user_id).strip():
            raise ValidationError("userId is required")
        amount = to_amount(amount)
        code = (currency or "").strip().upper()
        if code not in self._settings.SUPPORTED_CURRENCIES:
            raise ValidationError(f"Unsupported currency: {currency}")
        return amount, code

    async def create_intent(
        self,
        user_id: str,
        amount,
        currency: str,
        property_id: Optional[str] = None,
    ) -> PaymentTransaction:
        """Open a provider payment and persist it as pending.

        Nothing is persisted when the provider fails or times out.
        """
        amount, currency = self._validate_intent(user_id, amount, currency)
        order_id = f"{self._settings.ORDER_ID_PREFIX}-{uuid.uuid4().hex[:12].upper()}"
        base_url = self._settings.CALLBACK_BASE_URL.rstrip("/")
        description = (
            f"Property investment ({currency})" if property_id else f"Wallet funding ({currency})"
        )

        try:
            provider_payment = await asyncio.wait_for(
                self._provider.create_payment(
                    amount=amount,
                    currency=currency,
                    order_id=order_id,
                    description=description,
                    callback_url=f"{base_url}/webhooks/payments",
                    success_url=f"{base_url}/wallet?payment={order_id}&status=success",
                    cancel_url=f"{base_url}/wallet?payment={order_id}&status=canceled",
                ),
                timeout=self._settings.PROVIDER_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as exc:
            logger.error(
                "Provider timed out after %ss creating order %s",
                self._settings.PROVIDER_TIMEOUT_SECONDS,
                order_id,
            )
            raise ProviderError("Payment provider timed out", timed_out=True) from exc
        except ProviderError:
            raise
        except Exception as exc:
            logger.exception("Unexpected provider error creating order %s", order_id)
            raise ProviderError(f"Payment provider error: {exc}") from exc

        now = utcnow()
        payment = PaymentTransaction(
            id=provider_payment.id,
            user_id=str(user_id),
            property_id=property_id,
            amount=amount,
            currency=currency,
            status=PaymentStatus.PENDING.value,
            order_id=order_id,
            payment_url=provider_payment.payment_url,
            wallet_address=provider_payment.payment_address,
            created_at=now,
            updated_at=now,
            expires_at=as_utc(provider_payment.expires_at)
            or now + timedelta(seconds=self._settings.PAYMENT_TTL_SECONDS),
        )

        async with self._sessionmaker.begin() as session:
            session.add(payment)
            await self._ledger.reserve_pending_deposit(session, payment.user_id, amount)

        await self._cache(self._snapshot(payment))
        logger.info(
            "Created payment %s (order %s) for user %s: %s %s",
            payment.id,
            order_id,
            payment.user_id,
            amount,
            currency,
        )
        return payment

    # ----------------------------------------------------------------- reads

    async def get_payment(self, payment_id: str) -> Dict[str, Any]:
        snapshot: Optional[Dict[str, Any]] = None

        if self._redis is not None:
            try:
                cached = await self._redis.get(self._cache_key(payment_id))
                if cached:
                    snapshot = json.loads(cached)
            except Exception as exc:  # pragma: no cover - cache failure
                logger.warning("Redis lookup failed for %s: %s", payment_id, exc)

        if snapshot is None:
            async with self._sessionmaker() as session:
                payment = await session.get(PaymentTransaction, payment_id)
            if payment is None:
                raise NotFoundError(f"Payment not found: {payment_id}")
            snapshot = self._snapshot(payment)
            await self._cache(snapshot)

        return {**snapshot, "status": effective_status(snapshot)}

    async def list_user_payments(self, user_id: str) -> List[Dict[str, Any]]:
        async with self._sessionmaker() as session:
            result = await session.execute(
                select(PaymentTransaction)
                .where(PaymentTransaction.user_id == user_id)
                .order_by(PaymentTransaction.created_at.desc())
            )
            payments = result.scalars().all()
        now = utcnow()
        snapshots = [self._snapshot(p) for p in payments]
        return [{**s, "status": effective_status(s, now)} for s in snapshots]

    # -------------------------------------------------------------- webhooks

    async def _lock_payment(
        self, session: AsyncSession, event: WebhookEvent
    ) -> PaymentTransaction:
        stmt = (
            select(PaymentTransaction)
            .where(PaymentTransaction.id == event.id)
            .with_for_update()
        )
        payment = (await session.execute(stmt)).scalar_one_or_none()
        if payment is None and event.order_id:
            stmt = (
                select(PaymentTransaction)
                .where(PaymentTransaction.order_id == event.order_id)
                .with_for_update()
            )
            payment = (await session.execute(stmt)).scalar_one_or_none()
        if payment is None:
            raise NotFoundError(f"Payment not found: {event.id}")
        return payment

    async def handle_webhook_event(self, event: WebhookEvent) -> WebhookOutcome:
        """Apply a verified provider event.

        Redeliveries and events for settled payments are no-ops; transitions
        outside the graph are logged anomalies. Neither raises, so the
        provider never retries them.
        """
        credited = False
        async with self._sessionmaker.begin() as session:
            payment = await self._lock_payment(session, event)
            current = PaymentStatus(payment.status)

            if (
                event.price_currency != payment.currency
                or event.price_amount != payment.amount
            ):
                logger.warning(
                    "Webhook anomaly for payment %s: event %s %s does not match stored %s %s",
                    payment.id,
                    event.price_amount,
                    event.price_currency,
                    payment.amount,
                    payment.currency,
                )
                return WebhookOutcome(
                    payment.id,
                    TransitionDecision.ANOMALY,
                    current.value,
                    reason="amount or currency mismatch",
                )

            transition = evaluate_transition(current, event.status, TransitionSource.WEBHOOK)
            if transition.decision is TransitionDecision.ANOMALY:
                logger.warning(
                    "Webhook anomaly for payment %s: %s", payment.id, transition.reason
                )
                return WebhookOutcome(
                    payment.id, transition.decision, current.value, reason=transition.reason
                )
            if transition.decision is TransitionDecision.DUPLICATE:
                logger.info(
                    "Ignoring webhook for payment %s (%s): %s",
                    payment.id,
                    event.status.value,
                    transition.reason,
                )
                return WebhookOutcome(
                    payment.id, transition.decision, current.value, reason=transition.reason
                )

            payment.status = event.status.value
            payment.updated_at = utcnow()
            if event.tx_hash:
                payment.tx_hash = event.tx_hash
            if event.payment_address and not payment.wallet_address:
                payment.wallet_address = event.payment_address

            if transition.closes_intent:
                await self._ledger.release_pending_deposit(
                    session, payment.user_id, payment.amount
                )
            if transition.credits_wallet:
                result = await self._ledger.credit_wallet(
                    payment.user_id,
                    payment.amount,
                    reference=payment.id,
                    description=f"Crypto deposit ({payment.id})",
                    session=session,
                )
                credited = result.applied

            payment_id = payment.id
            user_id = payment.user_id
            amount = payment.amount
            currency = payment.currency

        await self.invalidate_cache(payment_id)
        logger.info(
            "Payment %s moved %s -> %s%s",
            payment_id,
            current.value,
            event.status.value,
            " (wallet credited)" if credited else "",
        )
        if credited and self._notifications is not None:
            self._notifications.dispatch(
                PAYMENT_CONFIRMED,
                {
                    "paymentId": payment_id,
                    "userId": user_id,
                    "amount": str(amount),
                    "currency": currency,
                },
            )
        return WebhookOutcome(
            payment_id, TransitionDecision.APPLY, event.status.value, credited=credited
        )

    # ---------------------------------------------------------------- expiry

    async def expire_stale_payments(
        self, admin_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> List[str]:
        """Mark pending payments past their expiry as expired."""
        now = now or utcnow()
        expired: List[str] = []
        async with self._sessionmaker.begin() as session:
            result = await session.execute(
                select(PaymentTransaction)
                .where(
                    PaymentTransaction.status == PaymentStatus.PENDING.value,
                    PaymentTransaction.expires_at.is_not(None),
                    PaymentTransaction.expires_at <= now,
                )
                .with_for_update()
            )
            for payment in result.scalars().all():
                transition = evaluate_transition(
                    PaymentStatus(payment.status),
                    PaymentStatus.EXPIRED,
                    TransitionSource.SWEEP,
                )
                if not transition.applies:
                    continue
                payment.status = PaymentStatus.EXPIRED.value
                payment.updated_at = now
                await self._ledger.release_pending_deposit(
                    session, payment.user_id, payment.amount
                )
                expired.append(payment.id)

            if admin_id and expired:
                await record_admin_action(
                    session,
                    admin_id,
                    "expire_payments",
                    target_id="payments",
                    details={"payment_ids": expired},
                )

        for payment_id in expired:
            await self.invalidate_cache(payment_id)
        if expired:
            logger.info("Expired %d stale payments", len(expired))
        return expired
