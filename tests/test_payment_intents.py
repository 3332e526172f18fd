import asyncio
import json
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from tests.helpers import webhook_body
from wallet_ledger.exceptions import NotFoundError, ProviderError, ValidationError
from wallet_ledger.models import AdminAction, PaymentTransaction, utcnow
from wallet_ledger.payment_service import PaymentService
from wallet_ledger.webhooks import parse_webhook_event


async def count_payments(sessionmaker) -> int:
    async with sessionmaker() as session:
        return await session.scalar(select(func.count()).select_from(PaymentTransaction))


@pytest.mark.asyncio
async def test_create_intent_persists_pending_payment(payment_service, provider, ledger, sessionmaker):
    payment = await payment_service.create_intent("U1", Decimal("100"), "usdt")

    assert payment.status == "pending"
    assert payment.currency == "USDT"
    assert payment.payment_url == f"https://pay.example/{payment.id}"
    assert payment.order_id.startswith("WLT-")
    assert payment.expires_at > payment.created_at

    kwargs = provider.create_payment.await_args.kwargs
    assert kwargs["amount"] == Decimal("100")
    assert kwargs["callback_url"].endswith("/webhooks/payments")

    async with sessionmaker() as session:
        stored = await session.get(PaymentTransaction, payment.id)
    assert stored.user_id == "U1"

    wallet = await ledger.get_balance("U1")
    assert wallet.balance == Decimal("0")
    assert wallet.pending_deposits == Decimal("100")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "amount,currency",
    [
        ("0", "BTC"),
        ("-1", "BTC"),
        ("10", "DOGE"),
        ("10", ""),
        ("0.123456789", "ETH"),
        ("1000000000000", "USDT"),
    ],
)
async def test_create_intent_validates_input(payment_service, provider, sessionmaker, amount, currency):
    with pytest.raises(ValidationError):
        await payment_service.create_intent("U1", amount, currency)

    provider.create_payment.assert_not_awaited()
    assert await count_payments(sessionmaker) == 0


@pytest.mark.asyncio
async def test_full_scale_amount_is_credited_exactly(payment_service, ledger):
    payment = await payment_service.create_intent("U1", "0.12345678", "ETH")

    outcome = await payment_service.handle_webhook_event(
        parse_webhook_event(
            webhook_body(payment.id, "paid", amount="0.12345678", currency="ETH")
        )
    )

    assert outcome.credited
    wallet = await ledger.get_balance("U1")
    assert wallet.balance == Decimal("0.12345678")
    assert wallet.pending_deposits == Decimal("0")


@pytest.mark.asyncio
async def test_provider_timeout_persists_nothing(sessionmaker, ledger, settings):
    async def slow_provider(**kwargs):
        await asyncio.sleep(5)

    provider = type("SlowProvider", (), {"create_payment": staticmethod(slow_provider)})()
    service = PaymentService(sessionmaker, provider, ledger, settings)

    with pytest.raises(ProviderError) as exc_info:
        await service.create_intent("U1", "100", "USDT")

    assert exc_info.value.timed_out
    assert exc_info.value.status_code == 504
    assert await count_payments(sessionmaker) == 0


@pytest.mark.asyncio
async def test_provider_failure_persists_nothing(sessionmaker, ledger, settings, provider):
    provider.create_payment.side_effect = ProviderError("Payment provider is unreachable")
    service = PaymentService(sessionmaker, provider, ledger, settings)

    with pytest.raises(ProviderError) as exc_info:
        await service.create_intent("U1", "100", "USDT")

    assert exc_info.value.status_code == 502
    assert await count_payments(sessionmaker) == 0
    with pytest.raises(NotFoundError):
        await ledger.get_balance("U1")


@pytest.mark.asyncio
async def test_payment_snapshot_is_cached(sessionmaker, provider, ledger, settings, mock_redis):
    service = PaymentService(sessionmaker, provider, ledger, settings, redis=mock_redis)

    payment = await service.create_intent("U1", "100", "USDT")

    mock_redis.setex.assert_awaited_once()
    key, ttl, raw = mock_redis.setex.await_args.args
    assert key == f"payment:{payment.id}"
    assert ttl == settings.CACHE_TTL_SECONDS
    assert json.loads(raw)["status"] == "pending"

    mock_redis.get.return_value = raw
    snapshot = await service.get_payment(payment.id)
    assert snapshot["payment_id"] == payment.id
    mock_redis.get.assert_awaited_with(f"payment:{payment.id}")


@pytest.mark.asyncio
async def test_get_payment_unknown(payment_service):
    with pytest.raises(NotFoundError):
        await payment_service.get_payment("missing")


@pytest.mark.asyncio
async def test_stale_pending_payment_reads_as_expired(payment_service, sessionmaker):
    payment = await payment_service.create_intent("U1", "100", "USDT")
    async with sessionmaker.begin() as session:
        stored = await session.get(PaymentTransaction, payment.id)
        stored.expires_at = utcnow() - timedelta(minutes=1)

    snapshot = await payment_service.get_payment(payment.id)
    assert snapshot["status"] == "expired"

    async with sessionmaker() as session:
        stored = await session.get(PaymentTransaction, payment.id)
    assert stored.status == "pending"


@pytest.mark.asyncio
async def test_expire_sweep_marks_and_releases(payment_service, sessionmaker, ledger):
    stale = await payment_service.create_intent("U1", "100", "USDT")
    fresh = await payment_service.create_intent("U1", "40", "USDT")
    async with sessionmaker.begin() as session:
        stored = await session.get(PaymentTransaction, stale.id)
        stored.expires_at = utcnow() - timedelta(minutes=1)

    expired = await payment_service.expire_stale_payments(admin_id="admin-1")

    assert expired == [stale.id]
    async with sessionmaker() as session:
        assert (await session.get(PaymentTransaction, stale.id)).status == "expired"
        assert (await session.get(PaymentTransaction, fresh.id)).status == "pending"
        actions = (await session.execute(select(AdminAction))).scalars().all()
    assert [a.action for a in actions] == ["expire_payments"]

    wallet = await ledger.get_balance("U1")
    assert wallet.pending_deposits == Decimal("40")

    assert await payment_service.expire_stale_payments() == []


@pytest.mark.asyncio
async def test_list_user_payments_newest_first(payment_service):
    first = await payment_service.create_intent("U1", "10", "BTC")
    second = await payment_service.create_intent("U1", "20", "ETH", property_id="prop-7")
    await payment_service.create_intent("U2", "30", "BTC")

    payments = await payment_service.list_user_payments("U1")

    assert [p["payment_id"] for p in payments] == [second.id, first.id]
    assert payments[0]["property_id"] == "prop-7"
