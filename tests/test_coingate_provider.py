import json
from decimal import Decimal

import httpx
import pytest

from wallet_ledger.adapters import CoinGateProvider, SandboxProvider
from wallet_ledger.exceptions import ProviderError


def make_provider(handler) -> CoinGateProvider:
    client = httpx.AsyncClient(
        base_url="https://api-sandbox.coingate.com/v2",
        transport=httpx.MockTransport(handler),
    )
    return CoinGateProvider("test-token", client=client)


@pytest.mark.asyncio
async def test_create_order_maps_response():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "id": 1207,
                "status": "new",
                "payment_url": "https://pay.coingate.com/invoice/abc",
                "payment_address": "0xdeadbeef",
                "expire_at": "2026-10-19T12:00:00Z",
            },
        )

    provider = make_provider(handler)
    payment = await provider.create_payment(
        Decimal("100"),
        "USDT",
        "WLT-1",
        callback_url="https://ledger.example/webhooks/payments",
    )
    await provider.aclose()

    assert seen["path"] == "/v2/orders"
    assert seen["auth"] == "Token test-token"
    assert seen["body"]["price_amount"] == "100"
    assert seen["body"]["order_id"] == "WLT-1"
    assert seen["body"]["callback_url"] == "https://ledger.example/webhooks/payments"
    assert "cancel_url" not in seen["body"]

    assert payment.id == "1207"
    assert payment.status == "new"
    assert payment.payment_address == "0xdeadbeef"
    assert payment.expires_at.year == 2026


@pytest.mark.asyncio
async def test_rejected_order_raises_provider_error():
    def handler(request):
        return httpx.Response(422, json={"message": "Price amount too small"})

    provider = make_provider(handler)
    with pytest.raises(ProviderError) as exc_info:
        await provider.create_payment(Decimal("0.01"), "BTC", "WLT-2")

    assert "Price amount too small" in exc_info.value.message
    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_timeout_maps_to_gateway_timeout():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    provider = make_provider(handler)
    with pytest.raises(ProviderError) as exc_info:
        await provider.create_payment(Decimal("1"), "BTC", "WLT-3")

    assert exc_info.value.timed_out
    assert exc_info.value.status_code == 504


@pytest.mark.asyncio
async def test_incomplete_response_is_an_error():
    def handler(request):
        return httpx.Response(200, json={"id": 5})

    provider = make_provider(handler)
    with pytest.raises(ProviderError):
        await provider.create_payment(Decimal("1"), "BTC", "WLT-4")


@pytest.mark.asyncio
async def test_sandbox_provider_is_deterministic_per_id():
    provider = SandboxProvider("http://localhost:8000/")

    payment = await provider.create_payment(Decimal("1"), "BTC", "WLT-5")

    assert payment.id.startswith("sandbox-")
    assert payment.payment_url == f"http://localhost:8000/payments/{payment.id}"
    assert payment.payment_address.startswith("0x")
    assert len(payment.payment_address) == 42
