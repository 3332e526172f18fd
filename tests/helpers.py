"""Shared builders for webhook tests."""

import json
from decimal import Decimal

from wallet_ledger.signature import compute_signature

WEBHOOK_SECRET = "whsec_test"


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return compute_signature(secret, body)


def webhook_body(payment_id: str, status: str, amount="100", currency="USDT", **extra) -> bytes:
    payload = {
        "id": payment_id,
        "status": status,
        "price_amount": str(amount),
        "price_currency": currency,
        "receive_currency": currency,
        "order_id": f"WLT-{payment_id}",
    }
    payload.update(extra)
    return json.dumps(payload).encode("utf-8")


def money(value) -> Decimal:
    return Decimal(str(value))
