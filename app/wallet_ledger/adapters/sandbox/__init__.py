"""Sandbox payment provider for local development and tests."""

import hashlib
import uuid
from decimal import Decimal
from typing import Any

from ..base import PaymentProvider, ProviderPayment


class SandboxProvider(PaymentProvider):
    """Self-contained provider returning predictable payment details.

    No network calls are made. The payment URL is this service's own
    ``GET /payments/{id}`` route; the payment is settled by posting a signed
    webhook to ``/webhooks/payments``.
    """

    name = "sandbox"

    def __init__(self, base_url: str = "http://localhost:8000") -> None:
        self._base_url = base_url.rstrip("/")

    async def create_payment(
        self, amount: Decimal, currency: str, order_id: str, **kwargs: Any
    ) -> ProviderPayment:
        payment_id = f"sandbox-{uuid.uuid4().hex[:16]}"
        digest = hashlib.sha256(payment_id.encode("utf-8")).hexdigest()
        return ProviderPayment(
            id=payment_id,
            status="pending",
            payment_url=f"{self._base_url}/payments/{payment_id}",
            payment_address=f"0x{digest[:40]}",
        )


__all__ = ["SandboxProvider"]
