"""Base class for payment provider integrations."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional


@dataclass(frozen=True)
class ProviderPayment:
    """What a provider hands back when a payment is opened."""

    id: str
    status: str
    payment_url: str
    payment_address: Optional[str] = None
    expires_at: Optional[datetime] = None


class PaymentProvider(ABC):
    """Capability interface for the external crypto payment provider.

    The implementation is chosen once at startup; services never branch on
    which provider is active.
    """

    name = "provider"

    @abstractmethod
    async def create_payment(
        self,
        amount: Decimal,
        currency: str,
        order_id: str,
        **kwargs: Any,
    ) -> ProviderPayment:
        """Open a payment with the provider.

        Args:
            amount: Price amount in ``currency``
            currency: Currency code (e.g. ``USDT``)
            order_id: Merchant order id echoed back in webhooks
            **kwargs: Provider-specific parameters (description, callback URLs)

        Returns:
            The provider's payment id, status and payment URL/address

        Raises:
            ProviderError: If the provider fails or cannot be reached
        """

    async def aclose(self) -> None:
        """Release network resources held by the provider."""
        return None
