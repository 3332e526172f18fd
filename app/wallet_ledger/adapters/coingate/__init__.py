"""CoinGate payment provider."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from ...exceptions import ProviderError
from ..base import PaymentProvider, ProviderPayment

logger = logging.getLogger(__name__)


class CoinGateProvider(PaymentProvider):
    """Creates orders through the CoinGate v2 REST API."""

    name = "coingate"

    def __init__(
        self,
        api_key: str,
        api_url: str = "https://api.coingate.com/v2",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(
            base_url=api_url,
            timeout=httpx.Timeout(timeout),
        )
        self._headers = {
            "Authorization": f"Token {api_key}",
            "Content-Type": "application/json",
        }

    async def create_payment(
        self,
        amount: Decimal,
        currency: str,
        order_id: str,
        **kwargs: Any,
    ) -> ProviderPayment:
        payload: Dict[str, Any] = {
            "order_id": order_id,
            "price_amount": str(amount),
            "price_currency": currency,
            "receive_currency": kwargs.get("receive_currency", currency),
            "title": kwargs.get("title", "Wallet funding"),
            "description": kwargs.get("description", ""),
            "callback_url": kwargs.get("callback_url"),
            "cancel_url": kwargs.get("cancel_url"),
            "success_url": kwargs.get("success_url"),
        }
        payload = {key: value for key, value in payload.items() if value is not None}

        try:
            response = await self._client.post(
                "/orders", json=payload, headers=self._headers
            )
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            logger.error("CoinGate timed out creating order %s", order_id)
            raise ProviderError(
                "Payment provider timed out", timed_out=True
            ) from exc
        except httpx.HTTPStatusError as exc:
            detail = _error_message(exc.response)
            logger.error(
                "CoinGate rejected order %s: %s %s",
                order_id,
                exc.response.status_code,
                detail,
            )
            raise ProviderError(f"Payment provider rejected the order: {detail}") from exc
        except httpx.RequestError as exc:
            logger.error("CoinGate unreachable for order %s: %s", order_id, exc)
            raise ProviderError("Payment provider is unreachable") from exc

        data = response.json()
        if "id" not in data or not data.get("payment_url"):
            raise ProviderError("Payment provider returned an incomplete order")

        logger.info("CoinGate order %s created for %s", data["id"], order_id)
        return ProviderPayment(
            id=str(data["id"]),
            status=str(data.get("status", "new")),
            payment_url=data["payment_url"],
            payment_address=data.get("payment_address"),
            expires_at=_parse_datetime(data.get("expire_at") or data.get("expires_at")),
        )

    async def aclose(self) -> None:
        await self._client.aclose()


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("reason") or body)
    return str(body)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Ignoring unparseable CoinGate timestamp %r", value)
        return None


__all__ = ["CoinGateProvider"]
