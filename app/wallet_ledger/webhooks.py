"""Typed view of provider webhook bodies.

Parsing happens only after the signature over the raw bytes has been checked.
"""

import json
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic import ValidationError as SchemaError

from .exceptions import UnsupportedStatusError, ValidationError
from .state_machine import PaymentStatus, parse_status


class WebhookEvent(BaseModel):
    """A payment status callback with the fields the ledger relies on."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str
    status: PaymentStatus
    price_amount: Decimal
    price_currency: str
    receive_currency: Optional[str] = None
    order_id: Optional[str] = None
    tx_hash: Optional[str] = None
    payment_address: Optional[str] = None

    @field_validator("id", "order_id", mode="before")
    @classmethod
    def _stringify(cls, value):
        # CoinGate sends numeric order ids.
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("id")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("id must not be empty")
        return value.strip()

    @field_validator("price_currency", "receive_currency")
    @classmethod
    def _upper(cls, value: Optional[str]) -> Optional[str]:
        return value.strip().upper() if value else value


def parse_webhook_event(raw: bytes) -> WebhookEvent:
    """Decode a verified webhook body.

    Raises ``ValidationError`` for malformed bodies and
    ``UnsupportedStatusError`` when the provider reports a status this
    service does not know how to handle.
    """
    try:
        data = json.loads(raw)
    except (UnicodeDecodeError, ValueError) as exc:
        raise ValidationError("Webhook body is not valid JSON") from exc
    if not isinstance(data, dict):
        raise ValidationError("Webhook body must be a JSON object")

    raw_status = data.get("status")
    if isinstance(raw_status, str) and raw_status.strip():
        try:
            data["status"] = parse_status(raw_status)
        except ValueError as exc:
            raise UnsupportedStatusError(
                f"Unsupported payment status: {raw_status!r}"
            ) from exc

    try:
        return WebhookEvent.model_validate(data)
    except SchemaError as exc:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
        raise ValidationError(
            f"Invalid webhook payload: {', '.join(fields)}"
        ) from exc
