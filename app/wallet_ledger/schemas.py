"""Request and response bodies for the REST surface (camelCase on the wire)."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class CreatePaymentRequest(CamelModel):
    amount: Decimal
    currency: str
    user_id: str
    property_id: Optional[str] = None


class PaymentIntentResponse(CamelModel):
    transaction_id: str
    order_id: str
    payment_url: Optional[str] = None
    payment_address: Optional[str] = None
    amount: Decimal
    currency: str
    status: str
    expires_at: Optional[datetime] = None


class PaymentResponse(CamelModel):
    payment_id: str
    user_id: str
    property_id: Optional[str] = None
    amount: Decimal
    currency: str
    status: str
    order_id: str
    payment_url: Optional[str] = None
    wallet_address: Optional[str] = None
    tx_hash: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class WalletResponse(CamelModel):
    id: str
    user_id: str
    balance: Decimal
    available_balance: Decimal
    pending_deposits: Decimal
    pending_withdrawals: Decimal
    last_updated: datetime


class LedgerEntryResponse(CamelModel):
    id: str
    wallet_id: str
    type: str
    amount: Decimal
    status: str
    reference: str
    description: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class LedgerEntryPage(CamelModel):
    entries: List[LedgerEntryResponse]
    total: int
    page: int
    limit: int
    pages: int


class WithdrawalRequest(CamelModel):
    amount: Decimal
    reference: Optional[str] = None
    description: Optional[str] = None


class InvestmentRequest(CamelModel):
    amount: Decimal
    property_id: str
    reference: str = Field(min_length=1)


class RefundRequest(CamelModel):
    reason: str


class AdminCreditRequest(CamelModel):
    amount: Decimal
    reference: str = Field(min_length=1)
    entry_type: Literal["deposit", "return"] = Field(default="deposit", alias="type")
    reason: Optional[str] = None


class AdminActionResponse(CamelModel):
    id: str
    admin_id: str
    action: str
    target_id: str
    reason: Optional[str] = None
    details: Dict[str, Any]
    created_at: datetime


class AdminActionPage(CamelModel):
    actions: List[AdminActionResponse]
    total: int
    page: int
    limit: int
    pages: int
