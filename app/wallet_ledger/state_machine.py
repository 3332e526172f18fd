"""Payment status graph.

Webhooks may only move a payment forward along ``WEBHOOK_TRANSITIONS``. The
``refunded`` status is reachable only through the admin refund path. Terminal
statuses never change again through a webhook, however often the provider
redelivers an event.
"""

import enum
from dataclasses import dataclass
from typing import FrozenSet, Mapping


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMING = "confirming"
    PAID = "paid"
    CONFIRMED = "confirmed"
    INVALID = "invalid"
    EXPIRED = "expired"
    CANCELED = "canceled"
    FAILED = "failed"
    REFUNDED = "refunded"


class TransitionSource(str, enum.Enum):
    WEBHOOK = "webhook"
    ADMIN = "admin"
    SWEEP = "sweep"


class TransitionDecision(str, enum.Enum):
    APPLY = "apply"
    DUPLICATE = "duplicate"
    ANOMALY = "anomaly"


TERMINAL_STATUSES: FrozenSet[PaymentStatus] = frozenset(
    {
        PaymentStatus.PAID,
        PaymentStatus.CONFIRMED,
        PaymentStatus.INVALID,
        PaymentStatus.EXPIRED,
        PaymentStatus.CANCELED,
        PaymentStatus.FAILED,
        PaymentStatus.REFUNDED,
    }
)
OPEN_STATUSES: FrozenSet[PaymentStatus] = frozenset(
    {PaymentStatus.PENDING, PaymentStatus.CONFIRMING}
)
CREDIT_STATUSES: FrozenSet[PaymentStatus] = frozenset(
    {PaymentStatus.PAID, PaymentStatus.CONFIRMED}
)
REFUNDABLE_STATUSES = CREDIT_STATUSES

_SETTLED = CREDIT_STATUSES
_ABANDONED = frozenset(
    {
        PaymentStatus.EXPIRED,
        PaymentStatus.CANCELED,
        PaymentStatus.INVALID,
        PaymentStatus.FAILED,
    }
)

WEBHOOK_TRANSITIONS: Mapping[PaymentStatus, FrozenSet[PaymentStatus]] = {
    # Providers may skip "confirming" and report "paid" straight away.
    PaymentStatus.PENDING: frozenset({PaymentStatus.CONFIRMING}) | _SETTLED | _ABANDONED,
    PaymentStatus.CONFIRMING: _SETTLED,
}

ADMIN_TRANSITIONS: Mapping[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PAID: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.CONFIRMED: frozenset({PaymentStatus.REFUNDED}),
}

SWEEP_TRANSITIONS: Mapping[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.EXPIRED}),
}

_GRAPHS = {
    TransitionSource.WEBHOOK: WEBHOOK_TRANSITIONS,
    TransitionSource.ADMIN: ADMIN_TRANSITIONS,
    TransitionSource.SWEEP: SWEEP_TRANSITIONS,
}

# CoinGate reports freshly created orders as "new".
STATUS_ALIASES = {"new": PaymentStatus.PENDING}


def parse_status(value: str) -> PaymentStatus:
    """Map a provider status string onto ``PaymentStatus``.

    Raises ``ValueError`` for anything outside the known set.
    """
    normalized = value.strip().lower()
    if normalized in STATUS_ALIASES:
        return STATUS_ALIASES[normalized]
    return PaymentStatus(normalized)


@dataclass(frozen=True)
class Transition:
    current: PaymentStatus
    target: PaymentStatus
    decision: TransitionDecision
    reason: str = ""

    @property
    def applies(self) -> bool:
        return self.decision is TransitionDecision.APPLY

    @property
    def credits_wallet(self) -> bool:
        return self.applies and self.target in CREDIT_STATUSES

    @property
    def closes_intent(self) -> bool:
        """True when the payment leaves the open (pending/confirming) states."""
        return (
            self.applies
            and self.current in OPEN_STATUSES
            and self.target not in OPEN_STATUSES
        )


def evaluate_transition(
    current: PaymentStatus,
    target: PaymentStatus,
    source: TransitionSource = TransitionSource.WEBHOOK,
) -> Transition:
    if current == target:
        return Transition(current, target, TransitionDecision.DUPLICATE, "status unchanged")

    allowed = _GRAPHS[source].get(current, frozenset())
    if target in allowed:
        return Transition(current, target, TransitionDecision.APPLY)

    if current in TERMINAL_STATUSES and source is TransitionSource.WEBHOOK:
        return Transition(
            current,
            target,
            TransitionDecision.DUPLICATE,
            f"payment already {current.value}",
        )

    return Transition(
        current,
        target,
        TransitionDecision.ANOMALY,
        f"{source.value} transition {current.value} -> {target.value} is not allowed",
    )
