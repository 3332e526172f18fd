import pytest

from wallet_ledger.state_machine import (
    TERMINAL_STATUSES,
    PaymentStatus,
    TransitionDecision,
    TransitionSource,
    evaluate_transition,
    parse_status,
)


@pytest.mark.parametrize(
    "current,target",
    [
        (PaymentStatus.PENDING, PaymentStatus.CONFIRMING),
        (PaymentStatus.PENDING, PaymentStatus.PAID),
        (PaymentStatus.PENDING, PaymentStatus.CONFIRMED),
        (PaymentStatus.CONFIRMING, PaymentStatus.PAID),
        (PaymentStatus.PENDING, PaymentStatus.EXPIRED),
        (PaymentStatus.PENDING, PaymentStatus.INVALID),
    ],
)
def test_forward_webhook_transitions_apply(current, target):
    transition = evaluate_transition(current, target)
    assert transition.decision is TransitionDecision.APPLY


def test_paid_credits_and_closes_intent():
    transition = evaluate_transition(PaymentStatus.CONFIRMING, PaymentStatus.PAID)
    assert transition.credits_wallet
    assert transition.closes_intent


def test_confirming_keeps_intent_open_without_credit():
    transition = evaluate_transition(PaymentStatus.PENDING, PaymentStatus.CONFIRMING)
    assert transition.applies
    assert not transition.credits_wallet
    assert not transition.closes_intent


def test_failure_statuses_have_no_ledger_effect():
    transition = evaluate_transition(PaymentStatus.PENDING, PaymentStatus.CANCELED)
    assert transition.applies
    assert not transition.credits_wallet
    assert transition.closes_intent


def test_redelivered_status_is_duplicate():
    transition = evaluate_transition(PaymentStatus.PAID, PaymentStatus.PAID)
    assert transition.decision is TransitionDecision.DUPLICATE
    assert not transition.credits_wallet


@pytest.mark.parametrize("terminal", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
def test_webhook_never_moves_a_terminal_payment(terminal):
    for target in PaymentStatus:
        transition = evaluate_transition(terminal, target, TransitionSource.WEBHOOK)
        assert not transition.applies


def test_webhook_cannot_refund():
    transition = evaluate_transition(PaymentStatus.PAID, PaymentStatus.REFUNDED)
    assert not transition.applies


def test_webhook_cannot_move_backwards_from_confirming():
    transition = evaluate_transition(PaymentStatus.CONFIRMING, PaymentStatus.PENDING)
    assert transition.decision is TransitionDecision.ANOMALY


def test_admin_refund_only_from_credited_statuses():
    assert evaluate_transition(
        PaymentStatus.CONFIRMED, PaymentStatus.REFUNDED, TransitionSource.ADMIN
    ).applies
    pending = evaluate_transition(
        PaymentStatus.PENDING, PaymentStatus.REFUNDED, TransitionSource.ADMIN
    )
    assert pending.decision is TransitionDecision.ANOMALY


def test_sweep_only_expires_pending():
    assert evaluate_transition(
        PaymentStatus.PENDING, PaymentStatus.EXPIRED, TransitionSource.SWEEP
    ).applies
    assert not evaluate_transition(
        PaymentStatus.CONFIRMING, PaymentStatus.EXPIRED, TransitionSource.SWEEP
    ).applies


def test_parse_status_aliases_and_rejects_unknown():
    assert parse_status("new") is PaymentStatus.PENDING
    assert parse_status(" PAID ") is PaymentStatus.PAID
    with pytest.raises(ValueError):
        parse_status("chargeback")
