from __future__ import annotations

import pytest
import stripe

from engine.errors import PaymentGatewayUnavailable, PaymentRejected
from payments.stripe_gateway import StripeGateway


def test_gateway_requires_api_key() -> None:
    with pytest.raises(ValueError):
        StripeGateway("")


def test_refund_passes_idempotency_key(monkeypatch) -> None:
    calls: list[dict] = []

    def fake_create(**kwargs):  # type: ignore[no-untyped-def]
        calls.append(kwargs)
        return {"id": "re_123"}

    monkeypatch.setattr(stripe.Refund, "create", fake_create)
    gateway = StripeGateway("sk_test_x")

    assert gateway.refund("pi_abc", 7500, "p-1:refund") == "re_123"
    assert gateway.refund("ch_abc", 100, "p-2:refund") == "re_123"

    assert calls[0]["payment_intent"] == "pi_abc"
    assert calls[0]["amount"] == 7500
    assert calls[0]["idempotency_key"] == "p-1:refund"
    assert calls[0]["api_key"] == "sk_test_x"
    assert calls[1]["charge"] == "ch_abc"
    assert "payment_intent" not in calls[1]


def test_transfer_groups_by_project(monkeypatch) -> None:
    calls: list[dict] = []

    def fake_create(**kwargs):  # type: ignore[no-untyped-def]
        calls.append(kwargs)
        return {"id": "tr_9"}

    monkeypatch.setattr(stripe.Transfer, "create", fake_create)
    reference = StripeGateway("sk_test_x", currency="eur").transfer("acct_1", 4250, "p-1:reassign:producer-1")

    assert reference == "tr_9"
    assert calls[0]["destination"] == "acct_1"
    assert calls[0]["currency"] == "eur"
    assert calls[0]["transfer_group"] == "p-1"
    assert calls[0]["idempotency_key"] == "p-1:reassign:producer-1"


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (stripe.APIConnectionError("connection reset"), PaymentGatewayUnavailable),
        (stripe.RateLimitError("slow down"), PaymentGatewayUnavailable),
        (stripe.StripeError("bad gateway", http_status=502), PaymentGatewayUnavailable),
        (stripe.InvalidRequestError("amount exceeds charge", "amount"), PaymentRejected),
        (stripe.CardError("card declined", "card", "card_declined"), PaymentRejected),
    ],
)
def test_stripe_errors_are_mapped(monkeypatch, error, expected) -> None:
    def failing(**kwargs):  # type: ignore[no-untyped-def]
        raise error

    monkeypatch.setattr(stripe.Refund, "create", failing)
    with pytest.raises(expected):
        StripeGateway("sk_test_x").refund("pi_abc", 100, "p-1:refund")
