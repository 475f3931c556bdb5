from __future__ import annotations

from fractions import Fraction

import pytest

from engine import settlement


def test_producer_share_uses_floor_on_fee_split() -> None:
    assert settlement.producer_share(10000, 15) == 8500
    assert settlement.producer_share(999, 15) == 849
    assert settlement.producer_share(0, 15) == 0


def test_partial_payout_for_half_delivered_project() -> None:
    ratio = settlement.progress_ratio(2, 4, Fraction(1, 2))
    assert ratio == Fraction(1, 2)
    assert settlement.partial_payout(10000, 15, ratio) == 4250


def test_partial_payout_floors_fractional_cents() -> None:
    # share 849, a third of it is 283
    assert settlement.partial_payout(999, 15, Fraction(1, 3)) == 283
    assert settlement.partial_payout(10001, 15, Fraction(2, 3)) == 5666


def test_progress_ratio_falls_back_without_purchased_revisions() -> None:
    assert settlement.progress_ratio(0, 0, Fraction(1, 2)) == Fraction(1, 2)
    assert settlement.progress_ratio(3, 0, Fraction(1, 4)) == Fraction(1, 4)


def test_progress_ratio_is_capped_at_one() -> None:
    assert settlement.progress_ratio(5, 4, Fraction(1, 2)) == 1


def test_refund_amount_floors_and_validates_percent() -> None:
    assert settlement.refund_amount(10000, 100) == 10000
    assert settlement.refund_amount(9999, 33) == 3299
    assert settlement.refund_amount(10000, 0) == 0
    with pytest.raises(ValueError):
        settlement.refund_amount(10000, 101)
    with pytest.raises(ValueError):
        settlement.refund_amount(10000, -1)
    with pytest.raises(TypeError):
        settlement.refund_amount(100.0, 50)  # type: ignore[arg-type]


def test_split_price_always_sums_to_price() -> None:
    for price, payout in [(10000, 4250), (999, 283), (1, 0), (500, 500)]:
        split = settlement.split_price(price, payout)
        assert split.payout + split.fee == price
    with pytest.raises(ValueError):
        settlement.split_price(100, 101)


def test_completion_payout_is_capped_by_earlier_payouts() -> None:
    assert settlement.completion_payout(10000, 15, 0) == 8500
    assert settlement.completion_payout(10000, 15, 4250) == 5750
    assert settlement.completion_payout(10000, 15, 10000) == 0


@pytest.mark.parametrize(
    ("has_producer", "delivered", "purchased", "expected"),
    [
        (False, 0, 4, 100),
        (True, 0, 4, 100),
        (True, 3, 3, 0),
        (True, 4, 3, 0),
        (True, 0, 0, 100),
        (True, 1, 2, 50),
        (True, 1, 3, 67),
        (True, 2, 3, 33),
        (True, 1, 8, 88),
    ],
)
def test_recommended_refund_percent(has_producer: bool, delivered: int, purchased: int, expected: int) -> None:
    assert (
        settlement.recommended_refund_percent(has_producer=has_producer, delivered=delivered, purchased=purchased)
        == expected
    )
