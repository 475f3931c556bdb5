"""Money math for settlements.

All amounts are integer minor-currency units. Rounding is always a floor,
and the platform fee is derived as ``price - payout`` so the two halves of
a split always add back up to the price.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from fractions import Fraction
from math import floor
from typing import Any

from db.models import Project


@dataclass(frozen=True)
class Split:
    payout: int
    fee: int


def _require_amount(value: int, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{name} must be an integer amount of minor units")
    if value < 0:
        raise ValueError(f"{name} must be >= 0, got: {value}")


def _require_percent(value: int, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{name} must be an integer percent")
    if not 0 <= value <= 100:
        raise ValueError(f"{name} must be within [0, 100], got: {value}")


def producer_share(price: int, fee_percent: int) -> int:
    _require_amount(price, "price")
    _require_percent(fee_percent, "fee_percent")
    return price * (100 - fee_percent) // 100


def split_price(price: int, payout: int) -> Split:
    _require_amount(payout, "payout")
    if payout > price:
        raise ValueError(f"payout {payout} exceeds price {price}")
    return Split(payout=payout, fee=price - payout)


def refund_amount(price: int, refund_percent: int) -> int:
    _require_amount(price, "price")
    _require_percent(refund_percent, "refund_percent")
    return price * refund_percent // 100


def progress_ratio(delivered: int, purchased: int, fallback: Fraction) -> Fraction:
    if purchased <= 0:
        return fallback
    return Fraction(min(max(delivered, 0), purchased), purchased)


def partial_payout(price: int, fee_percent: int, ratio: Fraction) -> int:
    share = producer_share(price, fee_percent)
    return share * ratio.numerator // ratio.denominator


def completion_payout(price: int, fee_percent: int, already_paid: int) -> int:
    """Full producer share, capped so payouts never exceed the captured price."""
    _require_amount(already_paid, "already_paid")
    return max(0, min(producer_share(price, fee_percent), price - already_paid))


def recommended_refund_percent(*, has_producer: bool, delivered: int, purchased: int) -> int:
    """Advisory refund percent shown to the reviewer of a cancellation."""
    if not has_producer:
        return 100
    if delivered <= 0:
        return 100
    if purchased > 0 and delivered >= purchased:
        return 0
    if purchased <= 0:
        return 100
    remaining = Fraction(100) - Fraction(100 * delivered, purchased)
    # half-up, matching how the figure is shown to reviewers
    return max(0, floor(remaining + Fraction(1, 2)))


@dataclass
class SettlementResult:
    project: Project
    action: str
    refund_amount: int = 0
    refund_reference: str | None = None
    payout_amount: int = 0
    payout_status: str = "none"
    transfer_reference: str | None = None
    progress_ratio: Fraction | None = None
    noop: bool = False
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "project_id": str(self.project.id),
            "status": self.project.status,
            "action": self.action,
            "refund_amount": self.refund_amount,
            "refund_reference": self.refund_reference,
            "payout_amount": self.payout_amount,
            "payout_status": self.payout_status,
            "transfer_reference": self.transfer_reference,
            "progress_ratio": str(self.progress_ratio) if self.progress_ratio is not None else None,
            "noop": self.noop,
            "message": self.message,
            **self.details,
        }
