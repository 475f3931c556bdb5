from __future__ import annotations

from typing import Protocol
from uuid import UUID

from engine.errors import PaymentGatewayUnavailable, PaymentRejected

__all__ = [
    "PaymentGateway",
    "PaymentGatewayUnavailable",
    "PaymentRejected",
    "idempotency_key",
]


class PaymentGateway(Protocol):
    """Narrow contract the settlement engine needs from a payment processor.

    Every mutating call carries an idempotency key; replaying a call with the
    same key must return the original reference instead of moving money again.
    Implementations raise ``PaymentGatewayUnavailable`` for transient failures
    and ``PaymentRejected`` for terminal ones.
    """

    def capture(self, amount: int, customer_ref: str) -> str: ...

    def refund(self, payment_reference: str, amount: int, idempotency_key: str) -> str: ...

    def transfer(self, destination: str, amount: int, idempotency_key: str) -> str: ...


def idempotency_key(project_id: UUID | str, operation: str) -> str:
    return f"{project_id}:{operation}"
