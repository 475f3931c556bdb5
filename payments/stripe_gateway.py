from __future__ import annotations

import logging
from typing import Any

import stripe

from engine.errors import PaymentGatewayUnavailable, PaymentRejected

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


def _map_error(exc: stripe.StripeError, operation: str) -> Exception:
    status = getattr(exc, "http_status", None)
    code = getattr(exc, "code", None)
    message = f"{operation} failed: {getattr(exc, 'user_message', None) or str(exc)}"
    if isinstance(exc, _TRANSIENT_ERRORS) or (status is not None and status >= 500):
        logger.warning("stripe %s unavailable (status=%s code=%s)", operation, status, code)
        return PaymentGatewayUnavailable(message)
    logger.warning("stripe %s rejected (status=%s code=%s)", operation, status, code)
    return PaymentRejected(message)


class StripeGateway:
    """PaymentGateway backed by the Stripe SDK.

    Stripe replays requests carrying a known idempotency key, so a retried
    refund or transfer returns the original object instead of moving money twice.
    """

    def __init__(self, api_key: str, *, currency: str = "usd") -> None:
        if not api_key:
            raise ValueError("STRIPE_SECRET_KEY is required for the Stripe gateway")
        self.api_key = api_key
        self.currency = currency

    def capture(self, amount: int, customer_ref: str) -> str:
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount,
                currency=self.currency,
                customer=customer_ref,
                confirm=True,
                off_session=True,
                api_key=self.api_key,
            )
        except stripe.StripeError as exc:
            raise _map_error(exc, "capture") from exc
        return str(intent["id"])

    def refund(self, payment_reference: str, amount: int, idempotency_key: str) -> str:
        params: dict[str, Any] = {
            "amount": amount,
            "metadata": {"idempotency_key": idempotency_key},
        }
        if payment_reference.startswith("ch_"):
            params["charge"] = payment_reference
        else:
            params["payment_intent"] = payment_reference
        try:
            refund = stripe.Refund.create(
                **params,
                idempotency_key=idempotency_key,
                api_key=self.api_key,
            )
        except stripe.StripeError as exc:
            raise _map_error(exc, "refund") from exc
        return str(refund["id"])

    def transfer(self, destination: str, amount: int, idempotency_key: str) -> str:
        project_id = idempotency_key.split(":", 1)[0]
        try:
            transfer = stripe.Transfer.create(
                amount=amount,
                currency=self.currency,
                destination=destination,
                transfer_group=project_id,
                metadata={"project_id": project_id, "idempotency_key": idempotency_key},
                idempotency_key=idempotency_key,
                api_key=self.api_key,
            )
        except stripe.StripeError as exc:
            raise _map_error(exc, "transfer") from exc
        return str(transfer["id"])
