from payments.gateway import PaymentGateway, idempotency_key

__all__ = ["PaymentGateway", "idempotency_key"]
