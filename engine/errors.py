from __future__ import annotations


class EngineError(Exception):
    code = "engine_error"
    retryable = False

    def __init__(self, message: str, *, project_id: object | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.project_id = str(project_id) if project_id is not None else None

    def __str__(self) -> str:
        if self.project_id:
            return f"{self.code}({self.project_id}): {self.message}"
        return f"{self.code}: {self.message}"


class ProjectNotFound(EngineError):
    code = "project_not_found"


class StateConflict(EngineError):
    """A conditional update matched zero rows; re-fetch before deciding to retry."""

    code = "state_conflict"


class InvalidTransition(EngineError):
    code = "invalid_transition"


class AcceptanceWindowExpired(EngineError):
    code = "acceptance_window_expired"


class ProducerBlocked(EngineError):
    code = "producer_blocked"


class Unauthorized(EngineError):
    code = "unauthorized"


class AmountMismatch(EngineError):
    code = "amount_mismatch"


class RevisionNotAllowed(EngineError):
    code = "revision_not_allowed"


class FeedbackAlreadySubmitted(EngineError):
    code = "feedback_already_submitted"


class PaymentRejected(EngineError):
    """Terminal gateway failure; the project keeps its current status."""

    code = "payment_rejected"


class PaymentGatewayUnavailable(EngineError):
    code = "payment_gateway_unavailable"
    retryable = True


class NotifierFailure(EngineError):
    code = "notifier_failure"
    retryable = True
