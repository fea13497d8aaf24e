class OrderServiceError(Exception):
    """Base for every failure surfaced to callers.

    Each subclass carries a stable ``code`` and the HTTP status the API layer
    answers with. ``message`` is safe to show to the caller.
    """

    code = "ORDER_SERVICE_ERROR"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(OrderServiceError):
    code = "VALIDATION_ERROR"
    status_code = 400


class NotFound(OrderServiceError):
    code = "NOT_FOUND"
    status_code = 404


class Forbidden(OrderServiceError):
    code = "FORBIDDEN"
    status_code = 403


class InvalidTransition(OrderServiceError):
    code = "INVALID_TRANSITION"
    status_code = 409


class NotReady(InvalidTransition):
    code = "NOT_READY"


class BusinessRuleViolation(OrderServiceError):
    code = "BUSINESS_RULE_VIOLATION"
    status_code = 422


class ConcurrencyConflict(OrderServiceError):
    """Retryable: the caller should re-read and try again."""

    code = "CONCURRENCY_CONFLICT"
    status_code = 409


class AlreadyAssigned(ConcurrencyConflict):
    code = "ALREADY_ASSIGNED"


class PaymentError(OrderServiceError):
    code = "PAYMENT_FAILED"
    status_code = 502


class InvalidSignature(OrderServiceError):
    code = "INVALID_SIGNATURE"
    status_code = 400
