"""Domain errors for billing operations.

Each error carries an HTTP status code and a short machine-readable code so the
API layer can render it without knowing about individual error types. Callers
of user-initiated actions can tell retryable provider failures apart from
terminal conditions through the ``retryable`` flag.
"""


class BillingError(Exception):
    """Base class for all billing domain errors"""

    status_code = 400
    code = "billing_error"
    retryable = False

    def __init__(self, message: str, code: str = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, "retryable": self.retryable}


class NotFoundError(BillingError):
    """Plan, subscription or subscriber does not exist"""

    status_code = 404
    code = "not_found"


class ConflictError(BillingError):
    """Request conflicts with current state (e.g. duplicate active subscription)"""

    status_code = 409
    code = "conflict"


class InvalidStateTransition(ConflictError):
    """Requested transition is not allowed from the subscription's current status"""

    code = "invalid_state_transition"


class UnauthorizedError(BillingError):
    """Requester does not own the resource"""

    status_code = 403
    code = "unauthorized"


class InvalidWebhookSignature(BillingError):
    """Webhook payload could not be authenticated"""

    status_code = 400
    code = "invalid_signature"


class ValidationError(BillingError):
    """Malformed input, rejected before any state is touched"""

    status_code = 400
    code = "validation_error"


class ExternalGatewayError(BillingError):
    """Billing provider unreachable or returned an error"""

    status_code = 502
    code = "gateway_error"

    def __init__(self, message: str, retryable: bool = False, code: str = None):
        super().__init__(message, code)
        self.retryable = retryable
