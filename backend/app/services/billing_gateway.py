"""Capability interface to the external payment provider.

The reconciliation core never talks to a provider SDK directly. It goes through
a ``BillingGateway`` adapter, which owns three concerns:

* outbound calls (checkout, cancel, reactivate, portal, customer lookup), each
  with a single bounded retry on connection-level failures and no retry on
  provider application errors;
* inbound webhook authentication and normalization into a ``BillingEvent``;
* translating provider failures into ``ExternalGatewayError``.

The base class verifies a native envelope signed with HMAC-SHA256 over the raw
body. Provider adapters override ``parse_webhook`` with their own scheme.
"""
import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from app.core.config import settings
from app.core.exceptions import ExternalGatewayError, InvalidWebhookSignature, ValidationError
from app.core.metrics import gateway_calls_counter
from app.schemas.billing import BillingEvent

logger = logging.getLogger("billing_gateway")


class BillingGateway(ABC):
    """Abstract billing provider adapter"""

    name = "native"
    signature_header = "X-Billing-Signature"

    def __init__(self, webhook_secret: str, max_retries: int = 1):
        self.webhook_secret = webhook_secret
        self.max_retries = max_retries

    # ------------------------------------------------------------------
    # Outbound operations
    # ------------------------------------------------------------------

    @abstractmethod
    def create_checkout_session(
        self,
        customer_ref: str,
        external_price_id: str,
        trial_days: Optional[int] = None,
        coupon_code: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Start a hosted checkout and return its URL"""

    @abstractmethod
    def cancel_subscription(self, external_subscription_id: str, at_period_end: bool) -> bool:
        """Cancel now, or schedule cancellation at the end of the current period"""

    @abstractmethod
    def reactivate_subscription(self, external_subscription_id: str) -> bool:
        """Undo a scheduled cancellation"""

    @abstractmethod
    def open_billing_portal(self, customer_ref: str, return_url: str) -> str:
        """Return a self-service billing portal URL"""

    @abstractmethod
    def resolve_or_create_customer(self, email: str, name: Optional[str] = None) -> str:
        """Find the provider customer for an email, creating one if needed"""

    @abstractmethod
    def create_price(self, name: str, description: str, price: int, currency: str) -> str:
        """Create a monthly recurring price and return its provider id"""

    # ------------------------------------------------------------------
    # Inbound webhooks
    # ------------------------------------------------------------------

    def compute_signature(self, payload: bytes) -> str:
        return hmac.new(self.webhook_secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> None:
        if not self.webhook_secret:
            raise InvalidWebhookSignature("Webhook secret not configured")
        if not signature:
            raise InvalidWebhookSignature("Missing signature header")

        provided = signature.strip()
        if provided.startswith("sha256="):
            provided = provided[len("sha256="):]

        if not hmac.compare_digest(self.compute_signature(payload), provided):
            raise InvalidWebhookSignature("Signature mismatch")

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> BillingEvent:
        """Authenticate a delivery and return the normalized event.

        Raises:
            InvalidWebhookSignature: Signature missing or wrong
            ValidationError: Authenticated body is not a valid event envelope
        """
        self.verify_signature(payload, signature)
        return build_event(decode_payload(payload))

    # ------------------------------------------------------------------
    # Call wrapper
    # ------------------------------------------------------------------

    def is_transient(self, exc: Exception) -> bool:
        """Connection-level failures worth one more attempt"""
        return isinstance(exc, (ConnectionError, TimeoutError))

    def translate_error(self, operation: str, exc: Exception) -> ExternalGatewayError:
        if isinstance(exc, ExternalGatewayError):
            return exc
        return ExternalGatewayError(
            f"{self.name} {operation} failed: {exc}",
            retryable=self.is_transient(exc),
        )

    def _call(self, operation: str, fn: Callable, *args, **kwargs):
        """Invoke a provider call with one bounded retry on transient failures.

        A falsy result is treated as a missing acknowledgement, never as success.
        """
        attempt = 0
        while True:
            try:
                result = fn(*args, **kwargs)
            except Exception as e:
                if self.is_transient(e) and attempt < self.max_retries:
                    attempt += 1
                    logger.warning(f"{self.name} {operation} transient failure, retrying ({attempt}/{self.max_retries}): {e}")
                    continue
                gateway_calls_counter.labels(operation=operation, status="error").inc()
                logger.error(f"{self.name} {operation} failed after {attempt + 1} attempt(s): {e}")
                raise self.translate_error(operation, e) from e

            if not result:
                gateway_calls_counter.labels(operation=operation, status="error").inc()
                raise ExternalGatewayError(f"{self.name} {operation} returned no acknowledgement")

            gateway_calls_counter.labels(operation=operation, status="success").inc()
            return result


def decode_payload(payload: bytes) -> Dict[str, Any]:
    try:
        body = json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationError(f"Webhook body is not valid JSON: {e}")
    if not isinstance(body, dict):
        raise ValidationError("Webhook body must be a JSON object")
    return body


def build_event(envelope: Dict[str, Any]) -> BillingEvent:
    """Validate a normalized envelope.

    An envelope whose id, type and time are sound but whose ``data`` is not
    usable still yields an event (with empty data and ``invalid_data`` set)
    so it can be recorded as failed and acknowledged.
    """
    try:
        return BillingEvent.model_validate(envelope)
    except PydanticValidationError as e:
        errors = e.errors()
        message = f"{'.'.join(str(part) for part in errors[0]['loc'])}: {errors[0].get('msg', 'invalid')}"
        if not all(error["loc"] and error["loc"][0] == "data" for error in errors):
            raise ValidationError(f"Invalid event envelope: {message}")

    try:
        event = BillingEvent.model_validate({**envelope, "data": {}})
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid event envelope: {e.errors()[0].get('msg', 'invalid')}")
    event.invalid_data = f"Unusable event data: {message}"
    return event


_gateway: Optional[BillingGateway] = None


def get_billing_gateway() -> BillingGateway:
    """Dependency: configured provider adapter (created on first use)"""
    global _gateway
    if _gateway is None:
        if settings.BILLING_PROVIDER == "stripe":
            from app.services.stripe_service import StripeGateway
            _gateway = StripeGateway(
                api_key=settings.STRIPE_SECRET_KEY,
                webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
                max_retries=settings.BILLING_GATEWAY_MAX_RETRIES,
                tolerance=settings.STRIPE_WEBHOOK_TOLERANCE,
            )
        else:
            raise ValueError(f"Unsupported billing provider: {settings.BILLING_PROVIDER}")
    return _gateway
