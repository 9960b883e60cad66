import logging
import stripe
from typing import Any, Dict, Optional

from app.core.config import settings
from app.core.exceptions import ExternalGatewayError, InvalidWebhookSignature
from app.models.subscription import SubscriptionStatus
from app.schemas.billing import BillingEvent, BillingEventType
from app.services.billing_gateway import BillingGateway, build_event, decode_payload
from app.utils.dates import from_timestamp

logger = logging.getLogger(__name__)

# Retries are owned by BillingGateway._call
stripe.max_network_retries = 0

# Stripe event type -> normalized event type
STRIPE_EVENT_TYPES = {
    "checkout.session.completed": BillingEventType.CHECKOUT_COMPLETED,
    "invoice.payment_succeeded": BillingEventType.PAYMENT_SUCCEEDED,
    "invoice.payment_failed": BillingEventType.PAYMENT_FAILED,
    "customer.subscription.created": BillingEventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.updated": BillingEventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": BillingEventType.SUBSCRIPTION_DELETED,
}

# Metadata key carrying the local subscription id through checkout
SUBSCRIPTION_REF_KEY = "subscription_ref"


def map_stripe_status(stripe_status: Optional[str]) -> SubscriptionStatus:
    """Map a Stripe subscription status onto the local status set"""
    if stripe_status in ("active", "trialing"):
        return SubscriptionStatus.ACTIVE
    if stripe_status == "past_due":
        return SubscriptionStatus.PAST_DUE
    if stripe_status in ("canceled", "unpaid"):
        return SubscriptionStatus.CANCELED
    return SubscriptionStatus.INCOMPLETE


# ============================================================================
# STRIPE OBJECT ACCESS HELPER
# ============================================================================

def _get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from Stripe object (supports both dict and attribute access)."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(key, default)
        return default if value is None else value
    value = getattr(obj, key, None)
    return default if value is None else value


def _first_item(obj: Any) -> Any:
    items = _get_stripe_value(_get_stripe_value(obj, "items"), "data", [])
    return items[0] if items else None


def _subscription_ref(*candidates: Any) -> Optional[int]:
    """First candidate that is a local subscription id.

    Other integrations on the same Stripe account set their own
    ``client_reference_id`` values (order numbers and so on); those are ignored.
    """
    for value in candidates:
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())
    return None


# ============================================================================
# GATEWAY
# ============================================================================

class StripeGateway(BillingGateway):
    """Stripe adapter for the billing gateway interface"""

    name = "stripe"
    signature_header = "Stripe-Signature"

    def __init__(self, api_key: str, webhook_secret: str, max_retries: int = 1, tolerance: int = 300):
        super().__init__(webhook_secret=webhook_secret, max_retries=max_retries)
        self.tolerance = tolerance
        stripe.api_key = api_key

    def is_transient(self, exc: Exception) -> bool:
        return isinstance(exc, stripe.APIConnectionError) or super().is_transient(exc)

    def translate_error(self, operation: str, exc: Exception) -> ExternalGatewayError:
        if isinstance(exc, ExternalGatewayError):
            return exc
        if isinstance(exc, stripe.StripeError):
            http_status = getattr(exc, "http_status", None)
            retryable = self.is_transient(exc) or (http_status is not None and http_status >= 500)
            message = getattr(exc, "user_message", None) or str(exc)
            return ExternalGatewayError(
                f"stripe {operation} failed: {message}",
                retryable=retryable,
            )
        return super().translate_error(operation, exc)

    # ------------------------------------------------------------------
    # Outbound operations
    # ------------------------------------------------------------------

    def create_checkout_session(
        self,
        customer_ref: str,
        external_price_id: str,
        trial_days: Optional[int] = None,
        coupon_code: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        metadata = {k: str(v) for k, v in (metadata or {}).items()}
        subscription_data: Dict[str, Any] = {"metadata": metadata}
        if trial_days:
            subscription_data["trial_period_days"] = trial_days

        checkout_params = {
            "mode": "subscription",
            "customer": customer_ref,
            "line_items": [{"price": external_price_id, "quantity": 1}],
            "success_url": f"{settings.FRONTEND_URL}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{settings.FRONTEND_URL}/subscription/canceled",
            "metadata": metadata,
            "subscription_data": subscription_data,
        }
        if SUBSCRIPTION_REF_KEY in metadata:
            checkout_params["client_reference_id"] = metadata[SUBSCRIPTION_REF_KEY]
        if coupon_code:
            checkout_params["discounts"] = [{"coupon": coupon_code}]

        session = self._call("create_checkout_session", stripe.checkout.Session.create, **checkout_params)
        url = _get_stripe_value(session, "url")
        if not url:
            raise ExternalGatewayError("stripe checkout session has no url")
        return url

    def cancel_subscription(self, external_subscription_id: str, at_period_end: bool) -> bool:
        if at_period_end:
            self._call(
                "cancel_subscription",
                stripe.Subscription.modify,
                external_subscription_id,
                cancel_at_period_end=True,
            )
        else:
            self._call("cancel_subscription", stripe.Subscription.cancel, external_subscription_id)
        return True

    def reactivate_subscription(self, external_subscription_id: str) -> bool:
        self._call(
            "reactivate_subscription",
            stripe.Subscription.modify,
            external_subscription_id,
            cancel_at_period_end=False,
        )
        return True

    def open_billing_portal(self, customer_ref: str, return_url: str) -> str:
        session = self._call(
            "open_billing_portal",
            stripe.billing_portal.Session.create,
            customer=customer_ref,
            return_url=return_url,
        )
        url = _get_stripe_value(session, "url")
        if not url:
            raise ExternalGatewayError("stripe billing portal session has no url")
        return url

    def resolve_or_create_customer(self, email: str, name: Optional[str] = None) -> str:
        existing = self._call("list_customers", stripe.Customer.list, email=email, limit=1)
        customers = _get_stripe_value(existing, "data", [])
        if customers:
            return _get_stripe_value(customers[0], "id")

        params = {"email": email}
        if name:
            params["name"] = name
        customer = self._call("create_customer", stripe.Customer.create, **params)
        customer_id = _get_stripe_value(customer, "id")
        logger.info(f"Created Stripe customer {customer_id} for {email}")
        return customer_id

    def create_price(self, name: str, description: str, price: int, currency: str) -> str:
        product = self._call("create_product", stripe.Product.create, name=name, description=description)
        stripe_price = self._call(
            "create_price",
            stripe.Price.create,
            product=_get_stripe_value(product, "id"),
            unit_amount=price,
            currency=currency.lower(),
            recurring={"interval": "month"},
        )
        return _get_stripe_value(stripe_price, "id")

    # ------------------------------------------------------------------
    # Inbound webhooks
    # ------------------------------------------------------------------

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> BillingEvent:
        if not self.webhook_secret:
            raise InvalidWebhookSignature("Webhook secret not configured")
        if not signature:
            raise InvalidWebhookSignature("Missing Stripe-Signature header")

        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), signature, self.webhook_secret, self.tolerance
            )
        except UnicodeDecodeError:
            raise InvalidWebhookSignature("Webhook body is not UTF-8")
        except stripe.SignatureVerificationError as e:
            raise InvalidWebhookSignature(f"Invalid Stripe signature: {e}")

        return self.normalize_event(decode_payload(payload))

    def normalize_event(self, event: Dict[str, Any]) -> BillingEvent:
        """Convert a Stripe event into the provider-agnostic envelope"""
        stripe_type = event.get("type") or ""
        obj = (event.get("data") or {}).get("object") or {}

        if stripe_type == "checkout.session.completed":
            data = self._checkout_data(obj)
        elif stripe_type.startswith("invoice."):
            data = self._invoice_data(obj)
        elif stripe_type.startswith("customer.subscription."):
            data = self._subscription_data(obj)
        else:
            data = {}

        return build_event({
            "external_event_id": event.get("id"),
            "type": STRIPE_EVENT_TYPES.get(stripe_type, stripe_type),
            "occurred_at": from_timestamp(event.get("created")),
            "data": data,
        })

    def _checkout_data(self, session: Dict[str, Any]) -> Dict[str, Any]:
        metadata = session.get("metadata") or {}
        return {
            "external_subscription_id": session.get("subscription"),
            "subscription_ref": _subscription_ref(metadata.get(SUBSCRIPTION_REF_KEY), session.get("client_reference_id")),
            "customer_ref": session.get("customer"),
        }

    def _invoice_data(self, invoice: Dict[str, Any]) -> Dict[str, Any]:
        # Newer API versions move the subscription under parent.subscription_details
        details = invoice.get("subscription_details") or {}
        parent_details = (invoice.get("parent") or {}).get("subscription_details") or {}
        subscription_id = invoice.get("subscription") or parent_details.get("subscription")
        metadata = details.get("metadata") or parent_details.get("metadata") or {}

        lines = (invoice.get("lines") or {}).get("data") or []
        period = (lines[0].get("period") or {}) if lines else {}

        return {
            "external_subscription_id": subscription_id,
            "subscription_ref": _subscription_ref(metadata.get(SUBSCRIPTION_REF_KEY)),
            "customer_ref": invoice.get("customer"),
            "current_period_start": from_timestamp(period.get("start")),
            "current_period_end": from_timestamp(period.get("end")),
        }

    def _subscription_data(self, subscription: Dict[str, Any]) -> Dict[str, Any]:
        metadata = subscription.get("metadata") or {}
        # Periods moved from the subscription to its items in newer API versions
        item = _first_item(subscription) or {}
        period_start = subscription.get("current_period_start") or item.get("current_period_start")
        period_end = subscription.get("current_period_end") or item.get("current_period_end")

        return {
            "external_subscription_id": subscription.get("id"),
            "subscription_ref": _subscription_ref(metadata.get(SUBSCRIPTION_REF_KEY)),
            "customer_ref": subscription.get("customer"),
            "status": map_stripe_status(subscription.get("status")).value,
            "current_period_start": from_timestamp(period_start),
            "current_period_end": from_timestamp(period_end),
            "cancel_at_period_end": bool(subscription.get("cancel_at_period_end", False)),
            "canceled_at": from_timestamp(subscription.get("canceled_at") or subscription.get("ended_at")),
        }

