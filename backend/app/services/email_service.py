"""Email service - transactional billing notices via Resend"""
import logging
from html import escape
from typing import Optional

import resend

from app.core.config import settings

logger = logging.getLogger(__name__)


def _send_email(to: str, subject: str, html: str) -> bool:
    """
    Internal helper function to send email via Resend API.

    Args:
        to: Recipient email address
        subject: Email subject
        html: HTML email content

    Returns:
        bool: True on success, False on failure
    """
    if not settings.RESEND_API_KEY:
        logger.warning("RESEND_API_KEY is not set; skipping email")
        return False

    try:
        resend.api_key = settings.RESEND_API_KEY

        response = resend.Emails.send(
            {
                "from": settings.RESEND_FROM_EMAIL,
                "to": to,
                "subject": subject,
                "html": html,
            }
        )

        # Resend returns a dict with 'id' on success; older clients return an object
        email_id = None
        if isinstance(response, dict):
            email_id = response.get('id')
        elif hasattr(response, 'id'):
            email_id = response.id

        if email_id:
            logger.info(f"Email sent successfully to {to} (id: {email_id})")
            return True
        logger.error(f"Email send returned invalid response: {response}")
        return False

    except Exception as exc:
        logger.error(f"Failed to send email to {to}: {exc}", exc_info=True)
        return False


def send_payment_failed_email(email: str, plan_name: str, portal_hint: Optional[str] = None) -> bool:
    """
    Tell a subscriber their latest payment failed and the subscription is past due.

    Args:
        email: Recipient email address
        plan_name: Name of the plan the payment was for
        portal_hint: Optional URL where the subscriber can update billing details

    Returns:
        bool: True on success, False on failure
    """
    link = portal_hint or f"{settings.FRONTEND_URL}/dashboard"
    html = f"""
    <p>We couldn't process the latest payment for your <strong>{escape(plan_name)}</strong> subscription.</p>
    <p>Your access stays on while we retry, but please update your payment method to avoid cancellation.</p>
    <p><a href="{escape(link)}" target="_blank" rel="noopener noreferrer">Update billing details</a></p>
    """
    return _send_email(email, "Payment failed for your subscription", html)


def send_subscription_canceled_email(email: str, plan_name: str) -> bool:
    """Confirm that a subscription has ended"""
    html = f"""
    <p>Your <strong>{escape(plan_name)}</strong> subscription has been canceled.</p>
    <p>You can subscribe again at any time from <a href="{escape(settings.FRONTEND_URL)}">your dashboard</a>.</p>
    """
    return _send_email(email, "Your subscription has been canceled", html)
