import logging
import os
from datetime import datetime
from typing import Optional

import resend
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# Initialize Resend
RESEND_API_KEY = os.getenv("RESEND_API_KEY")
RESEND_FROM_EMAIL = os.getenv("RESEND_FROM_EMAIL", "noreply@examprep.app")
RESEND_FROM_NAME = os.getenv("RESEND_FROM_NAME", "ExamPrep")
# For development: use Resend's test email (delivered@resend.dev) which doesn't require domain verification
USE_TEST_EMAIL = os.getenv("USE_TEST_EMAIL", "false").lower() == "true"
DEV_MODE = os.getenv("DEV_MODE", "false").lower() == "true"

if RESEND_API_KEY:
    resend.api_key = RESEND_API_KEY
else:
    logger.warning("RESEND_API_KEY not found. Email functionality will be disabled.")


def _from_address() -> str:
    if USE_TEST_EMAIL or DEV_MODE:
        from_email = "delivered@resend.dev"  # Resend's test sender, works without domain verification
    else:
        from_email = RESEND_FROM_EMAIL
    return f"{RESEND_FROM_NAME} <{from_email}>"


def _format_date(value: Optional[datetime]) -> str:
    if value is None:
        return "-"
    return value.strftime("%d %b %Y")


def _wrap_html(heading: str, body_html: str) -> str:
    return f"""
    <!DOCTYPE html>
    <html>
    <head>
        <meta charset="UTF-8">
        <meta name="viewport" content="width=device-width, initial-scale=1.0">
        <title>{heading}</title>
    </head>
    <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px;">
        <div style="background: #1d4ed8; padding: 24px; text-align: center; border-radius: 10px 10px 0 0;">
            <h1 style="color: white; margin: 0; font-size: 24px;">{heading}</h1>
        </div>
        <div style="background: #ffffff; padding: 32px; border: 1px solid #e5e7eb; border-top: none; border-radius: 0 0 10px 10px;">
            {body_html}
        </div>
        <div style="text-align: center; margin-top: 24px; color: #9ca3af; font-size: 12px;">
            <p style="margin: 0;">{RESEND_FROM_NAME}</p>
        </div>
    </body>
    </html>
    """


def send_email(email: str, subject: str, html_content: str, text_content: str) -> bool:
    """
    Deliver one email through Resend.

    Returns:
        bool: True if Resend accepted the message, False otherwise
    """
    if not RESEND_API_KEY:
        logger.warning("Cannot send email subject=%r - Resend not configured", subject)
        return False

    params = {
        "from": _from_address(),
        "to": [email],
        "subject": subject,
        "html": html_content,
        "text": text_content,
    }

    try:
        email_response = resend.Emails.send(params)
    except Exception as exc:
        error_msg = str(exc)
        logger.error("Error sending email subject=%r: %s", subject, error_msg)
        if "not verified" in error_msg.lower():
            logger.info("Set USE_TEST_EMAIL=true to send from Resend's test sender during development.")
        return False

    if isinstance(email_response, dict):
        email_id = email_response.get("id")
    else:
        email_id = getattr(email_response, "id", None)
    if not email_id:
        logger.warning("Resend returned no id for email subject=%r", subject)
        return False
    return True


def send_welcome_email(
    email: str,
    full_name: Optional[str],
    plan_title: str,
    access_until: Optional[datetime],
    auto_pay: bool = False,
) -> bool:
    """
    Send the "your subscription is active" email after a successful payment or admin grant.

    Args:
        email: Recipient email address
        full_name: Recipient display name, if known
        plan_title: Title of the plan that was activated
        access_until: Access cut-off (UTC)
        auto_pay: Whether the next cycle will be charged automatically

    Returns:
        bool: True if email was sent successfully, False otherwise
    """
    name = full_name or "there"
    renewal_line = (
        "Your plan renews automatically at the end of the billing cycle."
        if auto_pay
        else "Your plan does not renew automatically; renew before it ends to keep access."
    )
    html_content = _wrap_html(
        "Your subscription is active",
        f"""
            <p style="font-size: 16px;">Hi {name},</p>
            <p style="font-size: 16px;">Thanks for subscribing to <strong>{plan_title}</strong>.</p>
            <p style="font-size: 16px;">You have full access until <strong>{_format_date(access_until)}</strong>.</p>
            <p style="font-size: 14px; color: #6b7280;">{renewal_line}</p>
        """,
    )
    text_content = (
        f"Hi {name},\n\n"
        f"Thanks for subscribing to {plan_title}.\n"
        f"You have full access until {_format_date(access_until)}.\n"
        f"{renewal_line}\n"
    )
    return send_email(email, f"Welcome to {plan_title}", html_content, text_content)


def send_subscription_expired_email(
    email: str,
    full_name: Optional[str],
    plan_title: Optional[str],
    expired_at: Optional[datetime],
) -> bool:
    name = full_name or "there"
    plan_label = plan_title or "your plan"
    html_content = _wrap_html(
        "Your subscription has expired",
        f"""
            <p style="font-size: 16px;">Hi {name},</p>
            <p style="font-size: 16px;">Your access to <strong>{plan_label}</strong> ended on <strong>{_format_date(expired_at)}</strong>.</p>
            <p style="font-size: 16px;">Renew any time from your account to pick up where you left off.</p>
        """,
    )
    text_content = (
        f"Hi {name},\n\n"
        f"Your access to {plan_label} ended on {_format_date(expired_at)}.\n"
        "Renew any time from your account to pick up where you left off.\n"
    )
    return send_email(email, "Your subscription has expired", html_content, text_content)
