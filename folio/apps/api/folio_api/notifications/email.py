"""Transactional email via SendGrid v3 Mail Send API (httpx).

Fire-and-forget from the pipeline's perspective: every send returns a bool,
delivery failures are logged and never raised into a transaction.

Without SENDGRID_API_KEY the service runs in log-only mode.
Message bodies are never logged (they may carry a temporary password).
"""

import logging
from datetime import datetime
from typing import Optional

import httpx

from folio_api.config.env import get_admin_email, get_email_from, get_frontend_url, get_sendgrid_api_key
from folio_api.pricing import PriceBreakdown
from folio_api.utils.money import format_minor_units

logger = logging.getLogger(__name__)

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


class NotificationService:
    """Email sender for customers and operators.

    Environment Variables:
    - SENDGRID_API_KEY: API key (unset → log-only)
    - EMAIL_FROM: sender address
    - ADMIN_EMAIL: operator alert recipient
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        sender: Optional[str] = None,
        admin_email: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else get_sendgrid_api_key()
        self.sender = sender or get_email_from()
        self.admin_email = admin_email or get_admin_email()
        self._transport = transport

    @property
    def log_only(self) -> bool:
        return not self.api_key

    async def _send(self, to: str, subject: str, body: str, *, category: str) -> bool:
        if self.log_only:
            logger.info("EMAIL_SKIPPED_LOG_ONLY", extra={"category": category})
            return False

        message = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.sender},
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
            "categories": [category],
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            async with httpx.AsyncClient(timeout=15.0, transport=self._transport) as client:
                response = await client.post(SENDGRID_URL, json=message, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error(
                "EMAIL_DELIVERY_FAILED",
                extra={"category": category, "error_type": type(exc).__name__},
            )
            return False

        logger.info("EMAIL_SENT", extra={"category": category})
        return True

    async def send_credentials(self, email: str, temp_password: str, *, first_name: Optional[str] = None) -> bool:
        greeting = f"Hi {first_name}," if first_name else "Hi,"
        body = "\n".join([
            greeting,
            "",
            "Your Folio account is ready.",
            "",
            f"Email: {email}",
            f"Temporary password: {temp_password}",
            "",
            f"Sign in at {get_frontend_url()}/login and change your password straight away.",
        ])
        return await self._send(email, "Welcome to Folio: your login details", body, category="credentials")

    async def send_payment_receipt(
        self,
        email: str,
        pricing: PriceBreakdown,
        next_billing_date: Optional[datetime],
        *,
        first_name: Optional[str] = None,
    ) -> bool:
        currency = pricing.currency
        lines = [
            f"Hi {first_name}," if first_name else "Hi,",
            "",
            "Thanks for your payment. Here is your receipt.",
            "",
            f"{pricing.plan.value.capitalize()} plan: {format_minor_units(pricing.recurring_amount, currency)}",
            f"Setup fee: {format_minor_units(pricing.setup_fee, currency)}",
        ]
        if pricing.custom_design_fee:
            lines.append(f"Custom design: {format_minor_units(pricing.custom_design_fee, currency)}")
        lines.append(f"Total paid: {format_minor_units(pricing.initial_amount, currency)}")
        if next_billing_date is not None:
            lines += [
                "",
                f"Next payment of {format_minor_units(pricing.recurring_amount, currency)} "
                f"on {next_billing_date.date().isoformat()}.",
            ]
        return await self._send(email, "Your Folio payment receipt", "\n".join(lines), category="receipt")

    async def send_refund_notice(self, email: str, amount: int, currency: str, reference: str) -> bool:
        body = "\n".join([
            "Hi,",
            "",
            "We could not finish setting up your Folio account, so we have refunded your payment in full.",
            "",
            f"Amount refunded: {format_minor_units(amount, currency)}",
            f"Reference: {reference}",
            "",
            "Refunds usually reach your card within 5-10 business days. Reply to this email if you need help.",
        ])
        return await self._send(email, "Your Folio payment has been refunded", body, category="refund")

    async def send_operator_alert(self, subject: str, body: str) -> bool:
        logger.warning("OPERATOR_ALERT", extra={"alert_subject": subject})
        return await self._send(self.admin_email, f"[Folio] {subject}", body, category="operator_alert")


# Global service instance (singleton)
_notification_service: Optional[NotificationService] = None


def get_notification_service() -> NotificationService:
    global _notification_service
    if _notification_service is None:
        _notification_service = NotificationService()
    return _notification_service
