"""Checkout completion: the one routine behind the webhook, verify and reaper paths.

paid session → hash credential (worker thread, no transaction open)
             → provision_account
             → on failure: compensate
             → on first-time creation: receipt + credentials email
The plaintext credential is discarded before this function returns.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from folio_api.billing.compensation import CompensationResult, RefundProcessor, compensate
from folio_api.billing.credentials import issue_temporary_credential
from folio_api.billing.errors import ApplicationNotFound, ProvisioningError
from folio_api.billing.events import CapturedPayment
from folio_api.billing.provisioning import ProvisioningOutcome, provision_account
from folio_api.context import session_ref_var
from folio_api.db.models import Application, Billing
from folio_api.db.repo_tenants import TenantRepository
from folio_api.notifications.email import NotificationService
from folio_api.pricing import calculate_pricing

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompletionResult:
    session_ref: str
    paid: bool
    outcome: Optional[ProvisioningOutcome] = None
    compensation: Optional[CompensationResult] = None
    error: Optional[str] = None

    @property
    def provisioned(self) -> bool:
        return self.outcome is not None


async def _send_welcome(db: Session, outcome: ProvisioningOutcome, temp_password: str, notifier: NotificationService) -> None:
    app = db.get(Application, outcome.application_id)
    billing = db.get(Billing, outcome.billing_id) if outcome.billing_id else None
    first_name = app.first_name if app is not None else None

    if app is not None:
        pricing = calculate_pricing(app.payment_plan, app.custom_design)
        await notifier.send_payment_receipt(
            outcome.email,
            pricing,
            billing.next_billing_date if billing is not None else None,
            first_name=first_name,
        )
    await notifier.send_credentials(outcome.email, temp_password, first_name=first_name)


async def complete_checkout(
    db: Session,
    payment: CapturedPayment,
    processor: RefundProcessor,
    notifier: NotificationService,
    *,
    tenants: Optional[TenantRepository] = None,
    actor: str = "WEBHOOK",
) -> CompletionResult:
    """Provision (or compensate) for a completed checkout session.

    The temporary password leaves this function only inside the credentials
    email; it is zeroed before returning.
    """
    session_ref_var.set(payment.session_id)

    if not payment.is_paid:
        logger.info("CHECKOUT_NOT_PAID", extra={"payment_status": payment.payment_status})
        return CompletionResult(session_ref=payment.session_id, paid=False)

    credential = await asyncio.to_thread(issue_temporary_credential)
    try:
        try:
            outcome = provision_account(
                db,
                payment,
                credential,
                tenants or TenantRepository(db),
                actor=actor,
            )
        except (ApplicationNotFound, ProvisioningError) as exc:
            logger.error(
                "PROVISIONING_FAILED",
                extra={"error_type": type(exc).__name__},
                exc_info=True,
            )
            result = await compensate(db, payment, exc, processor, notifier)
            error = "application_not_found" if isinstance(exc, ApplicationNotFound) else "provisioning_failed"
            return CompletionResult(
                session_ref=payment.session_id,
                paid=True,
                compensation=result,
                error=error,
            )

        if outcome.account_created:
            await _send_welcome(db, outcome, outcome.credential.reveal(), notifier)

        return CompletionResult(
            session_ref=payment.session_id,
            paid=True,
            outcome=outcome,
        )
    finally:
        credential.discard()
