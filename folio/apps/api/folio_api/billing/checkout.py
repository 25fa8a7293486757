"""Checkout session initiator.

pending Application → processor checkout session (client reference =
Application id) → session reference stored on the Application.

A processor failure leaves the Application pending; nothing was charged,
so it is simply abandoned.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from sqlalchemy.orm import Session

from folio_api.billing.errors import PaymentProcessorError
from folio_api.billing.stripe import CheckoutSessionHandle
from folio_api.config.env import get_frontend_url
from folio_api.context import session_ref_var
from folio_api.db.models import Application
from folio_api.pricing import BillingPlan, LineItem, PriceBreakdown, calculate_pricing
from folio_api.utils.money import validate_minor_units

logger = logging.getLogger(__name__)


class CheckoutProcessor(Protocol):
    async def open_checkout_session(
        self,
        *,
        line_items: list[LineItem],
        success_url: str,
        cancel_url: str,
        client_reference: str,
        customer_email: str,
        metadata: Optional[dict[str, str]] = ...,
    ) -> CheckoutSessionHandle: ...


@dataclass(frozen=True)
class ApplicantDetails:
    email: str
    first_name: str
    last_name: str
    plan: BillingPlan
    custom_design: bool = False
    purposes: tuple[str, ...] = ()
    about: Optional[str] = None


@dataclass(frozen=True)
class CheckoutSession:
    application_id: str
    session_ref: str
    redirect_url: str
    pricing: PriceBreakdown


def success_url() -> str:
    # {CHECKOUT_SESSION_ID} is substituted by the processor
    return f"{get_frontend_url()}/success?session_id={{CHECKOUT_SESSION_ID}}"


def cancel_url() -> str:
    return f"{get_frontend_url()}/cancel"


async def initiate_checkout(
    db: Session,
    applicant: ApplicantDetails,
    processor: CheckoutProcessor,
) -> CheckoutSession:
    """Persist a pending Application and open a checkout session for it.

    Raises:
        PaymentProcessorError: Processor unreachable or rejected the request
            (Application stays pending)
    """
    pricing = calculate_pricing(applicant.plan, applicant.custom_design)
    validate_minor_units(pricing.initial_amount)

    app = Application(
        email=applicant.email.strip().lower(),
        first_name=applicant.first_name.strip(),
        last_name=applicant.last_name.strip(),
        about=applicant.about,
        purposes=list(applicant.purposes),
        custom_design=applicant.custom_design,
        payment_plan=applicant.plan.value,
        status="pending",
    )
    db.add(app)
    db.commit()

    try:
        handle = await processor.open_checkout_session(
            line_items=pricing.line_items(),
            success_url=success_url(),
            cancel_url=cancel_url(),
            client_reference=app.id,
            customer_email=app.email,
            metadata={
                "application_id": app.id,
                "payment_plan": applicant.plan.value,
                "custom_design": "true" if applicant.custom_design else "false",
                "pricing_version": pricing.pricing_version,
            },
        )
    except PaymentProcessorError as exc:
        logger.warning(
            "CHECKOUT_PROCESSOR_UNAVAILABLE",
            extra={
                "application_id": app.id,
                "retryable": exc.retryable,
                "status_code": exc.status_code,
            },
        )
        raise

    app.stripe_session_id = handle.session_id
    db.commit()
    session_ref_var.set(handle.session_id)

    logger.info(
        "CHECKOUT_SESSION_OPENED",
        extra={
            "application_id": app.id,
            "payment_plan": applicant.plan.value,
            "custom_design": applicant.custom_design,
            "initial_amount": pricing.initial_amount,
        },
    )
    return CheckoutSession(
        application_id=app.id,
        session_ref=handle.session_id,
        redirect_url=handle.redirect_url,
        pricing=pricing,
    )
