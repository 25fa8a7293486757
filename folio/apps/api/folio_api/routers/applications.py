"""Application endpoints: checkout initiation and session verification.

POST /applications/checkout        pending Application + processor checkout session
GET  /applications/verify/{id}     polling wrapper around the same completion
                                   routine the checkout_completed webhook runs

Verify always answers 200 with VerifyResponse; the temporary password is
delivered by email only.
"""

import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from folio_api.billing.checkout import ApplicantDetails, initiate_checkout
from folio_api.billing.checkout_completion import CompletionResult, complete_checkout
from folio_api.billing.errors import PaymentProcessorError
from folio_api.billing.stripe import get_stripe_client
from folio_api.context import session_ref_var
from folio_api.db.session import get_db
from folio_api.notifications.email import get_notification_service
from folio_api.pricing import BillingPlan
from folio_api.schemas import CheckoutRequest, CheckoutResponse, VerifyResponse
from folio_api.utils.sanitize import sanitize_str

router = APIRouter(prefix="/applications", tags=["applications"])
logger = logging.getLogger(__name__)


@router.post("/checkout", status_code=status.HTTP_201_CREATED, response_model=CheckoutResponse)
async def create_checkout(
    request: CheckoutRequest,
    db: Session = Depends(get_db),
) -> CheckoutResponse:
    """Open a checkout session for a new application.

    Raises:
        PaymentProcessorError: mapped to 503 problem+json with Retry-After
    """
    applicant = ApplicantDetails(
        email=request.email,
        first_name=request.first_name,
        last_name=request.last_name,
        plan=BillingPlan(request.payment_plan),
        custom_design=request.custom_design,
        purposes=tuple(request.purposes),
        about=request.about,
    )
    session = await initiate_checkout(db, applicant, get_stripe_client())
    return CheckoutResponse(
        session_id=session.session_ref,
        url=session.redirect_url,
        application_id=session.application_id,
    )


def _verify_response(result: CompletionResult) -> VerifyResponse:
    if not result.paid:
        return VerifyResponse(
            success=False,
            status="not_paid",
            verified=False,
            message="Payment has not completed yet",
        )

    if result.outcome is not None:
        outcome = result.outcome
        if outcome.application_status == "completed":
            return VerifyResponse(
                success=True,
                status=outcome.kind.value,
                verified=True,
                account_created=outcome.account_created,
                email=outcome.email,
            )
        # Recorded earlier as refunded/failed by compensation
        return VerifyResponse(
            success=False,
            status="refunded" if outcome.application_status == "refunded" else "refund_pending",
            verified=True,
            email=outcome.email,
            will_refund=True,
            message="Account setup failed; the payment is being refunded",
        )

    compensation = result.compensation
    refunded = compensation is not None and compensation.status in ("refunded", "already_compensated")
    return VerifyResponse(
        success=False,
        status="refunded" if refunded else "refund_pending",
        verified=True,
        will_refund=True,
        message="Account setup failed; the payment is being refunded",
    )


@router.get("/verify/{session_id}", response_model=VerifyResponse)
async def verify_session(
    session_id: str,
    db: Session = Depends(get_db),
) -> VerifyResponse:
    """Check a checkout session and complete provisioning if the webhook has not."""
    session_ref_var.set(session_id)

    try:
        processor = get_stripe_client()
        payment = await processor.retrieve_session(session_id)
    except (PaymentProcessorError, ValueError) as exc:
        retryable = getattr(exc, "retryable", True)
        logger.warning(
            "VERIFY_SESSION_LOOKUP_FAILED",
            extra={"error_type": type(exc).__name__, "retryable": retryable},
        )
        return VerifyResponse(
            success=False,
            status="error",
            verified=False,
            retryable=retryable,
            message="Could not reach the payment processor",
        )

    try:
        result = await complete_checkout(
            db,
            payment,
            processor,
            get_notification_service(),
            actor="VERIFY",
        )
    except Exception as exc:
        db.rollback()
        logger.error(
            "VERIFY_COMPLETION_FAILED",
            extra={"error_type": type(exc).__name__, "error_msg": sanitize_str(str(exc))},
            exc_info=True,
        )
        return VerifyResponse(
            success=False,
            status="error",
            verified=payment.is_paid,
            retryable=True,
            message="Verification failed; please retry",
        )

    return _verify_response(result)
