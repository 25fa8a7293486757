"""Pydantic schemas for API requests/responses."""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class CamelModel(BaseModel):
    """Accepts snake_case or camelCase input; serializes with camelCase aliases."""

    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)


# ============================================================================
# POST /applications/checkout - Request/Response
# ============================================================================


class CheckoutRequest(CamelModel):
    """Request body for POST /applications/checkout."""

    email: str = Field(
        ...,
        description="Applicant email address",
        pattern=r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$",
        max_length=320,
    )
    first_name: str = Field(..., alias="firstName", min_length=1, max_length=100)
    last_name: str = Field(..., alias="lastName", min_length=1, max_length=100)
    about: Optional[str] = Field(None, max_length=2000)
    purposes: list[str] = Field(default_factory=list, max_length=20, description="Chosen purposes")
    custom_design: bool = Field(False, alias="customDesign", description="Custom design add-on")
    payment_plan: Literal["monthly", "annual"] = Field(..., alias="paymentPlan")


class CheckoutResponse(CamelModel):
    """Response for POST /applications/checkout (redirect handle)."""

    session_id: str = Field(..., alias="sessionId", description="Checkout session reference")
    url: str = Field(..., description="Processor-hosted checkout page")
    application_id: str = Field(..., alias="applicationId")


# ============================================================================
# GET /applications/verify/{session_id} - Response
# ============================================================================


class VerifyResponse(CamelModel):
    """Stable response for every verify outcome.

    status: created | existing_user | already_processed | not_paid |
            refunded | refund_pending | error
    The temporary password is delivered by email only.
    """

    success: bool
    status: str
    verified: bool
    account_created: bool = Field(False, alias="accountCreated")
    email: Optional[str] = None
    retryable: bool = False
    will_refund: bool = Field(False, alias="willRefund")
    message: Optional[str] = None


# ============================================================================
# POST /webhooks/stripe - Response
# ============================================================================


class WebhookAck(BaseModel):
    """status: processed | already_processed | ignored | failed"""

    status: str
    event_id: Optional[str] = None


# ============================================================================
# Billing account service
# ============================================================================


class LineItemView(CamelModel):
    name: str
    description: str
    amount: int = Field(..., description="Minor units")
    formatted: str
    recurring_interval: Optional[str] = Field(None, alias="recurringInterval")


class BillingInfo(CamelModel):
    """Charges for a user's Billing row, redisplayed through the pricing table."""

    billing_id: str = Field(..., alias="billingId")
    plan: str
    status: str
    currency: str
    setup_fee: int = Field(..., alias="setupFee")
    recurring_amount: int = Field(..., alias="recurringAmount")
    custom_design_fee: int = Field(..., alias="customDesignFee")
    initial_amount: int = Field(..., alias="initialAmount")
    pricing_version: str = Field(..., alias="pricingVersion")
    billing_day: int = Field(..., alias="billingDay")
    next_billing_date: Optional[datetime] = Field(None, alias="nextBillingDate")
    line_items: list[LineItemView] = Field(default_factory=list, alias="lineItems")


class SubscriptionStatus(CamelModel):
    has_subscription: bool = Field(..., alias="hasSubscription")
    status: Optional[str] = None
    type: Optional[str] = None
    is_active: bool = Field(False, alias="isActive")
    is_cancelled: bool = Field(False, alias="isCancelled")
    has_access: bool = Field(False, alias="hasAccess")
    access_until: Optional[datetime] = Field(None, alias="accessUntil")
    cancelled_at: Optional[datetime] = Field(None, alias="cancelledAt")
    can_cancel: bool = Field(False, alias="canCancel")
    can_reactivate: bool = Field(False, alias="canReactivate")


class BillingHistoryEntry(CamelModel):
    """kind: initial_payment | upcoming"""

    kind: str
    description: str
    amount: int
    currency: str
    formatted: str
    date: Optional[datetime] = None
    status: str


class BillingHistory(CamelModel):
    billing_id: str = Field(..., alias="billingId")
    entries: list[BillingHistoryEntry]


# ============================================================================
# RFC 9457 Problem Details
# ============================================================================


class ProblemDetail(BaseModel):
    """RFC 9457 Problem Details for HTTP API errors.

    RFC 9457: detail can be either a string or a structured object (dict).
    """

    type: str = Field(..., description="URI reference identifying the problem type")
    title: str = Field(..., description="Short, human-readable summary")
    status: int = Field(..., description="HTTP status code")
    detail: str | dict[str, Any] = Field(..., description="Human-readable explanation or structured error details")
    instance: Optional[str] = Field(None, description="URI reference identifying the specific occurrence")
