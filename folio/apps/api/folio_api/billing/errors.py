"""Billing pipeline exceptions."""

from typing import Optional


class BillingError(Exception):
    """Base exception for billing pipeline errors."""

    pass


class ApplicationNotFound(BillingError):
    """No Application for the checkout-session reference."""

    def __init__(self, session_ref: str):
        super().__init__(f"Application not found for checkout session {session_ref}")
        self.session_ref = session_ref


class ProvisioningError(BillingError):
    """Provisioning transaction failed and was rolled back.

    The original exception is chained as __cause__.
    """

    pass


class ProvisioningTimeout(ProvisioningError):
    """Provisioning exceeded its deadline."""

    pass


class PaymentProcessorError(BillingError):
    """Payment processor call failed.

    retryable is True for network errors, 429 and 5xx responses.
    """

    def __init__(self, message: str, *, retryable: bool, status_code: Optional[int] = None):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class WebhookSignatureError(BillingError):
    """Webhook signature header is malformed, stale, or does not match."""

    pass


class BillingNotFound(BillingError):
    pass


class InvalidBillingTransition(BillingError):
    """User-initiated action is not valid for the current billing status."""

    pass


class ConcurrentModification(BillingError):
    """Optimistic version check kept losing after bounded retries."""

    pass
