"""Stripe REST client (checkout sessions, refunds, subscriptions) over httpx.

Stripe API Reference:
- Checkout Sessions: https://stripe.com/docs/api/checkout/sessions
- Refunds: https://stripe.com/docs/api/refunds
- Webhook signatures: https://stripe.com/docs/webhooks#verify-manually
"""

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from folio_api.billing.errors import PaymentProcessorError, WebhookSignatureError
from folio_api.billing.events import CapturedPayment
from folio_api.config.env import get_stripe_api_base, get_stripe_secret_key
from folio_api.pricing import LineItem

logger = logging.getLogger(__name__)

SIGNATURE_SCHEME = "v1"


@dataclass(frozen=True)
class CheckoutSessionHandle:
    session_id: str
    redirect_url: str


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    amount_refunded: int
    status: str


def encode_form(params: dict[str, Any], prefix: str = "") -> dict[str, str]:
    """Flatten nested params into Stripe's bracketed form encoding.

    {"line_items": [{"quantity": 1}]} → {"line_items[0][quantity]": "1"}
    None values are dropped; booleans become "true"/"false".
    """
    flat: dict[str, str] = {}
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            flat.update(encode_form(value, name))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                item_name = f"{name}[{index}]"
                if isinstance(item, dict):
                    flat.update(encode_form(item, item_name))
                else:
                    flat[item_name] = str(item)
        elif isinstance(value, bool):
            flat[name] = "true" if value else "false"
        else:
            flat[name] = str(value)
    return flat


def _line_item_params(item: LineItem) -> dict[str, Any]:
    price_data: dict[str, Any] = {
        "currency": item.currency,
        "unit_amount": item.amount,
        "product_data": {"name": item.name, "description": item.description},
    }
    if item.recurring_interval:
        price_data["recurring"] = {"interval": item.recurring_interval}
    return {"price_data": price_data, "quantity": 1}


class StripeClient:
    """Stripe API client.

    Environment Variables:
    - STRIPE_SECRET_KEY: API secret key (required)
    - STRIPE_API_BASE: API base URL (default: https://api.stripe.com)
    """

    def __init__(
        self,
        secret_key: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.secret_key = secret_key or get_stripe_secret_key()
        self.base_url = (api_base or get_stripe_api_base()).rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        """Send one API request.

        Raises:
            PaymentProcessorError: retryable for network errors, 429 and 5xx
        """
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        data = encode_form(params) if params and method != "GET" else None
        query = encode_form(params) if params and method == "GET" else None

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.request(method, path, headers=headers, data=data, params=query)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise PaymentProcessorError(
                f"Stripe {method} {path} returned {status}",
                retryable=status == 429 or status >= 500,
                status_code=status,
            ) from exc
        except httpx.RequestError as exc:
            raise PaymentProcessorError(
                f"Stripe {method} {path} failed: {type(exc).__name__}",
                retryable=True,
            ) from exc

    async def open_checkout_session(
        self,
        *,
        line_items: list[LineItem],
        success_url: str,
        cancel_url: str,
        client_reference: str,
        customer_email: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> CheckoutSessionHandle:
        """Create a subscription-mode checkout session."""
        params = {
            "mode": "subscription",
            "payment_method_types": ["card"],
            "line_items": [_line_item_params(item) for item in line_items],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": client_reference,
            "customer_email": customer_email,
            "metadata": metadata or {},
        }
        result = await self._request(
            "POST",
            "/v1/checkout/sessions",
            params=params,
            idempotency_key=f"checkout-{client_reference}",
        )
        logger.info(
            "STRIPE_CHECKOUT_SESSION_CREATED",
            extra={"session_id": result.get("id"), "application_id": client_reference},
        )
        return CheckoutSessionHandle(session_id=result["id"], redirect_url=result["url"])

    async def retrieve_session(self, session_id: str) -> CapturedPayment:
        result = await self._request("GET", f"/v1/checkout/sessions/{session_id}")
        return CapturedPayment.from_session(result)

    async def resolve_payment_ref(self, payment: CapturedPayment) -> Optional[str]:
        """Refundable payment reference for a session.

        Subscription-mode sessions carry no payment_intent; it hangs off the
        first invoice instead.
        """
        if payment.payment_ref:
            return payment.payment_ref
        if not payment.invoice_ref:
            return None
        invoice = await self._request("GET", f"/v1/invoices/{payment.invoice_ref}")
        intent = invoice.get("payment_intent")
        if isinstance(intent, dict):
            return intent.get("id")
        return intent

    async def issue_refund(
        self,
        payment_ref: str,
        *,
        reason: str = "requested_by_customer",
        amount: Optional[int] = None,
        idempotency_key: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> RefundResult:
        """Refund a payment intent (full amount unless amount is given)."""
        params = {
            "payment_intent": payment_ref,
            "reason": reason,
            "amount": amount,
            "metadata": metadata or {},
        }
        result = await self._request(
            "POST", "/v1/refunds", params=params, idempotency_key=idempotency_key
        )
        logger.info(
            "STRIPE_REFUND_CREATED",
            extra={"refund_id": result.get("id"), "refund_status": result.get("status")},
        )
        return RefundResult(
            refund_id=result["id"],
            amount_refunded=int(result.get("amount") or 0),
            status=result.get("status", "pending"),
        )

    async def set_cancel_at_period_end(self, subscription_ref: str, cancel: bool) -> dict:
        """Schedule (or unschedule) cancellation at the end of the paid period."""
        return await self._request(
            "POST",
            f"/v1/subscriptions/{subscription_ref}",
            params={"cancel_at_period_end": cancel},
        )


# ============================================================================
# Webhook signature verification
# ============================================================================


def compute_signature(raw_body: bytes, secret: str, timestamp: int) -> str:
    signed_payload = f"{timestamp}.".encode("utf-8") + raw_body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def build_signature_header(raw_body: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Stripe-Signature header value for raw_body (used by tooling and tests)."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    return f"t={timestamp},{SIGNATURE_SCHEME}={compute_signature(raw_body, secret, timestamp)}"


def _parse_signature_header(header: str) -> tuple[int, list[str]]:
    timestamp: Optional[int] = None
    signatures: list[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise WebhookSignatureError("Signature timestamp is not an integer") from None
        elif key == SIGNATURE_SCHEME:
            signatures.append(value)
    if timestamp is None:
        raise WebhookSignatureError("Signature header has no timestamp")
    if not signatures:
        raise WebhookSignatureError(f"Signature header has no {SIGNATURE_SCHEME} signature")
    return timestamp, signatures


def verify_webhook_signature(
    raw_body: bytes,
    signature_header: str,
    secret: str,
    *,
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> dict:
    """Authenticate raw_body against its Stripe-Signature header and decode it.

    Returns:
        Decoded event payload

    Raises:
        WebhookSignatureError: Malformed header, stale timestamp, or mismatch
        ValueError: Authenticated body is not JSON
    """
    timestamp, signatures = _parse_signature_header(signature_header)

    expected = compute_signature(raw_body, secret, timestamp)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise WebhookSignatureError("No signature matches the expected signature for payload")

    current = time.time() if now is None else now
    if tolerance_seconds > 0 and abs(current - timestamp) > tolerance_seconds:
        raise WebhookSignatureError("Signature timestamp outside the tolerance zone")

    return json.loads(raw_body)


# Global client instance (singleton)
_stripe_client: Optional[StripeClient] = None


def get_stripe_client() -> StripeClient:
    """Get global Stripe client instance (singleton).

    Raises:
        ValueError: If STRIPE_SECRET_KEY is not set
    """
    global _stripe_client
    if _stripe_client is None:
        _stripe_client = StripeClient()
    return _stripe_client
