"""Payment processor event envelope + payload extraction."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class EventKind(str, Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE_PAID = "invoice_paid"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"


# Processor event type → pipeline event kind. Unlisted types are ignored.
EVENT_TYPE_MAP: dict[str, EventKind] = {
    "checkout.session.completed": EventKind.CHECKOUT_COMPLETED,
    "customer.subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_DELETED,
    "invoice.paid": EventKind.INVOICE_PAID,
    "invoice.payment_succeeded": EventKind.INVOICE_PAID,
    "invoice.payment_failed": EventKind.INVOICE_PAYMENT_FAILED,
}

PAID_STATUSES = frozenset({"paid", "no_payment_required"})


def _ref(value: Any) -> Optional[str]:
    """Processor references arrive either as an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, dict):
        return value.get("id")
    return str(value)


@dataclass(frozen=True)
class WebhookEvent:
    """Authenticated event envelope."""

    id: str
    type: str
    data_object: dict[str, Any]
    created: Optional[int] = None

    @property
    def kind(self) -> Optional[EventKind]:
        return EVENT_TYPE_MAP.get(self.type)


def parse_event(payload: dict[str, Any]) -> WebhookEvent:
    """Build a WebhookEvent from a decoded payload.

    Raises:
        ValueError: If id, type or data.object is missing
    """
    event_id = payload.get("id")
    event_type = payload.get("type")
    if not event_id or not event_type:
        raise ValueError("Missing required fields: id, type")

    data = payload.get("data")
    data_object = data.get("object") if isinstance(data, dict) else None
    if not isinstance(data_object, dict):
        raise ValueError("Missing required field: data.object")

    return WebhookEvent(
        id=str(event_id),
        type=str(event_type),
        data_object=data_object,
        created=payload.get("created"),
    )


@dataclass(frozen=True)
class CapturedPayment:
    """What the processor reports about a checkout session."""

    session_id: str
    payment_status: str
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    amount_captured: Optional[int] = None
    currency: Optional[str] = None
    payment_ref: Optional[str] = None
    invoice_ref: Optional[str] = None
    customer_email: Optional[str] = None
    client_reference: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.payment_status in PAID_STATUSES

    @classmethod
    def from_session(cls, session: dict[str, Any]) -> "CapturedPayment":
        details = session.get("customer_details") or {}
        return cls(
            session_id=session["id"],
            payment_status=session.get("payment_status") or "unpaid",
            customer_ref=_ref(session.get("customer")),
            subscription_ref=_ref(session.get("subscription")),
            amount_captured=session.get("amount_total"),
            currency=session.get("currency"),
            payment_ref=_ref(session.get("payment_intent")),
            invoice_ref=_ref(session.get("invoice")),
            customer_email=details.get("email") or session.get("customer_email"),
            client_reference=session.get("client_reference_id"),
            metadata=dict(session.get("metadata") or {}),
        )


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Fields of a subscription-lifecycle event the state machine cares about."""

    subscription_ref: str
    status: Optional[str] = None
    cancel_at_period_end: bool = False


def subscription_snapshot(kind: EventKind, obj: dict[str, Any]) -> Optional[SubscriptionSnapshot]:
    """Extract the subscription reference for a lifecycle event.

    Subscription events carry the subscription as the object; invoice events
    reference it. Returns None when no subscription is attached (one-off invoices).
    """
    if kind in (EventKind.SUBSCRIPTION_UPDATED, EventKind.SUBSCRIPTION_DELETED):
        ref = _ref(obj.get("id"))
        if not ref:
            return None
        return SubscriptionSnapshot(
            subscription_ref=ref,
            status=obj.get("status"),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
        )

    ref = _ref(obj.get("subscription"))
    if not ref:
        # Newer API versions nest it under parent.subscription_details
        parent = obj.get("parent") or {}
        ref = _ref((parent.get("subscription_details") or {}).get("subscription"))
    if not ref:
        return None
    return SubscriptionSnapshot(subscription_ref=ref, status=obj.get("status"))
