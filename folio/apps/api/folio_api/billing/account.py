"""Billing account service: user-facing reads and cancel/reactivate.

Reads redisplay charges through the pricing calculator. Writes ask the
processor first (no lock held across the network call), then apply the
matching subscription_updated transition through the same lock + version
discipline as the webhook path.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Protocol

from sqlalchemy.orm import Session

from folio_api.billing.errors import BillingNotFound, InvalidBillingTransition
from folio_api.billing.events import EventKind, SubscriptionSnapshot
from folio_api.billing.subscription_sync import (
    ACTIVE,
    CANCELLED,
    BillingState,
    SyncResult,
    apply_billing_transition,
    as_utc,
    has_access,
    transition,
)
from folio_api.db.models import Billing
from folio_api.db.repo_billing import BillingRepository
from folio_api.pricing import calculate_pricing
from folio_api.schemas import (
    BillingHistory,
    BillingHistoryEntry,
    BillingInfo,
    LineItemView,
    SubscriptionStatus,
)
from folio_api.utils.money import format_minor_units

logger = logging.getLogger(__name__)


class SubscriptionProcessor(Protocol):
    async def set_cancel_at_period_end(self, subscription_ref: str, cancel: bool) -> dict: ...


def _require_billing(db: Session, user_id: str) -> Billing:
    billing = BillingRepository(db).get_by_user(user_id)
    if billing is None:
        raise BillingNotFound(f"No billing record for user {user_id}")
    return billing


def get_billing_info(db: Session, user_id: str) -> BillingInfo:
    """Raises BillingNotFound."""
    billing = _require_billing(db, user_id)
    pricing = calculate_pricing(billing.billing_type, billing.custom_design_fee > 0)
    state = BillingState.of(billing)

    return BillingInfo(
        billing_id=billing.id,
        plan=billing.billing_type,
        status=billing.status,
        currency=billing.currency,
        setup_fee=billing.setup_fee,
        recurring_amount=billing.recurring_amount,
        custom_design_fee=billing.custom_design_fee,
        initial_amount=billing.initial_amount,
        pricing_version=billing.pricing_version,
        billing_day=billing.billing_day,
        next_billing_date=state.next_billing_date,
        line_items=[
            LineItemView(
                name=item.name,
                description=item.description,
                amount=item.amount,
                formatted=format_minor_units(item.amount, item.currency),
                recurring_interval=item.recurring_interval,
            )
            for item in pricing.line_items()
        ],
    )


def get_subscription_status(db: Session, user_id: str, *, now: Optional[datetime] = None) -> SubscriptionStatus:
    """Never raises for a missing row; reports has_subscription=False instead."""
    billing = BillingRepository(db).get_by_user(user_id)
    if billing is None:
        return SubscriptionStatus(has_subscription=False)

    now = now or datetime.now(timezone.utc)
    state = BillingState.of(billing)
    access = has_access(state, now)
    cancelled = state.status == CANCELLED

    return SubscriptionStatus(
        has_subscription=True,
        status=state.status,
        type=billing.billing_type,
        is_active=state.status == ACTIVE,
        is_cancelled=cancelled,
        has_access=access,
        access_until=state.next_billing_date if cancelled else None,
        cancelled_at=state.cancelled_at,
        can_cancel=not cancelled,
        can_reactivate=cancelled and access,
    )


def get_billing_history(db: Session, user_id: str) -> BillingHistory:
    """Initial payment plus the upcoming renewal (when one is scheduled)."""
    billing = _require_billing(db, user_id)
    state = BillingState.of(billing)

    entries = [
        BillingHistoryEntry(
            kind="initial_payment",
            description="Setup fee and first billing period",
            amount=billing.initial_amount,
            currency=billing.currency,
            formatted=format_minor_units(billing.initial_amount, billing.currency),
            date=as_utc(billing.created_at),
            status="paid",
        )
    ]
    if state.status != CANCELLED and state.next_billing_date is not None:
        entries.append(
            BillingHistoryEntry(
                kind="upcoming",
                description=f"{billing.billing_type.capitalize()} renewal",
                amount=billing.recurring_amount,
                currency=billing.currency,
                formatted=format_minor_units(billing.recurring_amount, billing.currency),
                date=state.next_billing_date,
                status="scheduled",
            )
        )
    return BillingHistory(billing_id=billing.id, entries=entries)


async def _user_action(
    db: Session,
    user_id: str,
    processor: SubscriptionProcessor,
    *,
    cancel: bool,
    now: Optional[datetime],
) -> SyncResult:
    billing = _require_billing(db, user_id)
    state = BillingState.of(billing)
    now = now or datetime.now(timezone.utc)
    action = "cancel" if cancel else "reactivate"

    if cancel and state.status == CANCELLED:
        raise InvalidBillingTransition("Subscription is already cancelled")
    if not cancel:
        if state.status != CANCELLED:
            raise InvalidBillingTransition("Subscription is not cancelled")
        if not has_access(state, now):
            raise InvalidBillingTransition("Subscription has ended; start a new checkout")

    subscription_ref = billing.stripe_subscription_id
    billing_id = billing.id
    db.rollback()

    if subscription_ref:
        await processor.set_cancel_at_period_end(subscription_ref, cancel)
    else:
        logger.warning("BILLING_NO_SUBSCRIPTION_REF", extra={"billing_id": billing_id, "action": action})

    snapshot = SubscriptionSnapshot(
        subscription_ref=subscription_ref or "",
        status="active",
        cancel_at_period_end=cancel,
    )

    def decide(row: Billing, current: BillingState) -> BillingState:
        return transition(
            current,
            EventKind.SUBSCRIPTION_UPDATED,
            snapshot,
            billing_day=row.billing_day,
            plan=row.billing_type,
            now=now,
        )

    result = apply_billing_transition(
        db,
        lambda repo: repo.get_by_id(billing_id, lock=True),
        decide,
        reason=f"user_{action}",
        actor="USER",
    )
    if result.status == "not_found":
        raise BillingNotFound(f"Billing {billing_id} disappeared during {action}")

    logger.info(
        "SUBSCRIPTION_CANCELLED_BY_USER" if cancel else "SUBSCRIPTION_REACTIVATED_BY_USER",
        extra={"billing_id": billing_id, "result": result.status},
    )
    return result


async def cancel_subscription(
    db: Session,
    user_id: str,
    processor: SubscriptionProcessor,
    *,
    now: Optional[datetime] = None,
) -> SubscriptionStatus:
    """Cancel at period end; access continues until next_billing_date.

    Raises:
        BillingNotFound: No Billing row for user_id
        InvalidBillingTransition: Already cancelled
        PaymentProcessorError: Processor rejected the change (nothing written)
    """
    await _user_action(db, user_id, processor, cancel=True, now=now)
    return get_subscription_status(db, user_id, now=now)


async def reactivate_subscription(
    db: Session,
    user_id: str,
    processor: SubscriptionProcessor,
    *,
    now: Optional[datetime] = None,
) -> SubscriptionStatus:
    """Undo a pending cancellation while access remains.

    Raises:
        BillingNotFound: No Billing row for user_id
        InvalidBillingTransition: Not cancelled, or access already ended
        PaymentProcessorError: Processor rejected the change (nothing written)
    """
    await _user_action(db, user_id, processor, cancel=False, now=now)
    return get_subscription_status(db, user_id, now=now)
