"""Subscription state synchronizer: lifecycle events → Billing state machine.

    subscription_updated  cancel_at_period_end   → cancelled (cancelled_at kept if set)
                          status past_due         → past_due
                          status canceled/unpaid  → cancelled (cancelled_at kept if set)
                          status active/trialing  → active, cancelled_at cleared
    subscription_deleted                          → cancelled, cancelled_at = now
    invoice_paid                                  → active, next_billing_date one period ahead
    invoice_payment_failed                        → past_due

transition() is pure. apply_subscription_event() runs it against the Billing
row under SELECT ... FOR UPDATE plus a version compare-and-set, retrying a
bounded number of times when a concurrent writer wins.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session

from folio_api.billing.errors import ConcurrentModification
from folio_api.billing.events import EventKind, SubscriptionSnapshot
from folio_api.billing.schedule import next_billing_date
from folio_api.db.models import Billing, BillingAuditLog
from folio_api.db.repo_billing import BillingRepository
from folio_api.pricing import BillingPlan

logger = logging.getLogger(__name__)

ACTIVE = "active"
PAST_DUE = "past_due"
CANCELLED = "cancelled"

MAX_VERSION_RETRIES = 3


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a stored timestamp to aware UTC (SQLite returns naive values)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class BillingState:
    status: str
    cancelled_at: Optional[datetime]
    next_billing_date: Optional[datetime]

    @classmethod
    def of(cls, billing: Billing) -> "BillingState":
        return cls(
            status=billing.status,
            cancelled_at=as_utc(billing.cancelled_at),
            next_billing_date=as_utc(billing.next_billing_date),
        )

    def as_updates(self) -> dict:
        return {
            "status": self.status,
            "cancelled_at": self.cancelled_at,
            "next_billing_date": self.next_billing_date,
        }


def _cancel(state: BillingState, now: datetime) -> BillingState:
    return replace(state, status=CANCELLED, cancelled_at=state.cancelled_at or now)


def transition(
    state: BillingState,
    kind: EventKind,
    snapshot: Optional[SubscriptionSnapshot],
    *,
    billing_day: int,
    plan: BillingPlan | str,
    now: datetime,
) -> BillingState:
    """Next Billing state for one lifecycle event. Unrecognized inputs leave state unchanged."""
    if kind is EventKind.SUBSCRIPTION_UPDATED:
        if snapshot is None:
            return state
        if snapshot.cancel_at_period_end:
            return _cancel(state, now)
        if snapshot.status == "past_due":
            return replace(state, status=PAST_DUE)
        if snapshot.status in ("canceled", "unpaid"):
            return _cancel(state, now)
        if snapshot.status in ("active", "trialing"):
            return replace(state, status=ACTIVE, cancelled_at=None)
        return state

    if kind is EventKind.SUBSCRIPTION_DELETED:
        return replace(state, status=CANCELLED, cancelled_at=now)

    if kind is EventKind.INVOICE_PAID:
        return replace(
            state,
            status=ACTIVE,
            next_billing_date=next_billing_date(now, plan, billing_day),
        )

    if kind is EventKind.INVOICE_PAYMENT_FAILED:
        return replace(state, status=PAST_DUE)

    return state


def has_access(state: BillingState | Billing, now: Optional[datetime] = None) -> bool:
    """Access holds while active, or while cancelled and now <= next_billing_date."""
    if isinstance(state, Billing):
        state = BillingState.of(state)
    now = now or datetime.now(timezone.utc)
    if state.status == ACTIVE:
        return True
    if state.status == CANCELLED and state.next_billing_date is not None:
        return state.next_billing_date >= now
    return False


@dataclass(frozen=True)
class SyncResult:
    """status: applied | noop | not_found"""

    status: str
    billing_id: Optional[str] = None
    previous: Optional[BillingState] = None
    current: Optional[BillingState] = None


def apply_billing_transition(
    db: Session,
    load: Callable[[BillingRepository], Optional[Billing]],
    decide: Callable[[Billing, BillingState], BillingState],
    *,
    reason: str,
    actor: str,
    max_retries: int = MAX_VERSION_RETRIES,
) -> SyncResult:
    """Read-decide-write a Billing row under lock + version check.

    Args:
        load: Fetches the target row with lock=True (None → not_found)
        decide: Maps (row, current state) to the target state
        reason: Audit/log label (event kind or user action)

    Raises:
        ConcurrentModification: Version check lost max_retries times in a row
    """
    repo = BillingRepository(db)

    for attempt in range(1, max_retries + 1):
        billing = load(repo)
        if billing is None:
            db.rollback()
            return SyncResult(status="not_found")

        current = BillingState.of(billing)
        target = decide(billing, current)
        if target == current:
            db.rollback()
            logger.info(
                "BILLING_TRANSITION_NOOP",
                extra={"billing_id": billing.id, "reason": reason, "billing_status": current.status},
            )
            return SyncResult(status="noop", billing_id=billing.id, previous=current, current=current)

        billing_id = billing.id
        if not repo.update_with_version_check(billing_id, billing.version, target.as_updates()):
            db.rollback()
            logger.warning(
                "BILLING_VERSION_CONFLICT",
                extra={"billing_id": billing_id, "reason": reason, "attempt": attempt},
            )
            continue

        db.add(BillingAuditLog(
            event_type="BILLING_TRANSITION",
            related_entity_type="BILLING",
            related_entity_id=billing_id,
            actor=actor,
            details={
                "reason": reason,
                "from_status": current.status,
                "to_status": target.status,
            },
        ))
        db.commit()
        db.expire_all()
        logger.info(
            "BILLING_TRANSITION_APPLIED",
            extra={
                "billing_id": billing_id,
                "reason": reason,
                "from_status": current.status,
                "to_status": target.status,
            },
        )
        return SyncResult(status="applied", billing_id=billing_id, previous=current, current=target)

    raise ConcurrentModification(f"Billing update lost {max_retries} version races ({reason})")


def apply_subscription_event(
    db: Session,
    kind: EventKind,
    snapshot: SubscriptionSnapshot,
    *,
    now: Optional[datetime] = None,
    actor: str = "WEBHOOK",
) -> SyncResult:
    """Apply one lifecycle event to the Billing row owning snapshot.subscription_ref.

    A lookup miss is logged and ignored (not_found).
    """
    now = now or datetime.now(timezone.utc)

    def decide(billing: Billing, state: BillingState) -> BillingState:
        return transition(
            state,
            kind,
            snapshot,
            billing_day=billing.billing_day,
            plan=billing.billing_type,
            now=now,
        )

    result = apply_billing_transition(
        db,
        lambda repo: repo.get_by_subscription(snapshot.subscription_ref, lock=True),
        decide,
        reason=kind.value,
        actor=actor,
    )
    if result.status == "not_found":
        logger.warning(
            "SUBSCRIPTION_BILLING_NOT_FOUND",
            extra={"subscription_ref": snapshot.subscription_ref, "event_kind": kind.value},
        )
    return result
