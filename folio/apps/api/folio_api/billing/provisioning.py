"""Account provisioner: completed checkout → User + Profile + Billing, exactly once.

One transaction per attempt:
  1. Lock the Application by checkout-session reference (absent → ApplicationNotFound)
  2. Application.processed → return the recorded outcome (idempotent short-circuit)
  3. Email already registered → link Application to that User, no credentials
  4. Otherwise create Tenant (find-or-create) + User + Profile + Billing,
     mark Application completed
  5. Commit

The UNIQUE constraints on users.email and applications.stripe_session_id are
the backstop when two deliveries race past step 2. A uniqueness violation is
retried once from step 1, where the loser now takes the step 2 or step 3 path.
Any other failure rolls back everything and surfaces as ProvisioningError.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from folio_api.billing.credentials import TemporaryCredential
from folio_api.billing.errors import ApplicationNotFound, ProvisioningError, ProvisioningTimeout
from folio_api.billing.events import CapturedPayment
from folio_api.billing.schedule import next_billing_date
from folio_api.config.env import get_provisioning_timeout_seconds
from folio_api.context import user_id_var
from folio_api.db.engine import is_postgres
from folio_api.db.models import Application, Billing, BillingAuditLog, Profile, User
from folio_api.db.repo_tenants import TenantRepository
from folio_api.pricing import BillingPlan, calculate_pricing

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2


class OutcomeKind(str, Enum):
    CREATED = "created"
    EXISTING_USER = "existing_user"
    ALREADY_PROCESSED = "already_processed"


@dataclass(frozen=True)
class ProvisioningOutcome:
    """Result of one provisioning call.

    Every kind carries the same fields. credential is set only on the single
    CREATED call; it is never part of equality.
    """

    kind: OutcomeKind
    session_ref: str
    application_id: str
    application_status: str
    email: str
    user_id: Optional[str] = None
    billing_id: Optional[str] = None
    credential: Optional[TemporaryCredential] = field(default=None, compare=False, repr=False)

    @property
    def account_created(self) -> bool:
        return self.kind is OutcomeKind.CREATED


class _Deadline:
    def __init__(self, seconds: int):
        self.seconds = seconds
        self._expires = time.monotonic() + seconds

    def check(self, step: str) -> None:
        if time.monotonic() > self._expires:
            raise ProvisioningTimeout(f"Provisioning exceeded {self.seconds}s (at {step})")


def _apply_statement_timeout(db: Session, seconds: int) -> None:
    # SET LOCAL takes no bind parameters; value is an int we computed
    if is_postgres(db.get_bind()):
        db.execute(text(f"SET LOCAL statement_timeout = {int(seconds) * 1000}"))


def _lock_application(db: Session, session_ref: str) -> Application:
    app = db.execute(
        select(Application)
        .where(Application.stripe_session_id == session_ref)
        .with_for_update()
    ).scalar_one_or_none()
    if app is None:
        raise ApplicationNotFound(session_ref)
    return app


def _billing_id_for(db: Session, user_id: Optional[str]) -> Optional[str]:
    if not user_id:
        return None
    return db.execute(select(Billing.id).where(Billing.user_id == user_id)).scalar_one_or_none()


def _recorded_outcome(db: Session, app: Application) -> ProvisioningOutcome:
    return ProvisioningOutcome(
        kind=OutcomeKind.ALREADY_PROCESSED,
        session_ref=app.stripe_session_id,
        application_id=app.id,
        application_status=app.status,
        email=app.email,
        user_id=app.user_id,
        billing_id=_billing_id_for(db, app.user_id),
    )


def _mark_completed(app: Application, user_id: str, now: datetime) -> None:
    app.user_id = user_id
    app.processed = True
    app.processed_at = now
    app.status = "completed"


def _create_billing(
    db: Session,
    app: Application,
    user: User,
    payment: CapturedPayment,
    now: datetime,
) -> Billing:
    plan = BillingPlan(app.payment_plan)
    pricing = calculate_pricing(plan, app.custom_design)

    if payment.amount_captured is not None and payment.amount_captured != pricing.initial_amount:
        logger.warning(
            "PROVISIONING_AMOUNT_MISMATCH",
            extra={
                "application_id": app.id,
                "amount_captured": payment.amount_captured,
                "initial_amount": pricing.initial_amount,
            },
        )

    billing = Billing(
        user_id=user.id,
        application_id=app.id,
        stripe_customer_id=payment.customer_ref,
        stripe_subscription_id=payment.subscription_ref,
        billing_type=plan.value,
        billing_day=now.day,
        next_billing_date=next_billing_date(now, plan),
        setup_fee=pricing.setup_fee,
        recurring_amount=pricing.recurring_amount,
        custom_design_fee=pricing.custom_design_fee,
        initial_amount=pricing.initial_amount,
        amount_captured=payment.amount_captured,
        currency=payment.currency or pricing.currency,
        pricing_version=pricing.pricing_version,
        status="active",
    )
    db.add(billing)
    db.flush()
    return billing


def _provision_once(
    db: Session,
    payment: CapturedPayment,
    credential: TemporaryCredential,
    tenants: TenantRepository,
    deadline: _Deadline,
    actor: str,
) -> ProvisioningOutcome:
    _apply_statement_timeout(db, deadline.seconds)

    app = _lock_application(db, payment.session_id)

    if app.processed:
        logger.info(
            "PROVISIONING_ALREADY_PROCESSED",
            extra={"application_id": app.id, "application_status": app.status},
        )
        return _recorded_outcome(db, app)

    now = datetime.now(timezone.utc)
    existing = db.execute(select(User).where(User.email == app.email)).scalar_one_or_none()

    if existing is not None:
        _mark_completed(app, existing.id, now)
        db.add(BillingAuditLog(
            event_type="ACCOUNT_LINKED",
            tenant_id=existing.tenant_id,
            related_entity_type="APPLICATION",
            related_entity_id=app.id,
            actor=actor,
            details={"user_id": existing.id, "session_ref": payment.session_id},
        ))
        db.flush()
        logger.info(
            "PROVISIONING_LINKED_EXISTING_USER",
            extra={"application_id": app.id, "user_id": existing.id},
        )
        return ProvisioningOutcome(
            kind=OutcomeKind.EXISTING_USER,
            session_ref=payment.session_id,
            application_id=app.id,
            application_status=app.status,
            email=app.email,
            user_id=existing.id,
            billing_id=_billing_id_for(db, existing.id),
        )

    deadline.check("tenant")
    tenant = tenants.find_or_create_default()

    user = User(
        email=app.email,
        password_hash=credential.password_hash,
        tenant_id=tenant.id,
        is_active=True,
    )
    db.add(user)
    db.flush()

    deadline.check("profile")
    db.add(Profile(
        user_id=user.id,
        first_name=app.first_name,
        last_name=app.last_name,
        email=app.email,
        about=app.about,
        purposes=list(app.purposes or []),
    ))
    db.flush()

    deadline.check("billing")
    billing = _create_billing(db, app, user, payment, now)

    _mark_completed(app, user.id, now)
    db.add(BillingAuditLog(
        event_type="ACCOUNT_PROVISIONED",
        tenant_id=tenant.id,
        related_entity_type="APPLICATION",
        related_entity_id=app.id,
        actor=actor,
        details={
            "user_id": user.id,
            "billing_id": billing.id,
            "session_ref": payment.session_id,
            "initial_amount": billing.initial_amount,
            "pricing_version": billing.pricing_version,
        },
    ))
    db.flush()
    deadline.check("commit")

    return ProvisioningOutcome(
        kind=OutcomeKind.CREATED,
        session_ref=payment.session_id,
        application_id=app.id,
        application_status=app.status,
        email=app.email,
        user_id=user.id,
        billing_id=billing.id,
        credential=credential,
    )


def provision_account(
    db: Session,
    payment: CapturedPayment,
    credential: TemporaryCredential,
    tenants: TenantRepository,
    *,
    timeout_seconds: Optional[int] = None,
    actor: str = "WEBHOOK",
) -> ProvisioningOutcome:
    """Provision the account for a paid checkout session.

    Args:
        db: Session; any open transaction is rolled back first
        payment: Processor view of the completed session
        credential: Pre-hashed temporary credential (used only on CREATED)
        tenants: Tenant store bound to the same session
        timeout_seconds: Transaction deadline (default: FOLIO_PROVISIONING_TIMEOUT_SEC)
        actor: Audit actor label

    Raises:
        ApplicationNotFound: No Application for payment.session_id
        ProvisioningTimeout: Deadline exceeded (rolled back)
        ProvisioningError: Any other failure (rolled back, cause chained)
    """
    seconds = timeout_seconds or get_provisioning_timeout_seconds()
    deadline = _Deadline(seconds)
    db.rollback()

    for attempt in range(1, MAX_ATTEMPTS + 1):
        try:
            outcome = _provision_once(db, payment, credential, tenants, deadline, actor)
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            if attempt < MAX_ATTEMPTS:
                logger.warning(
                    "PROVISIONING_RACE_RETRY",
                    extra={"attempt": attempt, "error_type": type(exc).__name__},
                )
                continue
            raise ProvisioningError("Uniqueness violation persisted after retry") from exc
        except (ApplicationNotFound, ProvisioningError):
            db.rollback()
            raise
        except OperationalError as exc:
            db.rollback()
            if "statement timeout" in str(exc).lower():
                raise ProvisioningTimeout(f"Provisioning exceeded {seconds}s (statement timeout)") from exc
            raise ProvisioningError(f"Provisioning failed: {type(exc).__name__}") from exc
        except Exception as exc:
            db.rollback()
            raise ProvisioningError(f"Provisioning failed: {type(exc).__name__}") from exc

        if outcome.user_id:
            user_id_var.set(outcome.user_id)
        logger.info(
            "PROVISIONING_COMPLETED",
            extra={
                "outcome": outcome.kind.value,
                "application_id": outcome.application_id,
                "application_status": outcome.application_status,
            },
        )
        return outcome

    raise ProvisioningError("Provisioning did not complete")
