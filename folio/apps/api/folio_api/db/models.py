"""SQLAlchemy ORM Models for Folio."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    BIGINT,
    BOOLEAN,
    INTEGER,
    CheckConstraint,
    JSON,
    TEXT,
    TIMESTAMP,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# BIGSERIAL on PostgreSQL; SQLite only autoincrements INTEGER PRIMARY KEY
BigIntPK = BIGINT().with_variant(INTEGER(), "sqlite")


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class Tenant(Base):
    """Tenant model for multi-tenancy."""

    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(TEXT, primary_key=True, default=_uuid)
    slug: Mapped[str] = mapped_column(TEXT, nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(TEXT, nullable=False)
    status: Mapped[str] = mapped_column(TEXT, nullable=False, default="ACTIVE")
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_now
    )


class User(Base):
    """Authenticatable account. Email is globally unique."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(TEXT, primary_key=True, default=_uuid)
    email: Mapped[str] = mapped_column(TEXT, nullable=False)
    password_hash: Mapped[str] = mapped_column(TEXT, nullable=False)
    tenant_id: Mapped[str] = mapped_column(TEXT, nullable=False)  # FK to tenants
    is_active: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_now
    )

    __table_args__ = (
        UniqueConstraint("email", name="uq_users_email"),
        Index("idx_users_tenant", "tenant_id"),
    )


class Profile(Base):
    """Profile model - 1:1 with User, identity fields copied from the Application."""

    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(TEXT, primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(TEXT, nullable=False)  # FK to users
    first_name: Mapped[str] = mapped_column(TEXT, nullable=False)
    last_name: Mapped[str] = mapped_column(TEXT, nullable=False)
    email: Mapped[str] = mapped_column(TEXT, nullable=False)
    about: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    purposes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_now
    )

    __table_args__ = (UniqueConstraint("user_id", name="uq_profiles_user"),)


class Application(Base):
    """Application model - one intake record per checkout attempt.

    Lifecycle: pending → completed | refunded | failed (terminal, set once).
    """

    __tablename__ = "applications"

    id: Mapped[str] = mapped_column(TEXT, primary_key=True, default=_uuid)

    # Applicant
    email: Mapped[str] = mapped_column(TEXT, nullable=False)
    first_name: Mapped[str] = mapped_column(TEXT, nullable=False)
    last_name: Mapped[str] = mapped_column(TEXT, nullable=False)
    about: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    purposes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    # Plan selection
    custom_design: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)
    payment_plan: Mapped[str] = mapped_column(TEXT, nullable=False)  # monthly | annual

    # Processor correlation
    stripe_session_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    status: Mapped[str] = mapped_column(
        TEXT, nullable=False, default="pending"
    )  # pending | completed | refunded | failed
    processed: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    user_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)  # FK to users

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_now, onupdate=_now
    )

    __table_args__ = (
        UniqueConstraint("stripe_session_id", name="uq_applications_stripe_session"),
        Index("idx_applications_status_created", "status", "created_at"),
        Index("idx_applications_email", "email"),
    )


class Billing(Base):
    """Billing model - subscription/payment state, 1:1 with User and Application.

    Status: active | past_due | cancelled.
    Concurrency: mutated under row lock + optimistic version check.
    """

    __tablename__ = "billing"

    id: Mapped[str] = mapped_column(TEXT, primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    application_id: Mapped[str] = mapped_column(TEXT, nullable=False)

    # Processor references
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    # Schedule
    billing_type: Mapped[str] = mapped_column(TEXT, nullable=False)  # monthly | annual
    billing_day: Mapped[int] = mapped_column(INTEGER, nullable=False)
    next_billing_date: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    # Money (minor units)
    setup_fee: Mapped[int] = mapped_column(INTEGER, nullable=False)
    recurring_amount: Mapped[int] = mapped_column(INTEGER, nullable=False)
    custom_design_fee: Mapped[int] = mapped_column(INTEGER, nullable=False, default=0)
    initial_amount: Mapped[int] = mapped_column(INTEGER, nullable=False)
    amount_captured: Mapped[Optional[int]] = mapped_column(INTEGER, nullable=True)
    currency: Mapped[str] = mapped_column(TEXT, nullable=False, default="gbp")
    pricing_version: Mapped[str] = mapped_column(TEXT, nullable=False)

    status: Mapped[str] = mapped_column(TEXT, nullable=False, default="active")
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    # Optimistic locking
    version: Mapped[int] = mapped_column(INTEGER, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_now, onupdate=_now
    )

    __table_args__ = (
        UniqueConstraint("user_id", name="uq_billing_user"),
        UniqueConstraint("application_id", name="uq_billing_application"),
        UniqueConstraint("stripe_subscription_id", name="uq_billing_stripe_subscription"),
        CheckConstraint("status <> 'cancelled' OR cancelled_at IS NOT NULL", name="ck_billing_cancelled_at"),
        Index("idx_billing_status", "status"),
    )


class CompensationRecord(Base):
    """Compensation claim + retry ledger, one row per checkout session.

    Atomic gate: INSERT ON CONFLICT (stripe_session_id) DO NOTHING RETURNING id
      → row returned  : this caller owns the refund
      → no row        : already compensated / in flight (reclaimable only when 'failed')
    """

    __tablename__ = "compensations"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    stripe_session_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    application_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    payment_ref: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)  # payment_intent
    invoice_ref: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    amount: Mapped[Optional[int]] = mapped_column(INTEGER, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    customer_email: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    status: Mapped[str] = mapped_column(
        TEXT, nullable=False, default="processing"
    )  # processing | done | failed | manual_review | skipped
    refund_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    amount_refunded: Mapped[Optional[int]] = mapped_column(INTEGER, nullable=True)
    attempts: Mapped[int] = mapped_column(INTEGER, nullable=False, default=0)

    root_cause: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_now
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    __table_args__ = (
        UniqueConstraint("stripe_session_id", name="uq_compensations_session"),
        Index("idx_compensations_status", "status"),
    )


class WebhookDedupEvent(Base):
    """Webhook dedup gate table for concurrent idempotency.

    Atomic gate: INSERT ON CONFLICT (provider, dedup_key) DO NOTHING RETURNING id
      → row returned  : first/re-processing handler → continue
      → no row        : duplicate/concurrent → 200 immediately (zero side effects)
    """

    __tablename__ = "webhook_dedup_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    provider: Mapped[str] = mapped_column(TEXT, nullable=False)     # stripe
    dedup_key: Mapped[str] = mapped_column(TEXT, nullable=False)    # ev_<event_id>

    first_seen_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_now
    )
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    status: Mapped[str] = mapped_column(
        TEXT, nullable=False, default="processing"
    )  # processing | done | failed

    # SHA-256 hex of request body (never raw payload)
    request_hash: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "dedup_key", name="uq_webhook_dedup_events"),
        Index("idx_webhook_dedup_status", "status"),
    )


class BillingAuditLog(Base):
    """Audit trail for provisioning, compensation, and billing transitions."""

    __tablename__ = "billing_audit_logs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    event_type: Mapped[str] = mapped_column(TEXT, nullable=False)
    # ACCOUNT_PROVISIONED, ACCOUNT_LINKED, REFUND_ISSUED, REFUND_FAILED, BILLING_TRANSITION, ...

    tenant_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    related_entity_type: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    # APPLICATION, BILLING, COMPENSATION
    related_entity_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    actor: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)  # WEBHOOK, USER, REAPER, VERIFY
    details: Mapped[dict] = mapped_column(JSON, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_now
    )

    __table_args__ = (
        Index("idx_billing_audit_entity", "related_entity_type", "related_entity_id"),
        Index("idx_billing_audit_created", "created_at"),
    )
