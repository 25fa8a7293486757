"""Shared pytest configuration for the api and reaper test suites."""

import os
import sys
import tempfile
from pathlib import Path

# Inject sys.path for reliable pytest imports
_APPS = Path(__file__).resolve().parent
sys.path.insert(0, str(_APPS / "api"))     # => .../apps/api
sys.path.insert(0, str(_APPS / "reaper"))  # => .../apps/reaper

# Environment must be in place before folio_api.db.session builds its engine
_TMP_DIR = tempfile.mkdtemp(prefix="folio-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP_DIR}/folio-app.db"
os.environ["FOLIO_ENV"] = "test"
os.environ["FOLIO_JSON_LOGS"] = "false"
os.environ["FOLIO_PASSWORD_HASH_ROUNDS"] = "4"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_folio_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_folio_test_secret"
os.environ.pop("SENDGRID_API_KEY", None)
os.environ.pop("FOLIO_SHORT_MONTH_POLICY", None)

import asyncio
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from sqlalchemy.orm import Session

from folio_api.billing.errors import PaymentProcessorError
from folio_api.billing.events import CapturedPayment
from folio_api.billing.stripe import CheckoutSessionHandle, RefundResult
from folio_api.db.engine import build_engine, build_sessionmaker
from folio_api.db.models import Application, Base, Billing
from folio_api.pricing import calculate_pricing


class FakeProcessor:
    """In-memory stand-in for StripeClient.

    Records every call; refund calls are counted under a lock so threaded
    tests can assert on them.
    """

    def __init__(self):
        self.sessions: dict[str, CapturedPayment] = {}
        self.invoice_payments: dict[str, str] = {}
        self.checkout_calls: list[dict] = []
        self.refund_calls: list[dict] = []
        self.cancel_calls: list[tuple[str, bool]] = []
        self.checkout_error: Optional[PaymentProcessorError] = None
        self.retrieve_error: Optional[PaymentProcessorError] = None
        self.resolve_error: Optional[Exception] = None
        self.refund_error: Optional[Exception] = None
        self.cancel_error: Optional[PaymentProcessorError] = None
        self.refund_delay = 0.0
        self._lock = threading.Lock()

    async def open_checkout_session(
        self,
        *,
        line_items,
        success_url,
        cancel_url,
        client_reference,
        customer_email,
        metadata=None,
    ) -> CheckoutSessionHandle:
        if self.checkout_error is not None:
            raise self.checkout_error
        session_id = f"cs_test_{uuid.uuid4().hex[:12]}"
        self.checkout_calls.append({
            "session_id": session_id,
            "line_items": list(line_items),
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference": client_reference,
            "customer_email": customer_email,
            "metadata": dict(metadata or {}),
        })
        return CheckoutSessionHandle(
            session_id=session_id,
            redirect_url=f"https://checkout.stripe.test/pay/{session_id}",
        )

    async def retrieve_session(self, session_id: str) -> CapturedPayment:
        if self.retrieve_error is not None:
            raise self.retrieve_error
        try:
            return self.sessions[session_id]
        except KeyError:
            raise PaymentProcessorError("No such checkout session", retryable=False, status_code=404) from None

    async def resolve_payment_ref(self, payment: CapturedPayment) -> Optional[str]:
        if self.resolve_error is not None:
            raise self.resolve_error
        if payment.payment_ref:
            return payment.payment_ref
        return self.invoice_payments.get(payment.invoice_ref or "")

    async def issue_refund(
        self,
        payment_ref: str,
        *,
        reason: str = "requested_by_customer",
        amount: Optional[int] = None,
        idempotency_key: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> RefundResult:
        with self._lock:
            self.refund_calls.append({
                "payment_ref": payment_ref,
                "reason": reason,
                "idempotency_key": idempotency_key,
                "metadata": dict(metadata or {}),
            })
            call_number = len(self.refund_calls)
        if self.refund_delay:
            await asyncio.sleep(self.refund_delay)
        if self.refund_error is not None:
            raise self.refund_error
        return RefundResult(refund_id=f"re_test_{call_number}", amount_refunded=amount or 8499, status="succeeded")

    async def set_cancel_at_period_end(self, subscription_ref: str, cancel: bool) -> dict:
        if self.cancel_error is not None:
            raise self.cancel_error
        self.cancel_calls.append((subscription_ref, cancel))
        return {"id": subscription_ref, "cancel_at_period_end": cancel}


class FakeNotifier:
    """Records every notification instead of sending it."""

    def __init__(self):
        self.credentials: list[tuple[str, str]] = []
        self.receipts: list[str] = []
        self.refund_notices: list[tuple[str, int, str, str]] = []
        self.alerts: list[tuple[str, str]] = []

    async def send_credentials(self, email, temp_password, *, first_name=None) -> bool:
        self.credentials.append((email, temp_password))
        return True

    async def send_payment_receipt(self, email, pricing, next_billing_date, *, first_name=None) -> bool:
        self.receipts.append(email)
        return True

    async def send_refund_notice(self, email, amount, currency, reference) -> bool:
        self.refund_notices.append((email, amount, currency, reference))
        return True

    async def send_operator_alert(self, subject, body) -> bool:
        self.alerts.append((subject, body))
        return True


@pytest.fixture(scope="function")
def session_factory(tmp_path):
    """File-backed SQLite so threads can hold separate connections."""
    engine = build_engine(f"sqlite:///{tmp_path / 'folio.db'}")
    Base.metadata.create_all(engine)
    try:
        yield build_sessionmaker(engine)
    finally:
        engine.dispose()


@pytest.fixture(scope="function")
def db_session(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
        session.rollback()
    finally:
        session.close()


@pytest.fixture
def processor() -> FakeProcessor:
    return FakeProcessor()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def make_application(db_session: Session):
    """Factory for pending Applications that already carry a session reference."""

    def _make(**overrides) -> Application:
        fields = {
            "email": f"applicant-{uuid.uuid4().hex[:8]}@example.com",
            "first_name": "Ada",
            "last_name": "Lovelace",
            "about": "Analytical engines",
            "purposes": ["portfolio"],
            "custom_design": False,
            "payment_plan": "monthly",
            "stripe_session_id": f"cs_test_{uuid.uuid4().hex[:12]}",
            "status": "pending",
        }
        fields.update(overrides)
        app = Application(**fields)
        db_session.add(app)
        db_session.commit()
        db_session.refresh(app)
        return app

    return _make


@pytest.fixture
def payment_for():
    """Factory for the processor's view of a paid session for an Application."""

    def _payment(app: Application, **overrides) -> CapturedPayment:
        pricing = calculate_pricing(app.payment_plan, app.custom_design)
        fields = {
            "session_id": app.stripe_session_id,
            "payment_status": "paid",
            "customer_ref": "cus_test_1",
            "subscription_ref": f"sub_{app.stripe_session_id}",
            "amount_captured": pricing.initial_amount,
            "currency": "gbp",
            "payment_ref": f"pi_{app.stripe_session_id}",
            "customer_email": app.email,
            "client_reference": app.id,
        }
        fields.update(overrides)
        return CapturedPayment(**fields)

    return _payment


@pytest.fixture
def make_billing(db_session: Session):
    """Factory for Billing rows not tied to a provisioning run."""

    def _make(**overrides) -> Billing:
        pricing = calculate_pricing(overrides.get("billing_type", "monthly"))
        fields = {
            "user_id": str(uuid.uuid4()),
            "application_id": str(uuid.uuid4()),
            "stripe_customer_id": "cus_test_1",
            "stripe_subscription_id": f"sub_{uuid.uuid4().hex[:12]}",
            "billing_type": "monthly",
            "billing_day": 15,
            "next_billing_date": datetime.now(timezone.utc) + timedelta(days=20),
            "setup_fee": pricing.setup_fee,
            "recurring_amount": pricing.recurring_amount,
            "custom_design_fee": pricing.custom_design_fee,
            "initial_amount": pricing.initial_amount,
            "amount_captured": pricing.initial_amount,
            "currency": pricing.currency,
            "pricing_version": pricing.pricing_version,
            "status": "active",
        }
        fields.update(overrides)
        billing = Billing(**fields)
        db_session.add(billing)
        db_session.commit()
        db_session.refresh(billing)
        return billing

    return _make
