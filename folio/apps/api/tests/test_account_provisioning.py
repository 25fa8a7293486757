"""Account provisioner: exactly-once creation, atomicity, email collision.

Runs against a file-backed SQLite database (see conftest.session_factory).
"""

import asyncio
import dataclasses
import logging
import threading
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from folio_api.billing.checkout_completion import complete_checkout
from folio_api.billing.credentials import issue_temporary_credential, verify_password
from folio_api.billing.errors import ApplicationNotFound, ProvisioningError
from folio_api.billing.provisioning import OutcomeKind, provision_account
from folio_api.db.models import Application, Billing, BillingAuditLog, CompensationRecord, Profile, Tenant, User
from folio_api.db.repo_tenants import DEFAULT_TENANT_SLUG, TenantRepository
from folio_api.pricing import calculate_pricing


def _count(db, model) -> int:
    return db.execute(select(func.count()).select_from(model)).scalar_one()


def _provision(db, payment):
    return provision_account(db, payment, issue_temporary_credential(rounds=4), TenantRepository(db))


def test_creates_user_profile_billing_and_completes_application(db_session, make_application, payment_for):
    app = make_application(custom_design=True, payment_plan="annual")
    payment = payment_for(app)
    credential = issue_temporary_credential(rounds=4)

    outcome = provision_account(db_session, payment, credential, TenantRepository(db_session))

    assert outcome.kind is OutcomeKind.CREATED
    assert outcome.account_created
    assert outcome.credential is credential

    user = db_session.get(User, outcome.user_id)
    assert user.email == app.email
    assert verify_password(credential.reveal(), user.password_hash)

    tenant = db_session.get(Tenant, user.tenant_id)
    assert tenant.slug == DEFAULT_TENANT_SLUG

    profile = db_session.execute(select(Profile).where(Profile.user_id == user.id)).scalar_one()
    assert (profile.first_name, profile.last_name, profile.email) == (app.first_name, app.last_name, app.email)
    assert profile.purposes == ["portfolio"]

    pricing = calculate_pricing("annual", True)
    billing = db_session.get(Billing, outcome.billing_id)
    assert billing.billing_type == "annual"
    assert billing.initial_amount == pricing.initial_amount
    assert billing.custom_design_fee == pricing.custom_design_fee
    assert billing.stripe_subscription_id == payment.subscription_ref
    assert billing.status == "active"
    assert billing.next_billing_date is not None

    db_session.refresh(app)
    assert app.status == "completed"
    assert app.processed is True
    assert app.user_id == user.id

    audit = db_session.execute(
        select(BillingAuditLog).where(BillingAuditLog.event_type == "ACCOUNT_PROVISIONED")
    ).scalar_one()
    assert audit.related_entity_id == app.id


def test_repeated_deliveries_create_exactly_one_account(db_session, make_application, payment_for):
    app = make_application()
    payment = payment_for(app)

    outcomes = [_provision(db_session, payment) for _ in range(5)]

    assert _count(db_session, User) == 1
    assert _count(db_session, Profile) == 1
    assert _count(db_session, Billing) == 1

    first, rest = outcomes[0], outcomes[1:]
    assert first.kind is OutcomeKind.CREATED
    for outcome in rest:
        assert outcome.kind is OutcomeKind.ALREADY_PROCESSED
        assert outcome.credential is None
        assert outcome == dataclasses.replace(first, kind=OutcomeKind.ALREADY_PROCESSED)
    assert len(set(rest)) == 1


def test_failure_mid_transaction_leaves_nothing_behind(db_session, make_application, payment_for):
    app = make_application()
    payment = payment_for(app)

    with patch(
        "folio_api.billing.provisioning._create_billing",
        side_effect=RuntimeError("billing insert failed"),
    ):
        with pytest.raises(ProvisioningError) as exc_info:
            _provision(db_session, payment)

    assert isinstance(exc_info.value.__cause__, RuntimeError)
    assert _count(db_session, User) == 0
    assert _count(db_session, Profile) == 0
    assert _count(db_session, Billing) == 0

    db_session.refresh(app)
    assert app.status == "pending"
    assert app.processed is False
    assert app.user_id is None


def test_failed_attempt_can_be_retried(db_session, make_application, payment_for):
    app = make_application()
    payment = payment_for(app)

    with patch("folio_api.billing.provisioning._create_billing", side_effect=RuntimeError("transient")):
        with pytest.raises(ProvisioningError):
            _provision(db_session, payment)

    outcome = _provision(db_session, payment)
    assert outcome.kind is OutcomeKind.CREATED
    assert _count(db_session, User) == 1


def test_existing_email_links_without_new_credentials(db_session, make_application, payment_for):
    first_app = make_application(email="returning@example.com")
    original = _provision(db_session, payment_for(first_app))

    second_app = make_application(email="returning@example.com")
    outcome = _provision(db_session, payment_for(second_app))

    assert outcome.kind is OutcomeKind.EXISTING_USER
    assert not outcome.account_created
    assert outcome.credential is None
    assert outcome.user_id == original.user_id
    assert _count(db_session, User) == 1

    db_session.refresh(second_app)
    assert second_app.status == "completed"
    assert second_app.processed is True
    assert second_app.user_id == original.user_id

    user = db_session.get(User, original.user_id)
    assert verify_password(original.credential.reveal(), user.password_hash)


def test_unknown_session_raises_application_not_found(db_session, make_application, payment_for):
    app = make_application()
    payment = dataclasses.replace(payment_for(app), session_id="cs_test_unknown")

    with pytest.raises(ApplicationNotFound):
        _provision(db_session, payment)
    assert _count(db_session, User) == 0


def test_processed_application_returns_recorded_status(db_session, make_application, payment_for):
    app = make_application()
    app.status = "refunded"
    app.processed = True
    db_session.commit()

    outcome = _provision(db_session, payment_for(app))

    assert outcome.kind is OutcomeKind.ALREADY_PROCESSED
    assert outcome.application_status == "refunded"
    assert outcome.user_id is None
    assert _count(db_session, User) == 0
    assert db_session.get(Application, app.id).status == "refunded"


def test_email_taken_mid_transaction_retries_and_links(session_factory, db_session, make_application, payment_for, caplog):
    app = make_application(email="racer@example.com")
    payment = payment_for(app)
    tenant_id = TenantRepository(db_session).find_or_create_default().id
    db_session.commit()

    find_tenant = TenantRepository.find_or_create_default
    competing = []

    def signup_lands_first(self):
        # Another transaction commits the same email after our lookup found none
        if not competing:
            other = session_factory()
            try:
                other.add(User(email=app.email, password_hash="x", tenant_id=tenant_id))
                other.commit()
                competing.append(True)
            finally:
                other.close()
        return find_tenant(self)

    with patch.object(TenantRepository, "find_or_create_default", signup_lands_first):
        with caplog.at_level(logging.WARNING):
            outcome = _provision(db_session, payment)

    assert any(record.getMessage() == "PROVISIONING_RACE_RETRY" for record in caplog.records)
    assert outcome.kind is OutcomeKind.EXISTING_USER
    assert outcome.credential is None
    assert _count(db_session, User) == 1
    assert _count(db_session, Profile) == 0
    db_session.refresh(app)
    assert app.status == "completed"
    assert app.user_id == outcome.user_id


def test_uniqueness_violation_on_every_attempt_raises(db_session, make_application, payment_for):
    app = make_application()
    conflict = IntegrityError("INSERT INTO billing", {}, Exception("UNIQUE constraint failed"))

    with patch("folio_api.billing.provisioning._create_billing", side_effect=conflict) as create_billing:
        with pytest.raises(ProvisioningError) as exc_info:
            _provision(db_session, payment_for(app))

    assert create_billing.call_count == 2
    assert isinstance(exc_info.value.__cause__, IntegrityError)
    assert _count(db_session, User) == 0
    db_session.refresh(app)
    assert app.processed is False


@pytest.mark.slow
def test_concurrent_completions_create_one_account(session_factory, make_application, payment_for, processor, notifier):
    # Webhook delivery and the stale-checkout reaper racing on one session
    payment = payment_for(make_application())
    barrier = threading.Barrier(2)
    results = []
    errors = []

    def worker():
        db = session_factory()
        try:
            barrier.wait()
            results.append(asyncio.run(complete_checkout(db, payment, processor, notifier)))
        except Exception as exc:  # surfaced by the assertion below
            errors.append(exc)
        finally:
            db.close()

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert errors == []
    assert all(result.provisioned for result in results)
    assert [result.outcome.kind for result in results].count(OutcomeKind.CREATED) == 1
    assert len({result.outcome.user_id for result in results}) == 1
    assert len(notifier.credentials) == 1
    assert processor.refund_calls == []

    db = session_factory()
    try:
        assert _count(db, User) == 1
        assert _count(db, Billing) == 1
        assert _count(db, CompensationRecord) == 0
    finally:
        db.close()
