"""Stale checkout loop: complete paid sessions whose webhook never arrived."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from folio_api.billing.errors import PaymentProcessorError
from folio_api.db.models import Application, User
from folio_reaper.loops import shutdown
from folio_reaper.loops.stale_checkout_loop import scan_stale_checkouts, stale_checkout_loop


@pytest.fixture(autouse=True)
def clear_shutdown():
    shutdown._shutdown_event.clear()
    yield
    shutdown._shutdown_event.clear()


def _ago(**delta) -> datetime:
    return datetime.now(timezone.utc) - timedelta(**delta)


def test_scan_window(db_session, make_application):
    stale = make_application(created_at=_ago(minutes=30))
    make_application(created_at=_ago(minutes=2))
    make_application(created_at=_ago(hours=72))
    make_application(created_at=_ago(minutes=30), stripe_session_id=None)
    done = make_application(created_at=_ago(minutes=30), status="completed", processed=True)

    refs = scan_stale_checkouts(db_session, threshold_minutes=15, max_age_hours=48)

    assert refs == [stale.stripe_session_id]
    assert done.stripe_session_id not in refs


def test_loop_completes_paid_stale_checkout(db_session, make_application, payment_for, processor, notifier):
    app = make_application(created_at=_ago(minutes=30))
    processor.sessions[app.stripe_session_id] = payment_for(app)

    stale_checkout_loop(db_session, processor, notifier, stop_after_one_iteration=True)

    db_session.expire_all()
    row = db_session.get(Application, app.id)
    assert row.status == "completed"
    assert row.user_id is not None
    assert [email for email, _ in notifier.credentials] == [app.email]


def test_loop_leaves_unpaid_checkout_pending(db_session, make_application, payment_for, processor, notifier):
    app = make_application(created_at=_ago(minutes=30))
    processor.sessions[app.stripe_session_id] = payment_for(app, payment_status="unpaid")

    stale_checkout_loop(db_session, processor, notifier, stop_after_one_iteration=True)

    db_session.expire_all()
    assert db_session.get(Application, app.id).status == "pending"
    assert db_session.execute(select(func.count()).select_from(User)).scalar_one() == 0


def test_lookup_failure_skips_to_next_checkout(db_session, make_application, payment_for, processor, notifier):
    missing = make_application(created_at=_ago(minutes=40))
    paid = make_application(created_at=_ago(minutes=30))
    processor.sessions[paid.stripe_session_id] = payment_for(paid)

    stale_checkout_loop(db_session, processor, notifier, stop_after_one_iteration=True)

    db_session.expire_all()
    assert db_session.get(Application, missing.id).status == "pending"
    assert db_session.get(Application, paid.id).status == "completed"


def test_processor_outage_leaves_everything_pending(db_session, make_application, processor, notifier):
    app = make_application(created_at=_ago(minutes=30))
    processor.retrieve_error = PaymentProcessorError("connect timeout", retryable=True)

    stale_checkout_loop(db_session, processor, notifier, stop_after_one_iteration=True)

    db_session.expire_all()
    assert db_session.get(Application, app.id).status == "pending"
