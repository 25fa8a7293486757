"""Checkout completion routine: provisioning, welcome emails, compensation hand-off."""

import dataclasses
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from folio_api.billing.checkout_completion import complete_checkout
from folio_api.billing.provisioning import OutcomeKind
from folio_api.db.models import Application, CompensationRecord, User


@pytest.mark.asyncio
async def test_paid_session_provisions_and_emails_credentials(db_session, make_application, payment_for, processor, notifier):
    app = make_application()

    result = await complete_checkout(db_session, payment_for(app), processor, notifier)

    assert result.paid
    assert result.provisioned
    assert result.outcome.kind is OutcomeKind.CREATED
    assert notifier.receipts == [app.email]
    assert len(notifier.credentials) == 1
    email, temp_password = notifier.credentials[0]
    assert email == app.email
    assert len(temp_password) == 12
    # Plaintext is gone once the routine returns
    assert result.outcome.credential.discarded
    assert processor.refund_calls == []


@pytest.mark.asyncio
async def test_redelivery_sends_no_second_email(db_session, make_application, payment_for, processor, notifier):
    app = make_application()
    payment = payment_for(app)

    await complete_checkout(db_session, payment, processor, notifier)
    second = await complete_checkout(db_session, payment, processor, notifier)

    assert second.outcome.kind is OutcomeKind.ALREADY_PROCESSED
    assert len(notifier.credentials) == 1
    assert len(notifier.receipts) == 1


@pytest.mark.asyncio
async def test_unpaid_session_is_a_no_op(db_session, make_application, payment_for, processor, notifier):
    app = make_application()

    result = await complete_checkout(
        db_session, payment_for(app, payment_status="unpaid"), processor, notifier
    )

    assert not result.paid
    assert not result.provisioned
    assert db_session.execute(select(func.count()).select_from(User)).scalar_one() == 0
    assert db_session.get(Application, app.id).status == "pending"


@pytest.mark.asyncio
async def test_existing_user_gets_no_credentials(db_session, make_application, payment_for, processor, notifier):
    first = make_application(email="twice@example.com")
    await complete_checkout(db_session, payment_for(first), processor, notifier)

    second = make_application(email="twice@example.com")
    result = await complete_checkout(db_session, payment_for(second), processor, notifier)

    assert result.outcome.kind is OutcomeKind.EXISTING_USER
    assert len(notifier.credentials) == 1


@pytest.mark.asyncio
async def test_provisioning_failure_triggers_refund(db_session, make_application, payment_for, processor, notifier):
    app = make_application()
    payment = payment_for(app)

    with patch("folio_api.billing.provisioning._create_billing", side_effect=RuntimeError("disk full")):
        result = await complete_checkout(db_session, payment, processor, notifier)

    assert result.paid
    assert not result.provisioned
    assert result.error == "provisioning_failed"
    assert result.compensation.status == "refunded"
    assert len(processor.refund_calls) == 1
    assert processor.refund_calls[0]["payment_ref"] == payment.payment_ref
    assert processor.refund_calls[0]["idempotency_key"] == f"refund-{payment.session_id}"
    assert notifier.credentials == []
    assert [notice[0] for notice in notifier.refund_notices] == [app.email]

    db_session.expire_all()
    assert db_session.get(Application, app.id).status == "refunded"
    record = db_session.execute(select(CompensationRecord)).scalar_one()
    assert "RuntimeError" in record.root_cause


@pytest.mark.asyncio
async def test_missing_application_is_compensated(db_session, make_application, payment_for, processor, notifier):
    app = make_application()
    payment = dataclasses.replace(payment_for(app), session_id="cs_test_orphan")

    result = await complete_checkout(db_session, payment, processor, notifier)

    assert result.error == "application_not_found"
    assert result.compensation.status == "refunded"
    assert len(processor.refund_calls) == 1
