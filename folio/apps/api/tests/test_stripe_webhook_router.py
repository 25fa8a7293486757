"""POST /webhooks/stripe: error taxonomy, dedup gate, routing by event kind.

Coverage:
  (A) missing Stripe-Signature           → 400 WEBHOOK_MISSING_HEADERS
  (B) webhook secret unset               → 500 WEBHOOK_PROVIDER_MISCONFIG + Retry-After
  (C) bad / stale signature              → 401 WEBHOOK_SIGNATURE_INVALID
  (D) non-JSON / incomplete envelope     → 400
  Authenticated outcomes are always 200: processed | already_processed | ignored | failed
"""

import json
import time
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy import func, select

from folio_api.billing.stripe import build_signature_header
from folio_api.db.models import Application, Billing, User, WebhookDedupEvent
from folio_api.main import app

SECRET = "whsec_folio_test_secret"


def _event(event_id="evt_test_1", event_type="customer.subscription.updated", obj=None) -> bytes:
    return json.dumps({
        "id": event_id,
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": obj if obj is not None else {"id": "sub_none", "status": "active"}},
    }).encode()


def _signed(raw: bytes, secret: str = SECRET, timestamp: int | None = None) -> dict[str, str]:
    return {
        "Stripe-Signature": build_signature_header(raw, secret, timestamp),
        "Content-Type": "application/json",
    }


async def _post(raw: bytes, headers: dict[str, str]) -> httpx.Response:
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        return await client.post("/webhooks/stripe", content=raw, headers=headers)


def _checkout_completed(app_row: Application, event_id: str = "evt_checkout_1") -> bytes:
    return _event(event_id, "checkout.session.completed", {
        "id": app_row.stripe_session_id,
        "object": "checkout.session",
        "payment_status": "paid",
        "customer": "cus_test_1",
        "subscription": "sub_webhook_1",
        "amount_total": 8499,
        "currency": "gbp",
        "payment_intent": "pi_webhook_1",
        "customer_details": {"email": app_row.email},
        "client_reference_id": app_row.id,
    })


# ============================================================================
# Protocol-level rejections
# ============================================================================


@pytest.mark.asyncio
async def test_missing_signature_header_is_400(webhook_wiring):
    resp = await _post(_event(), {"Content-Type": "application/json"})

    assert resp.status_code == 400
    assert resp.headers["content-type"].startswith("application/problem+json")
    assert resp.json()["error_code"] == "WEBHOOK_MISSING_HEADERS"


@pytest.mark.asyncio
async def test_missing_secret_is_500_with_retry_after(webhook_wiring, monkeypatch):
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET")
    raw = _event()

    resp = await _post(raw, _signed(raw))

    assert resp.status_code == 500
    assert resp.headers["Retry-After"] == "60"
    assert resp.json()["error_code"] == "WEBHOOK_PROVIDER_MISCONFIG"


@pytest.mark.asyncio
async def test_bad_signature_is_401_not_500(webhook_wiring):
    raw = _event()

    resp = await _post(raw, _signed(raw, secret="whsec_attacker"))

    assert resp.status_code == 401
    assert resp.json()["error_code"] == "WEBHOOK_SIGNATURE_INVALID"
    assert "whsec_" not in resp.text


@pytest.mark.asyncio
async def test_stale_signature_is_401(webhook_wiring):
    raw = _event()

    resp = await _post(raw, _signed(raw, timestamp=int(time.time()) - 3600))

    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_non_json_body_is_400(webhook_wiring):
    raw = b"{not json"

    resp = await _post(raw, _signed(raw))

    assert resp.status_code == 400
    assert resp.json()["error_code"] == "WEBHOOK_INVALID_JSON"


@pytest.mark.asyncio
async def test_envelope_without_id_is_400(webhook_wiring):
    raw = json.dumps({"type": "invoice.paid", "data": {"object": {}}}).encode()

    resp = await _post(raw, _signed(raw))

    assert resp.status_code == 400
    assert resp.json()["error_code"] == "WEBHOOK_INVALID_PAYLOAD"


# ============================================================================
# Authenticated outcomes
# ============================================================================


@pytest.mark.asyncio
async def test_unknown_event_type_is_ignored_without_dedup_record(webhook_wiring, db_session):
    raw = _event(event_type="customer.created", obj={"id": "cus_1"})

    resp = await _post(raw, _signed(raw))

    assert resp.status_code == 200
    assert resp.json() == {"status": "ignored", "event_id": "evt_test_1"}
    assert db_session.execute(select(func.count()).select_from(WebhookDedupEvent)).scalar_one() == 0


@pytest.mark.asyncio
async def test_checkout_completed_provisions_once_across_redeliveries(
    webhook_wiring, db_session, make_application, notifier, processor
):
    app_row = make_application()
    raw = _checkout_completed(app_row)

    first = await _post(raw, _signed(raw))
    second = await _post(raw, _signed(raw))

    assert first.status_code == 200
    assert first.json()["status"] == "processed"
    assert second.status_code == 200
    assert second.json()["status"] == "already_processed"

    db_session.expire_all()
    assert db_session.execute(select(func.count()).select_from(User)).scalar_one() == 1
    assert db_session.get(Application, app_row.id).status == "completed"
    billing = db_session.execute(select(Billing)).scalar_one()
    assert billing.stripe_subscription_id == "sub_webhook_1"
    assert len(notifier.credentials) == 1
    assert processor.refund_calls == []

    dedup = db_session.execute(select(WebhookDedupEvent)).scalar_one()
    assert dedup.status == "done"
    assert dedup.dedup_key == "ev_evt_checkout_1"


@pytest.mark.asyncio
async def test_distinct_events_for_same_session_still_provision_once(webhook_wiring, db_session, make_application):
    app_row = make_application()
    for event_id in ("evt_a", "evt_b"):
        raw = _checkout_completed(app_row, event_id=event_id)
        resp = await _post(raw, _signed(raw))
        assert resp.json()["status"] == "processed"

    db_session.expire_all()
    assert db_session.execute(select(func.count()).select_from(User)).scalar_one() == 1


@pytest.mark.asyncio
async def test_subscription_event_updates_billing(webhook_wiring, db_session, make_billing):
    billing = make_billing()
    raw = _event(obj={"id": billing.stripe_subscription_id, "status": "past_due"})

    resp = await _post(raw, _signed(raw))

    assert resp.json()["status"] == "processed"
    db_session.expire_all()
    assert db_session.get(Billing, billing.id).status == "past_due"


@pytest.mark.asyncio
async def test_internal_failure_acknowledged_and_reclaimable(webhook_wiring, db_session, make_billing):
    billing = make_billing()
    raw = _event(
        event_id="evt_flaky",
        event_type="customer.subscription.deleted",
        obj={"id": billing.stripe_subscription_id, "status": "canceled"},
    )

    with patch(
        "folio_api.routers.webhooks._process_stripe_event",
        new_callable=AsyncMock,
        side_effect=RuntimeError("database went away"),
    ):
        failed = await _post(raw, _signed(raw))

    assert failed.status_code == 200
    assert failed.json()["status"] == "failed"
    db_session.expire_all()
    assert db_session.execute(select(WebhookDedupEvent.status)).scalar_one() == "failed"

    retried = await _post(raw, _signed(raw))

    assert retried.json()["status"] == "processed"
    db_session.expire_all()
    row = db_session.get(Billing, billing.id)
    assert row.status == "cancelled"
    assert row.cancelled_at is not None
