"""End to end: application → checkout session → signed webhook → account.

The Billing row's charges must equal the pricing calculator's output for the
selected plan, and the customer receives exactly one credentials email.
"""

import json
import time

import httpx
import pytest
from sqlalchemy import select

from folio_api.billing.stripe import build_signature_header
from folio_api.db.models import Application, Billing, Profile, User
from folio_api.main import app
from folio_api.pricing import calculate_pricing

SECRET = "whsec_folio_test_secret"


def _completed_event(event_id: str, session_id: str, application_id: str, amount: int) -> bytes:
    return json.dumps({
        "id": event_id,
        "type": "checkout.session.completed",
        "created": int(time.time()),
        "data": {
            "object": {
                "id": session_id,
                "payment_status": "paid",
                "customer": "cus_e2e",
                "subscription": "sub_e2e",
                "amount_total": amount,
                "currency": "gbp",
                "payment_intent": "pi_e2e",
                "customer_details": {"email": "e2e@example.com"},
                "client_reference_id": application_id,
            }
        },
    }).encode()


@pytest.mark.asyncio
async def test_monthly_plan_without_add_on(test_client, webhook_wiring, db_session, notifier, processor):
    pricing = calculate_pricing("monthly", False)

    checkout = test_client.post("/applications/checkout", json={
        "email": "e2e@example.com",
        "firstName": "End",
        "lastName": "ToEnd",
        "purposes": ["portfolio"],
        "customDesign": False,
        "paymentPlan": "monthly",
    })
    assert checkout.status_code == 201
    session_id = checkout.json()["sessionId"]
    application_id = checkout.json()["applicationId"]

    raw = _completed_event("evt_e2e_1", session_id, application_id, pricing.initial_amount)
    headers = {"Stripe-Signature": build_signature_header(raw, SECRET), "Content-Type": "application/json"}
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        first = await client.post("/webhooks/stripe", content=raw, headers=headers)
        replay = await client.post("/webhooks/stripe", content=raw, headers=headers)

    assert first.json()["status"] == "processed"
    assert replay.json()["status"] == "already_processed"

    db_session.expire_all()
    application = db_session.get(Application, application_id)
    assert application.status == "completed"
    assert application.processed is True

    user = db_session.execute(select(User)).scalar_one()
    assert application.user_id == user.id
    assert db_session.execute(select(Profile).where(Profile.user_id == user.id)).scalar_one().first_name == "End"

    billing = db_session.execute(select(Billing)).scalar_one()
    assert billing.user_id == user.id
    assert billing.initial_amount == pricing.initial_amount
    assert billing.setup_fee == pricing.setup_fee
    assert billing.recurring_amount == pricing.recurring_amount
    assert billing.custom_design_fee == 0
    assert billing.amount_captured == pricing.initial_amount
    assert billing.pricing_version == pricing.pricing_version

    assert [email for email, _ in notifier.credentials] == ["e2e@example.com"]
    assert processor.refund_calls == []
