"""StripeClient over httpx.MockTransport: form encoding, error classification."""

from urllib.parse import parse_qs

import httpx
import pytest

from folio_api.billing.errors import PaymentProcessorError
from folio_api.billing.events import CapturedPayment
from folio_api.billing.stripe import StripeClient, encode_form
from folio_api.pricing import calculate_pricing


def _client(handler) -> StripeClient:
    return StripeClient(
        secret_key="sk_test_unit",
        api_base="https://stripe.test",
        transport=httpx.MockTransport(handler),
    )


def test_encode_form_flattens_nested_params():
    flat = encode_form({
        "line_items": [{"price_data": {"unit_amount": 2499}, "quantity": 1}],
        "metadata": {"custom_design": "true"},
        "cancel_at_period_end": False,
        "amount": None,
    })
    assert flat == {
        "line_items[0][price_data][unit_amount]": "2499",
        "line_items[0][quantity]": "1",
        "metadata[custom_design]": "true",
        "cancel_at_period_end": "false",
    }


@pytest.mark.asyncio
async def test_open_checkout_session_sends_line_items_and_idempotency_key():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers["Authorization"]
        seen["idempotency"] = request.headers["Idempotency-Key"]
        seen["form"] = parse_qs(request.content.decode())
        return httpx.Response(200, json={"id": "cs_test_abc", "url": "https://checkout.stripe.test/cs_test_abc"})

    pricing = calculate_pricing("annual", True)
    handle = await _client(handler).open_checkout_session(
        line_items=pricing.line_items(),
        success_url="http://localhost:3000/success?session_id={CHECKOUT_SESSION_ID}",
        cancel_url="http://localhost:3000/cancel",
        client_reference="app-1",
        customer_email="ada@example.com",
    )

    assert handle.session_id == "cs_test_abc"
    assert seen["path"] == "/v1/checkout/sessions"
    assert seen["auth"] == "Bearer sk_test_unit"
    assert seen["idempotency"] == "checkout-app-1"
    form = seen["form"]
    assert form["mode"] == ["subscription"]
    assert form["line_items[0][price_data][recurring][interval]"] == ["year"]
    assert form["line_items[2][price_data][unit_amount]"] == ["9900"]
    assert form["client_reference_id"] == ["app-1"]


@pytest.mark.asyncio
async def test_retrieve_session_parses_payment():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        return httpx.Response(200, json={
            "id": "cs_test_abc",
            "payment_status": "paid",
            "amount_total": 8499,
            "subscription": "sub_1",
        })

    payment = await _client(handler).retrieve_session("cs_test_abc")

    assert isinstance(payment, CapturedPayment)
    assert payment.is_paid
    assert payment.amount_captured == 8499


@pytest.mark.asyncio
async def test_resolve_payment_ref_via_invoice():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/invoices/in_1"
        return httpx.Response(200, json={"id": "in_1", "payment_intent": {"id": "pi_from_invoice"}})

    payment = CapturedPayment(session_id="cs_1", payment_status="paid", invoice_ref="in_1")
    assert await _client(handler).resolve_payment_ref(payment) == "pi_from_invoice"


@pytest.mark.asyncio
async def test_issue_refund():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Idempotency-Key"] == "refund-cs_1"
        form = parse_qs(request.content.decode())
        assert form["payment_intent"] == ["pi_1"]
        assert "amount" not in form
        return httpx.Response(200, json={"id": "re_1", "amount": 8499, "status": "succeeded"})

    refund = await _client(handler).issue_refund("pi_1", idempotency_key="refund-cs_1")
    assert (refund.refund_id, refund.amount_refunded, refund.status) == ("re_1", 8499, "succeeded")


@pytest.mark.asyncio
@pytest.mark.parametrize("status,retryable", [(400, False), (404, False), (429, True), (502, True)])
async def test_http_errors_classified(status, retryable):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"error": {"message": "nope"}})

    with pytest.raises(PaymentProcessorError) as exc_info:
        await _client(handler).retrieve_session("cs_test_abc")

    assert exc_info.value.retryable is retryable
    assert exc_info.value.status_code == status


@pytest.mark.asyncio
async def test_network_error_is_retryable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(PaymentProcessorError) as exc_info:
        await _client(handler).issue_refund("pi_1")

    assert exc_info.value.retryable is True
    assert exc_info.value.status_code is None


def test_missing_secret_key(monkeypatch):
    monkeypatch.delenv("STRIPE_SECRET_KEY")
    with pytest.raises(ValueError):
        StripeClient()
