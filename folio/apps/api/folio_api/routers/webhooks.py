"""Stripe webhook handler: the single entry point for processor notifications.

Webhook error taxonomy (redelivery storm prevention)
  (A) Missing Stripe-Signature header              → 400
  (B) Our misconfig (missing webhook secret)       → 500 WEBHOOK_PROVIDER_MISCONFIG
  (C) Signature mismatch / stale timestamp         → 401 (never 500)
  (D) Invalid JSON / missing id or type            → 400
  Once authenticated, every outcome is acknowledged with 200:
    processed | already_processed | ignored | failed
  An internal failure is logged, the dedup record is marked failed (so a
  redelivery may reclaim it) and the event is acknowledged; it is never
  surfaced as a protocol-level rejection.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from folio_api.billing.checkout_completion import complete_checkout
from folio_api.billing.errors import WebhookSignatureError
from folio_api.billing.events import CapturedPayment, EventKind, WebhookEvent, parse_event, subscription_snapshot
from folio_api.billing.stripe import get_stripe_client, verify_webhook_signature
from folio_api.billing.subscription_sync import apply_subscription_event
from folio_api.billing.webhook_dedup import (
    STRIPE_PROVIDER,
    get_stripe_dedup_key,
    mark_dedup_done,
    mark_dedup_failed,
    try_acquire_dedup,
)
from folio_api.config.env import get_stripe_webhook_secret, get_webhook_tolerance_seconds
from folio_api.context import request_id_var
from folio_api.db.session import get_db
from folio_api.notifications.email import get_notification_service
from folio_api.utils.sanitize import payload_hash_bytes, sanitize_str

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


def _webhook_problem(
    request: Request,
    status: int,
    *,
    code: str,
    title: str,
    detail: str | None,
    payload_hash: str | None,
    extra: dict | None = None,
) -> JSONResponse:
    """Log once + return RFC 9457 Problem Details response with webhook extensions.

    4xx failures → warning log.
    5xx failures → error log + Retry-After: 60 response header.
    """
    request_id = request_id_var.get(None)
    instance = request_id or str(request.url.path)

    log_extra: dict = {
        "event": f"webhook.{code.lower()}",
        "provider": STRIPE_PROVIDER,
        "payload_hash": payload_hash,
        "error_code": code,
    }
    if extra:
        log_extra.update(extra)

    if status >= 500:
        logger.error(code, extra=log_extra)
    else:
        logger.warning(code, extra=log_extra)

    content: dict = {
        "type": f"urn:folio:webhook:{code.lower()}",
        "title": title,
        "status": status,
        "provider": STRIPE_PROVIDER,
        "error_code": code,
    }
    if detail is not None:
        content["detail"] = detail
    if payload_hash is not None:
        content["payload_hash"] = payload_hash
    if instance:
        content["instance"] = instance

    response_headers = {"Content-Type": "application/problem+json"}
    if status >= 500:
        response_headers["Retry-After"] = "60"

    return JSONResponse(status_code=status, content=content, headers=response_headers)


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
):
    """Verify, dedup and route one Stripe event."""
    # ── Step 0: Raw body ingestion (never logged, hash + size only) ─────────
    raw_body: bytes = await request.body()
    payload_hash = payload_hash_bytes(raw_body)
    payload_size = len(raw_body)
    request.state.payload_hash = payload_hash
    request.state.payload_size = payload_size

    logger.info(
        "WEBHOOK_RECEIVED",
        extra={"provider": STRIPE_PROVIDER, "payload_hash": payload_hash, "payload_size": payload_size},
    )

    # ── Step 1: Required header (A → 400) ───────────────────────────────────
    if not stripe_signature:
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_MISSING_HEADERS",
            title="Missing required webhook headers",
            detail="Stripe-Signature header is absent",
            payload_hash=payload_hash,
        )

    # ── Step 2: Webhook secret (B → 500 on misconfig) ───────────────────────
    try:
        secret = get_stripe_webhook_secret()
    except ValueError:
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_PROVIDER_MISCONFIG",
            title="Webhook provider misconfiguration",
            detail="Webhook verification is not properly configured",
            payload_hash=payload_hash,
        )

    # ── Step 3: Signature (C → 401) then JSON (D → 400) ─────────────────────
    try:
        body = verify_webhook_signature(
            raw_body,
            stripe_signature,
            secret,
            tolerance_seconds=get_webhook_tolerance_seconds(),
        )
    except WebhookSignatureError as exc:
        return _webhook_problem(
            request, 401,
            code="WEBHOOK_SIGNATURE_INVALID",
            title="Webhook signature verification failed",
            detail=sanitize_str(str(exc)),
            payload_hash=payload_hash,
        )
    except ValueError:
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_INVALID_JSON",
            title="Invalid JSON payload",
            detail="Request body is not valid JSON",
            payload_hash=payload_hash,
        )

    # ── Step 4: Envelope (D → 400) ──────────────────────────────────────────
    try:
        if not isinstance(body, dict):
            raise ValueError("Event payload must be a JSON object")
        event = parse_event(body)
    except ValueError as exc:
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_INVALID_PAYLOAD",
            title="Invalid webhook payload",
            detail=sanitize_str(str(exc)),
            payload_hash=payload_hash,
        )

    # ── Step 5: Unknown kinds are acknowledged (forward compatibility) ──────
    if event.kind is None:
        logger.info(
            "WEBHOOK_EVENT_IGNORED",
            extra={"event_id": event.id, "event_type": event.type},
        )
        return {"status": "ignored", "event_id": event.id}

    # ── Step 6: Dedup gate (atomic, concurrent-safe) ────────────────────────
    dedup_key = get_stripe_dedup_key(event.id)

    db: Session = next(get_db())
    try:
        is_first = try_acquire_dedup(db, STRIPE_PROVIDER, dedup_key, payload_hash)
        if not is_first:
            logger.info(
                "WEBHOOK_ALREADY_PROCESSED",
                extra={"event_id": event.id, "payload_hash": payload_hash},
            )
            return {"status": "already_processed", "event_id": event.id}

        # ── Step 7: Business processing (failure → 200 failed) ──────────────
        try:
            await _process_stripe_event(db, event)
        except Exception as exc:
            db.rollback()
            mark_dedup_failed(db, STRIPE_PROVIDER, dedup_key)
            logger.error(
                "WEBHOOK_INTERNAL_ERROR",
                extra={
                    "event_id": event.id,
                    "event_type": event.type,
                    "error_type": type(exc).__name__,
                    "error_msg": sanitize_str(str(exc)),
                },
                exc_info=True,
            )
            return {"status": "failed", "event_id": event.id}

        mark_dedup_done(db, STRIPE_PROVIDER, dedup_key)
        logger.info(
            "WEBHOOK_PROCESSED",
            extra={"event_id": event.id, "event_type": event.type},
        )
        return {"status": "processed", "event_id": event.id}
    finally:
        db.close()


async def _process_stripe_event(db: Session, event: WebhookEvent) -> None:
    """Route an authenticated, deduplicated event by kind."""
    kind = event.kind

    if kind is EventKind.CHECKOUT_COMPLETED:
        payment = CapturedPayment.from_session(event.data_object)
        result = await complete_checkout(
            db,
            payment,
            get_stripe_client(),
            get_notification_service(),
            actor="WEBHOOK",
        )
        if result.compensation is not None and result.compensation.needs_operator:
            logger.error(
                "WEBHOOK_CHECKOUT_NEEDS_OPERATOR",
                extra={"event_id": event.id, "compensation_status": result.compensation.status},
            )
        return

    snapshot = subscription_snapshot(kind, event.data_object)
    if snapshot is None:
        logger.info(
            "WEBHOOK_NO_SUBSCRIPTION_REF",
            extra={"event_id": event.id, "event_type": event.type},
        )
        return

    apply_subscription_event(db, kind, snapshot)
