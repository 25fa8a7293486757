"""Compensation handler: refund + notify when provisioning fails after capture.

Saga step, not two-phase commit. Order of operations per checkout session:
  1. Claim   INSERT INTO compensations ... ON CONFLICT (stripe_session_id) DO NOTHING
             (a 'failed' record may be reclaimed, bounded by attempts)
  2. Fence   lock the Application; if already completed → skip, else mark it
             processed/failed so no later provisioning attempt can complete it
  3. Refund  full captured amount, processor idempotency key refund-<session>
  4. Record  done → Application refunded; failure → record failed, operator
             alert flagged MANUAL REFUND REQUIRED
  5. Notify  customer refund notice + operator alert (fire-and-forget)

The claim happens before any side effect, so concurrent failures for the same
session issue exactly one refund call.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

from sqlalchemy import select, text
from sqlalchemy.orm import Session

from folio_api.billing.errors import PaymentProcessorError
from folio_api.billing.events import CapturedPayment
from folio_api.billing.stripe import RefundResult
from folio_api.db.models import Application, BillingAuditLog, CompensationRecord
from folio_api.utils.money import format_minor_units
from folio_api.utils.sanitize import sanitize_str

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
REFUND_REASON = "requested_by_customer"
MANUAL_REFUND_SUBJECT = "MANUAL REFUND REQUIRED"


class RefundProcessor(Protocol):
    async def resolve_payment_ref(self, payment: CapturedPayment) -> Optional[str]: ...

    async def issue_refund(
        self,
        payment_ref: str,
        *,
        reason: str = ...,
        amount: Optional[int] = ...,
        idempotency_key: Optional[str] = ...,
        metadata: Optional[dict[str, str]] = ...,
    ) -> RefundResult: ...


class CompensationNotifier(Protocol):
    async def send_refund_notice(self, email: str, amount: int, currency: str, reference: str) -> bool: ...

    async def send_operator_alert(self, subject: str, body: str) -> bool: ...


@dataclass(frozen=True)
class CompensationResult:
    """status: refunded | already_compensated | skipped | manual_review | refund_failed"""

    status: str
    session_ref: str
    refund_id: Optional[str] = None
    amount_refunded: Optional[int] = None

    @property
    def needs_operator(self) -> bool:
        return self.status in {"manual_review", "refund_failed"}


def describe_root_cause(error: BaseException | str) -> str:
    """One-line, sanitized description of a failure and its cause chain."""
    if isinstance(error, str):
        return sanitize_str(error)
    parts = [f"{type(error).__name__}: {error}"]
    cause = error.__cause__
    if cause is not None:
        parts.append(f"caused by {type(cause).__name__}: {cause}")
    return sanitize_str("; ".join(parts))[:500]


# ============================================================================
# Claim gate
# ============================================================================


def claim_compensation(
    db: Session,
    payment: CapturedPayment,
    root_cause: str,
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> Optional[int]:
    """Atomically claim the right to compensate payment.session_id.

    Returns:
        Record id if this caller owns the compensation, None otherwise.
    """
    now = datetime.now(timezone.utc)
    db.rollback()

    row = db.execute(
        text("""
            INSERT INTO compensations
                (stripe_session_id, payment_ref, invoice_ref, amount, currency,
                 customer_email, status, attempts, root_cause, created_at)
            VALUES
                (:session_ref, :payment_ref, :invoice_ref, :amount, :currency,
                 :customer_email, 'processing', 1, :root_cause, :now)
            ON CONFLICT (stripe_session_id) DO NOTHING
            RETURNING id
        """),
        {
            "session_ref": payment.session_id,
            "payment_ref": payment.payment_ref,
            "invoice_ref": payment.invoice_ref,
            "amount": payment.amount_captured,
            "currency": payment.currency,
            "customer_email": payment.customer_email,
            "root_cause": root_cause,
            "now": now,
        },
    ).first()

    if row is not None:
        db.commit()
        return row[0]

    record_id = reclaim_failed_compensation(db, payment.session_id, max_attempts=max_attempts)
    if record_id is None:
        logger.info("COMPENSATION_ALREADY_CLAIMED", extra={"session_ref": payment.session_id})
    return record_id


def reclaim_failed_compensation(
    db: Session,
    session_ref: str,
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> Optional[int]:
    """Re-claim a 'failed' record for another refund attempt (bounded by attempts)."""
    row = db.execute(
        text("""
            UPDATE compensations
            SET status = 'processing', attempts = attempts + 1, updated_at = :now
            WHERE stripe_session_id = :session_ref
              AND status = 'failed'
              AND attempts < :max_attempts
            RETURNING id
        """),
        {
            "session_ref": session_ref,
            "max_attempts": max_attempts,
            "now": datetime.now(timezone.utc),
        },
    ).first()
    db.commit()
    if row is None:
        return None
    logger.info("COMPENSATION_RECLAIMED", extra={"session_ref": session_ref})
    return row[0]


def reclaim_stale_compensation(
    db: Session,
    session_ref: str,
    *,
    stale_before: datetime,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> Optional[int]:
    """Take over a 'processing' record whose holder stopped touching it before stale_before.

    Bumping updated_at makes the takeover itself a claim: a second sweeper sees
    a fresh timestamp and backs off.
    """
    row = db.execute(
        text("""
            UPDATE compensations
            SET attempts = attempts + 1, updated_at = :now
            WHERE stripe_session_id = :session_ref
              AND status = 'processing'
              AND COALESCE(updated_at, created_at) < :stale_before
              AND attempts < :max_attempts
            RETURNING id
        """),
        {
            "session_ref": session_ref,
            "stale_before": stale_before,
            "max_attempts": max_attempts,
            "now": datetime.now(timezone.utc),
        },
    ).first()
    db.commit()
    if row is None:
        return None
    logger.warning("COMPENSATION_STALE_RECLAIMED", extra={"session_ref": session_ref})
    return row[0]


# ============================================================================
# Execution (claim holder only)
# ============================================================================


def _fence_application(db: Session, record: CompensationRecord, now: datetime) -> Optional[Application]:
    """Lock the Application and take it out of the provisioning path.

    Returns None when there is nothing to fence (unknown session).
    """
    app = db.execute(
        select(Application)
        .where(Application.stripe_session_id == record.stripe_session_id)
        .with_for_update()
    ).scalar_one_or_none()
    if app is None:
        return None

    record.application_id = app.id
    if app.status == "completed":
        return app

    app.processed = True
    app.processed_at = app.processed_at or now
    if app.status != "refunded":
        app.status = "failed"
    return app


def _finish(db: Session, record: CompensationRecord, status: str, event_type: str, details: dict) -> None:
    now = datetime.now(timezone.utc)
    record.status = status
    record.updated_at = now
    db.add(BillingAuditLog(
        event_type=event_type,
        related_entity_type="COMPENSATION",
        related_entity_id=record.stripe_session_id,
        actor="SYSTEM",
        details={"application_id": record.application_id, "attempts": record.attempts, **details},
    ))
    db.commit()


def _alert_body(record: CompensationRecord, headline: str, extra_lines: list[str]) -> str:
    amount = (
        format_minor_units(record.amount, record.currency or "gbp")
        if record.amount is not None
        else "unknown"
    )
    lines = [
        headline,
        "",
        f"Checkout session: {record.stripe_session_id}",
        f"Application: {record.application_id or 'not found'}",
        f"Amount: {amount}",
        f"Customer: {record.customer_email or 'unknown'}",
        f"Root cause: {record.root_cause or 'unknown'}",
        f"Attempt: {record.attempts}",
    ]
    return "\n".join(lines + extra_lines)


def _is_retryable(error: Exception) -> bool:
    # Refunds carry the processor idempotency key, so an unclassified failure is safe to retry
    if isinstance(error, PaymentProcessorError):
        return error.retryable
    return True


async def run_claimed_compensation(
    db: Session,
    record_id: int,
    processor: RefundProcessor,
    notifier: CompensationNotifier,
) -> CompensationResult:
    """Execute a compensation the caller has already claimed."""
    now = datetime.now(timezone.utc)
    record = db.get(CompensationRecord, record_id)
    if record is None:
        raise LookupError(f"Compensation record {record_id} not found")
    session_ref = record.stripe_session_id

    app = _fence_application(db, record, now)
    if app is not None and app.status == "completed":
        _finish(db, record, "skipped", "REFUND_SKIPPED", {"reason": "application_completed"})
        logger.warning(
            "COMPENSATION_SKIPPED_APPLICATION_COMPLETED",
            extra={"session_ref": session_ref, "application_id": app.id},
        )
        return CompensationResult(status="skipped", session_ref=session_ref)
    if not record.customer_email and app is not None:
        record.customer_email = app.email
    db.commit()

    payment_ref = record.payment_ref
    resolve_error: Optional[Exception] = None
    if not payment_ref and record.invoice_ref:
        try:
            payment_ref = await processor.resolve_payment_ref(
                CapturedPayment(
                    session_id=session_ref,
                    payment_status="paid",
                    invoice_ref=record.invoice_ref,
                )
            )
            record.payment_ref = payment_ref
        except Exception as exc:
            resolve_error = exc

    if not payment_ref and resolve_error is None:
        _finish(db, record, "manual_review", "REFUND_MANUAL_REVIEW", {"reason": "no_payment_reference"})
        logger.error("COMPENSATION_MANUAL_REVIEW_REQUIRED", extra={"session_ref": session_ref})
        await notifier.send_operator_alert(
            f"{MANUAL_REFUND_SUBJECT}: {session_ref}",
            _alert_body(record, "Provisioning failed and no payment reference is available to refund.", [
                "",
                "Money may have been captured. Locate the payment in the processor dashboard and refund it manually.",
            ]),
        )
        return CompensationResult(status="manual_review", session_ref=session_ref)

    refund: Optional[RefundResult] = None
    refund_error: Optional[Exception] = resolve_error
    if refund_error is None:
        try:
            refund = await processor.issue_refund(
                payment_ref,
                reason=REFUND_REASON,
                idempotency_key=f"refund-{session_ref}",
                metadata={
                    "session_ref": session_ref,
                    "application_id": record.application_id or "",
                    "reason": "account_provisioning_failed",
                },
            )
        except Exception as exc:
            # Unreadable processor responses land here too; the record must
            # leave 'processing' so the retry loop and the alert see it
            refund_error = exc

    if refund is None:
        retryable = _is_retryable(refund_error)
        record.last_error = describe_root_cause(refund_error)
        _finish(db, record, "failed", "REFUND_FAILED", {
            "retryable": retryable,
            "error_type": type(refund_error).__name__,
        })
        logger.error(
            "COMPENSATION_REFUND_FAILED",
            extra={
                "session_ref": session_ref,
                "attempts": record.attempts,
                "retryable": retryable,
                "error_type": type(refund_error).__name__,
                "error_msg": record.last_error,
            },
        )
        await notifier.send_operator_alert(
            f"{MANUAL_REFUND_SUBJECT}: {session_ref}",
            _alert_body(record, "Provisioning failed and the automatic refund did not go through.", [
                f"Refund error: {record.last_error}",
                "",
                "The customer has been charged but has no account. Refund manually or wait for the automatic retry.",
            ]),
        )
        return CompensationResult(status="refund_failed", session_ref=session_ref)

    record.refund_id = refund.refund_id
    record.amount_refunded = refund.amount_refunded
    record.last_error = None
    if app is not None:
        app.status = "refunded"
        app.processed = True
    _finish(db, record, "done", "REFUND_ISSUED", {
        "refund_id": refund.refund_id,
        "amount_refunded": refund.amount_refunded,
    })
    logger.info(
        "COMPENSATION_REFUND_ISSUED",
        extra={
            "session_ref": session_ref,
            "refund_id": refund.refund_id,
            "amount_refunded": refund.amount_refunded,
        },
    )

    if record.customer_email:
        await notifier.send_refund_notice(
            record.customer_email,
            refund.amount_refunded,
            record.currency or "gbp",
            session_ref,
        )
    await notifier.send_operator_alert(
        f"Refund issued after provisioning failure: {session_ref}",
        _alert_body(record, "Account provisioning failed; the payment was refunded automatically.", [
            f"Refund: {refund.refund_id} ({refund.status})",
        ]),
    )
    return CompensationResult(
        status="refunded",
        session_ref=session_ref,
        refund_id=refund.refund_id,
        amount_refunded=refund.amount_refunded,
    )


async def compensate(
    db: Session,
    payment: CapturedPayment,
    root_cause: BaseException | str,
    processor: RefundProcessor,
    notifier: CompensationNotifier,
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> CompensationResult:
    """Compensate a captured payment whose provisioning failed. Idempotent per session."""
    cause = describe_root_cause(root_cause)
    logger.warning(
        "COMPENSATION_STARTED",
        extra={"session_ref": payment.session_id, "root_cause": cause},
    )
    record_id = claim_compensation(db, payment, cause, max_attempts=max_attempts)
    if record_id is None:
        return CompensationResult(status="already_compensated", session_ref=payment.session_id)
    return await run_claimed_compensation(db, record_id, processor, notifier)
