"""Compensation retry loop.

- Scan: compensations.status='failed' AND attempts < max_attempts
- Retry: reclaim through the same claim gate the webhook path uses, then
  run the refund again (processor idempotency key refund-<session>)
- Stale: 'processing' records untouched for stale_after_minutes (holder
  crashed mid-refund) are taken over and run again
- Escalate: 'failed' or stale records that ran out of attempts → manual_review +
  MANUAL REFUND REQUIRED operator alert
- Interval: 300 seconds (configurable)
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func, select, text
from sqlalchemy.orm import Session

from folio_api.billing.compensation import (
    DEFAULT_MAX_ATTEMPTS,
    MANUAL_REFUND_SUBJECT,
    CompensationNotifier,
    CompensationResult,
    RefundProcessor,
    reclaim_failed_compensation,
    reclaim_stale_compensation,
    run_claimed_compensation,
)
from folio_api.billing.stripe import get_stripe_client
from folio_api.db.models import CompensationRecord
from folio_api.notifications.email import get_notification_service
from folio_reaper.loops.shutdown import shutdown_requested, wait_for_shutdown

logger = logging.getLogger(__name__)


def scan_failed_compensations(
    db: Session,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    limit: int = 50,
) -> list[str]:
    """Session references of failed compensations with attempts left (oldest first)."""
    stmt = (
        select(CompensationRecord.stripe_session_id)
        .where(
            CompensationRecord.status == "failed",
            CompensationRecord.attempts < max_attempts,
        )
        .order_by(CompensationRecord.created_at)
        .limit(limit)
    )
    refs = list(db.execute(stmt).scalars().all())
    db.rollback()
    if refs:
        logger.info("COMPENSATION_RETRY_SCAN", extra={"found": len(refs), "scan_limit": limit})
    return refs


def retry_compensation(
    db: Session,
    session_ref: str,
    processor: RefundProcessor,
    notifier: CompensationNotifier,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> Optional[CompensationResult]:
    """Reclaim and re-run one failed compensation.

    Returns:
        The result, or None if another worker reclaimed it first (lost race).
    """
    record_id = reclaim_failed_compensation(db, session_ref, max_attempts=max_attempts)
    if record_id is None:
        logger.debug("COMPENSATION_RETRY_LOST_RACE", extra={"session_ref": session_ref})
        return None
    return asyncio.run(run_claimed_compensation(db, record_id, processor, notifier))


def scan_stale_compensations(
    db: Session,
    stale_before: datetime,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    limit: int = 50,
) -> list[str]:
    """Session references stuck in 'processing' since before stale_before (oldest first)."""
    last_touched = func.coalesce(CompensationRecord.updated_at, CompensationRecord.created_at)
    stmt = (
        select(CompensationRecord.stripe_session_id)
        .where(
            CompensationRecord.status == "processing",
            CompensationRecord.attempts < max_attempts,
            last_touched < stale_before,
        )
        .order_by(CompensationRecord.created_at)
        .limit(limit)
    )
    refs = list(db.execute(stmt).scalars().all())
    db.rollback()
    if refs:
        logger.warning("COMPENSATION_STALE_SCAN", extra={"found": len(refs), "scan_limit": limit})
    return refs


def retry_stale_compensation(
    db: Session,
    session_ref: str,
    processor: RefundProcessor,
    notifier: CompensationNotifier,
    stale_before: datetime,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> Optional[CompensationResult]:
    """Take over and re-run one stale compensation; None if it moved on meanwhile."""
    record_id = reclaim_stale_compensation(
        db, session_ref, stale_before=stale_before, max_attempts=max_attempts
    )
    if record_id is None:
        logger.debug("COMPENSATION_STALE_LOST_RACE", extra={"session_ref": session_ref})
        return None
    return asyncio.run(run_claimed_compensation(db, record_id, processor, notifier))


def escalate_exhausted(
    db: Session,
    notifier: CompensationNotifier,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    stale_before: Optional[datetime] = None,
) -> list[str]:
    """Move records with no attempts left to manual_review and alert once each.

    'failed' records always qualify; 'processing' records only once they are
    older than stale_before.
    """
    params = {"max_attempts": max_attempts, "now": datetime.now(timezone.utc)}
    stale_clause = ""
    if stale_before is not None:
        stale_clause = "OR (status = 'processing' AND COALESCE(updated_at, created_at) < :stale_before)"
        params["stale_before"] = stale_before
    rows = db.execute(
        text(f"""
            UPDATE compensations
            SET status = 'manual_review', updated_at = :now
            WHERE attempts >= :max_attempts
              AND (status = 'failed' {stale_clause})
            RETURNING stripe_session_id, amount, currency, attempts, root_cause, last_error
        """),
        params,
    ).fetchall()
    db.commit()

    escalated = []
    for session_ref, amount, currency, attempts, root_cause, last_error in rows:
        logger.error(
            "COMPENSATION_RETRIES_EXHAUSTED",
            extra={"session_ref": session_ref, "attempts": attempts},
        )
        body = "\n".join([
            "Automatic refund retries are exhausted.",
            "",
            f"Checkout session: {session_ref}",
            f"Amount: {amount} {currency or ''}".rstrip(),
            f"Attempts: {attempts}",
            f"Provisioning failure: {root_cause or 'unknown'}",
            f"Last error: {last_error or 'unknown'}",
            "",
            "Refund this payment manually in the processor dashboard.",
        ])
        asyncio.run(notifier.send_operator_alert(f"{MANUAL_REFUND_SUBJECT}: {session_ref}", body))
        escalated.append(session_ref)
    return escalated


def compensation_loop(
    db: Session,
    processor: Optional[RefundProcessor] = None,
    notifier: Optional[CompensationNotifier] = None,
    interval_seconds: int = 300,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    limit_per_scan: int = 50,
    stale_after_minutes: int = 15,
    stop_after_one_iteration: bool = False,
) -> None:
    """Periodically retry failed refunds until they succeed or run out of attempts.

    Args:
        db: Database session (owned by this loop's thread)
        processor: Refund processor (default: Stripe client)
        notifier: Alert/notice sender (default: notification service)
        interval_seconds: Sleep interval between scans
        max_attempts: Attempt ceiling shared with the webhook claim gate
        limit_per_scan: Max records per iteration
        stale_after_minutes: Age at which a 'processing' record counts as abandoned
        stop_after_one_iteration: For testing only - exit after one scan
    """
    processor = processor or get_stripe_client()
    notifier = notifier or get_notification_service()

    logger.info(
        "COMPENSATION_LOOP_STARTED",
        extra={
            "interval_seconds": interval_seconds,
            "max_attempts": max_attempts,
            "stale_after_minutes": stale_after_minutes,
        },
    )

    iteration = 0
    total_refunded = 0

    while not shutdown_requested():
        iteration += 1
        iteration_start = time.time()

        try:
            db.expire_all()
            refunded = 0
            still_failing = 0
            stale_before = datetime.now(timezone.utc) - timedelta(minutes=stale_after_minutes)

            retries = [
                (ref, False) for ref in scan_failed_compensations(db, max_attempts, limit_per_scan)
            ] + [
                (ref, True) for ref in scan_stale_compensations(db, stale_before, max_attempts, limit_per_scan)
            ]
            for session_ref, stale in retries:
                try:
                    if stale:
                        result = retry_stale_compensation(
                            db, session_ref, processor, notifier, stale_before, max_attempts
                        )
                    else:
                        result = retry_compensation(db, session_ref, processor, notifier, max_attempts)
                except Exception:
                    db.rollback()
                    logger.error(
                        "COMPENSATION_RETRY_ERROR",
                        extra={"session_ref": session_ref},
                        exc_info=True,
                    )
                    continue
                if result is None:
                    continue
                if result.status == "refunded":
                    refunded += 1
                elif result.needs_operator:
                    still_failing += 1

            escalated = escalate_exhausted(db, notifier, max_attempts, stale_before=stale_before)
            total_refunded += refunded

            if refunded or still_failing or escalated:
                logger.info(
                    "COMPENSATION_LOOP_ITERATION",
                    extra={
                        "iteration": iteration,
                        "refunded": refunded,
                        "still_failing": still_failing,
                        "escalated": len(escalated),
                        "duration_ms": int((time.time() - iteration_start) * 1000),
                    },
                )
        except Exception:
            db.rollback()
            logger.error("COMPENSATION_LOOP_ERROR", extra={"iteration": iteration}, exc_info=True)

        if stop_after_one_iteration:
            break

        wait_for_shutdown(interval_seconds)

    logger.info(
        "COMPENSATION_LOOP_STOPPED",
        extra={"total_iterations": iteration, "total_refunded": total_refunded},
    )
