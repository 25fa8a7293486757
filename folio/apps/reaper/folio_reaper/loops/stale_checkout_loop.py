"""Stale checkout loop: recover paid sessions whose webhook never arrived.

- Scan: applications.status='pending' AND processed=false AND a session
  reference AND created_at between now-max_age and now-threshold
- Recover: retrieve the session; if paid, run the same completion routine
  as the checkout_completed webhook (actor REAPER)
- Interval: 120 seconds (configurable)
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from folio_api.billing.checkout_completion import CompletionResult, complete_checkout
from folio_api.billing.errors import PaymentProcessorError
from folio_api.billing.stripe import StripeClient, get_stripe_client
from folio_api.db.models import Application
from folio_api.notifications.email import NotificationService, get_notification_service
from folio_reaper.loops.shutdown import shutdown_requested, wait_for_shutdown

logger = logging.getLogger(__name__)


def scan_stale_checkouts(
    db: Session,
    threshold_minutes: int = 15,
    max_age_hours: int = 48,
    limit: int = 50,
    now: Optional[datetime] = None,
) -> list[str]:
    """Session references of pending applications old enough to have missed a webhook."""
    now = now or datetime.now(timezone.utc)
    stmt = (
        select(Application.stripe_session_id)
        .where(
            Application.status == "pending",
            Application.processed.is_(False),
            Application.stripe_session_id.is_not(None),
            Application.created_at < now - timedelta(minutes=threshold_minutes),
            Application.created_at > now - timedelta(hours=max_age_hours),
        )
        .order_by(Application.created_at)
        .limit(limit)
    )
    refs = list(db.execute(stmt).scalars().all())
    db.rollback()
    if refs:
        logger.info("STALE_CHECKOUT_SCAN", extra={"found": len(refs), "scan_limit": limit})
    return refs


async def recover_checkout(
    db: Session,
    session_ref: str,
    processor: StripeClient,
    notifier: NotificationService,
) -> Optional[CompletionResult]:
    """Complete one stale checkout. None when the session is not paid."""
    payment = await processor.retrieve_session(session_ref)
    if not payment.is_paid:
        logger.debug("STALE_CHECKOUT_NOT_PAID", extra={"session_ref": session_ref})
        return None
    result = await complete_checkout(db, payment, processor, notifier, actor="REAPER")
    logger.info(
        "STALE_CHECKOUT_RECOVERED",
        extra={
            "session_ref": session_ref,
            "provisioned": result.provisioned,
            "error": result.error,
        },
    )
    return result


def stale_checkout_loop(
    db: Session,
    processor: Optional[StripeClient] = None,
    notifier: Optional[NotificationService] = None,
    interval_seconds: int = 120,
    threshold_minutes: int = 15,
    max_age_hours: int = 48,
    limit_per_scan: int = 50,
    stop_after_one_iteration: bool = False,
) -> None:
    """Periodically complete paid checkouts that are still pending.

    Args:
        db: Database session (owned by this loop's thread)
        processor: Processor client (default: Stripe client)
        notifier: Notification service (default: singleton)
        interval_seconds: Sleep interval between scans
        threshold_minutes: Minimum application age before recovery
        max_age_hours: Ignore applications older than this (sessions have expired)
        limit_per_scan: Max applications per iteration
        stop_after_one_iteration: For testing only - exit after one scan
    """
    processor = processor or get_stripe_client()
    notifier = notifier or get_notification_service()

    logger.info(
        "STALE_CHECKOUT_LOOP_STARTED",
        extra={"interval_seconds": interval_seconds, "threshold_minutes": threshold_minutes},
    )

    iteration = 0
    total_recovered = 0

    while not shutdown_requested():
        iteration += 1
        iteration_start = time.time()

        try:
            db.expire_all()
            recovered = 0
            for session_ref in scan_stale_checkouts(db, threshold_minutes, max_age_hours, limit_per_scan):
                try:
                    result = asyncio.run(recover_checkout(db, session_ref, processor, notifier))
                except PaymentProcessorError as exc:
                    logger.warning(
                        "STALE_CHECKOUT_LOOKUP_FAILED",
                        extra={"session_ref": session_ref, "retryable": exc.retryable},
                    )
                    continue
                except Exception:
                    db.rollback()
                    logger.error(
                        "STALE_CHECKOUT_RECOVERY_ERROR",
                        extra={"session_ref": session_ref},
                        exc_info=True,
                    )
                    continue
                if result is not None:
                    recovered += 1

            total_recovered += recovered
            if recovered:
                logger.info(
                    "STALE_CHECKOUT_LOOP_ITERATION",
                    extra={
                        "iteration": iteration,
                        "recovered": recovered,
                        "duration_ms": int((time.time() - iteration_start) * 1000),
                    },
                )
        except Exception:
            db.rollback()
            logger.error("STALE_CHECKOUT_LOOP_ERROR", extra={"iteration": iteration}, exc_info=True)

        if stop_after_one_iteration:
            break

        wait_for_shutdown(interval_seconds)

    logger.info(
        "STALE_CHECKOUT_LOOP_STOPPED",
        extra={"total_iterations": iteration, "total_recovered": total_recovered},
    )
