"""Folio Reaper main entry point.

Two independent recovery loops, one thread and one DB session each:

1. Compensation Loop:
   - Scan: compensations.status='failed' AND attempts < max
   - Retry: reclaim + refund again; exhausted records → manual review alert
   - Stale: 'processing' records untouched for REAPER_COMPENSATION_STALE_MIN are taken over
   - Interval: 300 seconds

2. Stale Checkout Loop:
   - Scan: pending applications with a session reference older than the threshold
   - Recover: paid sessions run the same completion routine as the webhook
   - Interval: 120 seconds
"""

import logging
import os
import threading

from folio_api.billing.compensation import DEFAULT_MAX_ATTEMPTS
from folio_api.config.env import get_database_url
from folio_api.db.engine import build_engine, build_sessionmaker
from folio_api.utils import configure_json_logging
from folio_reaper.loops.compensation_loop import compensation_loop
from folio_reaper.loops.shutdown import install_signal_handlers
from folio_reaper.loops.stale_checkout_loop import stale_checkout_loop

configure_json_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)


def main() -> None:
    """Run both loops until SIGTERM/SIGINT."""
    install_signal_handlers()

    database_url = get_database_url()

    compensation_interval_sec = int(os.getenv("REAPER_COMPENSATION_INTERVAL_SEC", "300"))
    compensation_max_attempts = int(os.getenv("REAPER_COMPENSATION_MAX_ATTEMPTS", str(DEFAULT_MAX_ATTEMPTS)))
    compensation_stale_min = int(os.getenv("REAPER_COMPENSATION_STALE_MIN", "15"))
    stale_interval_sec = int(os.getenv("REAPER_STALE_CHECKOUT_INTERVAL_SEC", "120"))
    stale_threshold_min = int(os.getenv("REAPER_STALE_CHECKOUT_THRESHOLD_MIN", "15"))
    stale_max_age_hours = int(os.getenv("REAPER_STALE_CHECKOUT_MAX_AGE_HOURS", "48"))
    scan_limit = int(os.getenv("REAPER_SCAN_LIMIT", "50"))

    engine = build_engine(database_url)
    SessionLocal = build_sessionmaker(engine)

    # SQLAlchemy sessions are not thread-safe: one per loop
    compensation_session = SessionLocal()
    stale_session = SessionLocal()

    compensation_thread = threading.Thread(
        target=compensation_loop,
        kwargs={
            "db": compensation_session,
            "interval_seconds": compensation_interval_sec,
            "max_attempts": compensation_max_attempts,
            "limit_per_scan": scan_limit,
            "stale_after_minutes": compensation_stale_min,
        },
        name="CompensationLoop",
        daemon=False,
    )
    stale_thread = threading.Thread(
        target=stale_checkout_loop,
        kwargs={
            "db": stale_session,
            "interval_seconds": stale_interval_sec,
            "threshold_minutes": stale_threshold_min,
            "max_age_hours": stale_max_age_hours,
            "limit_per_scan": scan_limit,
        },
        name="StaleCheckoutLoop",
        daemon=False,
    )

    logger.info(
        "REAPER_STARTING",
        extra={
            "compensation_interval_sec": compensation_interval_sec,
            "stale_interval_sec": stale_interval_sec,
            "stale_threshold_min": stale_threshold_min,
        },
    )

    try:
        compensation_thread.start()
        stale_thread.start()
        compensation_thread.join()
        stale_thread.join()
    except KeyboardInterrupt:
        logger.info("Reaper stopped by user (KeyboardInterrupt)")
    finally:
        compensation_session.close()
        stale_session.close()
        logger.info("Reaper shutdown complete")


if __name__ == "__main__":
    main()
