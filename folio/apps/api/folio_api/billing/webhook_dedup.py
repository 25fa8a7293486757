"""Webhook dedup gate: atomic INSERT ON CONFLICT per processor event id.

  1. INSERT ON CONFLICT (provider, dedup_key) DO NOTHING RETURNING id
       → row returned  : this delivery is the FIRST processor → continue
       → no row        : conflict exists → check if it's a re-processable failure
  2. If no row (conflict): UPDATE ... WHERE status='failed' RETURNING id
       → row returned  : previous attempt failed; re-claim for re-processing
       → no row        : status is 'done' or 'processing' (true duplicate) → ACK

The UNIQUE constraint guarantees exactly one INSERT wins under concurrent
redelivery. This gate sits in front of the per-entity idempotency checks; it
does not replace them.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

STRIPE_PROVIDER = "stripe"


def get_stripe_dedup_key(event_id: str) -> str:
    """Dedup key for a Stripe event (event ids are stable across redeliveries).

    Raises ValueError on an empty id.
    """
    if not event_id:
        raise ValueError("Cannot derive Stripe dedup_key: event id missing")
    return f"ev_{event_id}"


def try_acquire_dedup(
    db: Session,
    provider: str,
    dedup_key: str,
    request_hash: Optional[str] = None,
) -> bool:
    """Attempt to atomically claim processing rights for (provider, dedup_key).

    Returns:
        True:  INSERT succeeded OR a previous 'failed' record was reclaimed.
        False: a 'done' or concurrent 'processing' record already exists.
    """
    now = datetime.now(timezone.utc)

    insert_sql = text("""
        INSERT INTO webhook_dedup_events
            (provider, dedup_key, first_seen_at, status, request_hash)
        VALUES
            (:provider, :dedup_key, :now, 'processing', :request_hash)
        ON CONFLICT (provider, dedup_key) DO NOTHING
        RETURNING id
    """)
    row = db.execute(insert_sql, {
        "provider": provider,
        "dedup_key": dedup_key,
        "now": now,
        "request_hash": request_hash,
    }).first()

    if row is not None:
        db.commit()
        logger.debug(
            "WEBHOOK_DEDUP_ACQUIRED",
            extra={"provider": provider, "dedup_key": dedup_key},
        )
        return True

    retry_sql = text("""
        UPDATE webhook_dedup_events
        SET status = 'processing', last_seen_at = :now
        WHERE provider = :provider AND dedup_key = :dedup_key AND status = 'failed'
        RETURNING id
    """)
    retry_row = db.execute(retry_sql, {
        "provider": provider,
        "dedup_key": dedup_key,
        "now": now,
    }).first()
    db.commit()

    if retry_row is not None:
        logger.info(
            "WEBHOOK_DEDUP_RETRY_RECLAIMED",
            extra={"provider": provider, "dedup_key": dedup_key},
        )
        return True

    logger.info(
        "WEBHOOK_DEDUP_DUPLICATE",
        extra={"provider": provider, "dedup_key": dedup_key},
    )
    return False


def _set_status(db: Session, provider: str, dedup_key: str, status: str) -> None:
    db.execute(
        text("""
            UPDATE webhook_dedup_events
            SET status = :status, last_seen_at = :now
            WHERE provider = :provider AND dedup_key = :dedup_key
        """),
        {
            "status": status,
            "provider": provider,
            "dedup_key": dedup_key,
            "now": datetime.now(timezone.utc),
        },
    )
    db.commit()


def mark_dedup_done(db: Session, provider: str, dedup_key: str) -> None:
    """Mark dedup record as 'done' after successful business processing."""
    _set_status(db, provider, dedup_key, "done")


def mark_dedup_failed(db: Session, provider: str, dedup_key: str) -> None:
    """Mark dedup record as 'failed' so a redelivery can reclaim it."""
    _set_status(db, provider, dedup_key, "failed")
