"""Billing repository with row locking and optimistic version checks."""

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from folio_api.db.models import Billing


class BillingRepository:
    """Repository for Billing rows.

    Readers that intend to write use lock=True (SELECT ... FOR UPDATE on
    PostgreSQL; SQLite serializes writers at the database level). Every write
    goes through update_with_version_check so a stale read can never
    overwrite a concurrent transition.
    """

    def __init__(self, db: Session):
        self.db = db

    def _select(self, lock: bool):
        stmt = select(Billing)
        if lock:
            stmt = stmt.with_for_update()
        return stmt

    def get_by_id(self, billing_id: str, *, lock: bool = False) -> Optional[Billing]:
        stmt = self._select(lock).where(Billing.id == billing_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_user(self, user_id: str, *, lock: bool = False) -> Optional[Billing]:
        stmt = self._select(lock).where(Billing.user_id == user_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_subscription(self, subscription_ref: str, *, lock: bool = False) -> Optional[Billing]:
        stmt = self._select(lock).where(Billing.stripe_subscription_id == subscription_ref)
        return self.db.execute(stmt).scalar_one_or_none()

    def update_with_version_check(
        self,
        billing_id: str,
        expected_version: int,
        updates: dict[str, Any],
    ) -> bool:
        """Compare-and-set update keyed on (id, version).

        Increments version on success. Does not commit.

        Returns:
            True if exactly one row was updated, False if the version moved.
        """
        values = dict(updates)
        values["version"] = expected_version + 1
        values["updated_at"] = datetime.now(timezone.utc)

        result = self.db.execute(
            update(Billing)
            .where(Billing.id == billing_id, Billing.version == expected_version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
