"""Tenant repository."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, text
from sqlalchemy.orm import Session

from folio_api.db.models import Tenant

DEFAULT_TENANT_SLUG = "default"
DEFAULT_TENANT_NAME = "Default Tenant"


class TenantRepository:
    """Identity/tenant store handed to the account provisioner.

    find_or_create_default() is race-safe: the slug UNIQUE constraint decides
    the single winner, every caller reads back the same row.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_by_slug(self, slug: str) -> Optional[Tenant]:
        return self.db.execute(select(Tenant).where(Tenant.slug == slug)).scalar_one_or_none()

    def find_or_create(self, slug: str, display_name: str) -> Tenant:
        """Return the tenant for slug, inserting it if absent.

        Does not commit: the caller owns the surrounding transaction.
        """
        self.db.execute(
            text("""
                INSERT INTO tenants (id, slug, display_name, status, created_at)
                VALUES (:id, :slug, :display_name, 'ACTIVE', :now)
                ON CONFLICT (slug) DO NOTHING
            """),
            {
                "id": str(uuid.uuid4()),
                "slug": slug,
                "display_name": display_name,
                "now": datetime.now(timezone.utc),
            },
        )
        tenant = self.get_by_slug(slug)
        if tenant is None:
            raise RuntimeError(f"Tenant {slug!r} missing after insert-or-ignore")
        return tenant

    def find_or_create_default(self) -> Tenant:
        return self.find_or_create(DEFAULT_TENANT_SLUG, DEFAULT_TENANT_NAME)
