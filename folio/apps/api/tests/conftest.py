"""API test fixtures: app client wired to the per-test database and fakes."""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from folio_api.db.session import get_db
from folio_api.main import app


@pytest.fixture
def test_client(db_session: Session, processor, notifier):
    """TestClient with db_session dependency override and fake processor/notifier."""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close - db_session fixture owns it

    app.dependency_overrides[get_db] = override_get_db
    with (
        patch("folio_api.routers.applications.get_stripe_client", return_value=processor),
        patch("folio_api.routers.applications.get_notification_service", return_value=notifier),
    ):
        yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def webhook_wiring(session_factory, processor, notifier):
    """Point the webhook router at the per-test database and fakes.

    The router opens its own session per delivery, so each call gets a fresh one.
    """

    def fresh_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    with (
        patch("folio_api.routers.webhooks.get_db", side_effect=fresh_db),
        patch("folio_api.routers.webhooks.get_stripe_client", return_value=processor),
        patch("folio_api.routers.webhooks.get_notification_service", return_value=notifier),
    ):
        yield
