"""Process-wide engine and request-scoped sessions for the API."""

from typing import Generator

from sqlalchemy.orm import Session

from folio_api.config.env import get_database_url
from folio_api.db.engine import build_engine, build_sessionmaker

engine = build_engine(get_database_url())

SessionLocal = build_sessionmaker(engine)


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency: one session per request, always closed.

    The webhook router also drives it by hand (next(get_db())) so that
    a handler can open its own session outside dependency injection.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
