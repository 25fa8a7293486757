"""Database engine builder shared by the API, the reaper and Alembic.

- PostgreSQL (production): NullPool by default, FOLIO_DB_POOL=queuepool opts in
  to client-side pooling; connections are tagged with an application_name
- SQLite (local/test): usable across threads, 30 s busy timeout
"""

import logging
import os
import re
from typing import Any

from sqlalchemy import Engine, NullPool, create_engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

POOL_MODES = ("nullpool", "queuepool")


def _mask_password(url: str) -> str:
    return re.sub(r"://([^:]+):([^@]+)@", r"://\1:***@", url)


def is_postgres(bind: Any) -> bool:
    """True if the engine/connection/session bind speaks PostgreSQL."""
    return bind.dialect.name == "postgresql"


def _connect_args(url: str) -> dict[str, Any]:
    if url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": 30}
    app_name = os.getenv("FOLIO_DB_APPLICATION_NAME", "folio-api")
    return {"application_name": app_name} if app_name else {}


def _pool_kwargs(url: str) -> dict[str, Any]:
    pool_mode = os.getenv("FOLIO_DB_POOL", "nullpool").lower()
    if pool_mode not in POOL_MODES:
        raise ValueError(
            f"Invalid FOLIO_DB_POOL value: {pool_mode}. "
            "Must be 'nullpool' or 'queuepool'."
        )
    if pool_mode == "nullpool" or url.startswith("sqlite"):
        return {"poolclass": NullPool}
    return {
        "pool_size": int(os.getenv("FOLIO_DB_POOL_SIZE", "5")),
        "max_overflow": int(os.getenv("FOLIO_DB_MAX_OVERFLOW", "10")),
    }


def build_engine(database_url: str | None = None) -> Engine:
    """
    Build SQLAlchemy engine.

    Args:
        database_url: Database URL. If None, reads from env DATABASE_URL.

    Raises:
        ValueError: If no URL is available, or FOLIO_DB_POOL has an unknown value.

    Environment Variables:
        FOLIO_DB_POOL: "nullpool" (default) | "queuepool"
        FOLIO_DB_POOL_SIZE / FOLIO_DB_MAX_OVERFLOW: queuepool sizing (5 / 10)
        FOLIO_DB_APPLICATION_NAME: PostgreSQL connection tag (default: folio-api)
    """
    url = database_url or os.getenv("DATABASE_URL")
    if not url:
        raise ValueError(
            "DATABASE_URL is required. "
            "Pass as argument or set DATABASE_URL environment variable."
        )

    engine = create_engine(
        url,
        pool_pre_ping=True,
        connect_args=_connect_args(url),
        **_pool_kwargs(url),
    )
    logger.debug(
        "Database engine created: pool=%s, url=%s",
        engine.pool.__class__.__name__,
        _mask_password(url),
    )
    return engine


def build_sessionmaker(engine: Engine) -> sessionmaker[Session]:
    # expire_on_commit stays on: rows re-read after every claim-gate commit
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
