"""Liveness (/health) and readiness (/readyz) checks."""

import logging

from fastapi import APIRouter, Response, status
from pydantic import BaseModel
from sqlalchemy import text

from folio_api.db.session import engine
from folio_api.pricing import PRICING_VERSION

router = APIRouter()
logger = logging.getLogger(__name__)

VERSION = "0.1.0"


class HealthResponse(BaseModel):
    status: str
    version: str
    pricing_version: str
    services: dict[str, str]


def check_database() -> str:
    """"up", or "down: <short reason>" when SELECT 1 fails."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("DB_HEALTH_CHECK_FAILED", extra={"error_type": type(e).__name__})
        return f"down: {str(e)[:50]}"
    return "up"


def _report(overall: str) -> HealthResponse:
    return HealthResponse(
        status=overall,
        version=VERSION,
        pricing_version=PRICING_VERSION,
        services={"api": "up", "database": check_database()},
    )


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Always 200; use /readyz to gate traffic on the database."""
    return _report("healthy")


@router.get("/readyz", response_model=HealthResponse)
async def readiness_check(response: Response) -> HealthResponse:
    report = _report("ready")
    if report.services["database"] != "up":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        report.status = "not_ready"
    return report
