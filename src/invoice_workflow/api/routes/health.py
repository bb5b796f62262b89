"""Health check endpoints."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, status
from pydantic import BaseModel
from sqlalchemy import inspect, text

from invoice_workflow.api.dependencies import DbSession
from invoice_workflow.models import Base

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response.

    missing_tables lists workflow tables absent from the database, so a
    deployment that skipped init-db shows up as degraded.
    """

    status: str
    timestamp: datetime
    database: str
    missing_tables: list[str] = []


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
)
async def health_check(db: DbSession) -> HealthResponse:
    """Check database connectivity and the workflow schema."""
    db_status = "unhealthy"
    missing: list[str] = []
    try:
        await db.execute(text("SELECT 1"))
        conn = await db.connection()
        present = set(
            await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        )
        missing = sorted(set(Base.metadata.tables) - present)
        db_status = "healthy"
    except Exception:
        logger.exception("Database health check failed")

    if missing:
        logger.warning("Workflow tables missing: %s", ", ".join(missing))

    return HealthResponse(
        status="healthy" if db_status == "healthy" and not missing else "degraded",
        timestamp=datetime.now(timezone.utc),
        database=db_status,
        missing_tables=missing,
    )


@router.get("/ready", status_code=status.HTTP_200_OK)
async def readiness_check() -> dict[str, str]:
    """Readiness check for container orchestration."""
    return {"status": "ready"}


@router.get("/live", status_code=status.HTTP_200_OK)
async def liveness_check() -> dict[str, str]:
    """Liveness check for container orchestration."""
    return {"status": "alive"}
