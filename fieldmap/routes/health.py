"""
Health check endpoint.

Used by container health checks, load balancers and the dashboard itself to
tell "API down" apart from "API up but MongoDB unreachable". Dashboards keep
working in the latter case from the warm-start snapshot, without live data.
"""

import logging

from fastapi import APIRouter, Request
from pydantic import BaseModel

from fieldmap.core import database as db_module

logger = logging.getLogger(__name__)
router = APIRouter()


class HealthResponse(BaseModel):
    status: str  # Always "ok" if the API process is alive
    version: str
    database: str  # "connected" | "disconnected"
    environment: str
    warm_snapshot: int  # reports held for instant paint


@router.get("", response_model=HealthResponse, summary="API health check")
async def health_check(request: Request) -> HealthResponse:
    """
    Liveness of the API and its database connection.

    Returns HTTP 200 even when the database is disconnected.
    """
    from fieldmap.core.config import settings

    db_status = "disconnected"
    try:
        # Module reference so tests can patch db_module.db_client
        if db_module.db_client.client is not None:
            await db_module.db_client.client.admin.command("ping")
            db_status = "connected"
    except Exception as exc:
        logger.warning("DB ping failed: %s", exc)

    snapshot = getattr(request.app.state, "warm_snapshot", None)
    return HealthResponse(
        status="ok",
        version="0.1.0",
        database=db_status,
        environment=settings.environment,
        warm_snapshot=len(snapshot) if snapshot is not None else 0,
    )
