"""
reports.py — Report list and operator status routes.

Routes:
  GET   /api/v1/reports                — open reports as display-ready rows
  PATCH /api/v1/reports/{id}/status    — operator status change

The list is a one-shot bulk load (newest first). When MongoDB is unavailable
it degrades to the warm-start snapshot and says so in `notice` instead of
failing the request.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from fieldmap.core.config import SyncConfig, settings
from fieldmap.core.database import get_db
from fieldmap.core.errors import DataFetchError
from fieldmap.core.rate_limit import limiter
from fieldmap.models.report import REPORT_STATUSES, ReportListResponse, StatusUpdate
from fieldmap.services.cluster_engine import ViewFilter, filter_reports
from fieldmap.services.report_repository import load_with_fallback, update_report_status
from fieldmap.services.report_store import ReportStore
from fieldmap.services.view_model import build_view_model

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/reports", tags=["reports"])


def get_sync_config() -> SyncConfig:
    """FastAPI dependency — engine tuning for this deployment."""
    return SyncConfig.from_settings(settings)


def parse_view_filter(
    status: Optional[str] = Query(default=None, description="Report status, or 'all'"),
    search: Optional[str] = Query(default=None, max_length=200),
) -> ViewFilter:
    status = (status or "all").strip()
    if status != "all" and status not in REPORT_STATUSES:
        raise HTTPException(status_code=422, detail=f"Unknown status '{status}'")
    return ViewFilter(status=status, search=(search or "").strip())


# ── Routes ────────────────────────────────────────────────────────────────────

@router.get("", response_model=ReportListResponse)
async def list_reports(
    request: Request,
    view_filter: ViewFilter = Depends(parse_view_filter),
    include_resolved: bool = Query(default=False),
    db=Depends(get_db),
    config: SyncConfig = Depends(get_sync_config),
):
    """Most recent reports, filtered, as list rows. Resolved reports are history."""
    snapshot = getattr(request.app.state, "warm_snapshot", None)
    docs, notice = await load_with_fallback(db, config.recent_reports_limit, snapshot)

    store = ReportStore(config)
    store.load(docs)
    if snapshot is not None and notice is None:
        snapshot.write_reports(store.snapshot())

    view = filter_reports(store.snapshot(), view_filter)
    items = build_view_model(
        view, include_resolved=include_resolved or view_filter.status == "resolved"
    )
    return ReportListResponse(items=items, total=len(items), notice=notice)


@router.patch("/{report_id}/status")
@limiter.limit("30/minute")
async def set_report_status(
    request: Request,
    report_id: str,
    payload: StatusUpdate,
    db=Depends(get_db),
):
    """
    Persist an operator status change.

    Open dashboard sessions pick the change up from the change stream like
    any other update.
    """
    if db is None:
        raise HTTPException(status_code=503, detail="Database unavailable")

    try:
        matched = await update_report_status(db, report_id, payload.status)
    except DataFetchError as exc:
        logger.warning("Status update for %s failed: %s", report_id, exc)
        raise HTTPException(status_code=503, detail="Database unavailable")
    if not matched:
        raise HTTPException(status_code=404, detail="Report not found")

    snapshot = getattr(request.app.state, "warm_snapshot", None)
    if snapshot is not None:
        snapshot.record_update({"id": report_id, "status": payload.status})

    logger.info("Report %s set to %s", report_id, payload.status)
    return {"id": report_id, "status": payload.status}
