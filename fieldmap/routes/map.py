"""
map.py — Live map routes.

Routes:
  GET  /api/v1/map/markers   — one-shot marker snapshot (filtered, clustered)
  WS   /api/v1/map/session   — one live dashboard session

SESSION PROTOCOL
────────────────
The browser map is the viewport. After accept, the server loads the recent
reports, pushes `marker.add` frames for the first reconciliation pass and
then keeps the marker set in step with the change stream.

  client → server   {"type": "filter", "status": "pending", "search": "pipe"}
                    {"type": "focus", "report_id": "..."}
                    {"type": "select", "marker_id": "cluster-14.8,120.1"}
                    {"type": "set_status", "report_id": "...", "status": "resolved"}
                    {"type": "refresh"}
                    {"type": "viewport", "ready": true, "zoom": 14}

  server → client   marker.add / marker.remove / marker.highlight
                    viewport.focus / selection / reports
                    notice / connectivity

A frame that is not valid JSON or fails validation gets an error `notice`
and is otherwise ignored; the session stays open.

  wscat -c ws://localhost:8000/api/v1/map/session
"""

import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, WebSocket, WebSocketDisconnect
from pydantic import TypeAdapter, ValidationError

from fieldmap.core.config import SyncConfig, settings
from fieldmap.core.database import get_db
from fieldmap.models.map import ClientFrame, MarkerSnapshotResponse
from fieldmap.routes.reports import get_sync_config, parse_view_filter
from fieldmap.services.cluster_engine import ViewFilter, build_markers, cluster_reports, filter_reports
from fieldmap.services.geocoder import Geocoder, NominatimGeocoder
from fieldmap.services.realtime_bridge import ChangeFeed, MongoChangeFeed
from fieldmap.services.report_repository import REPORTS_COLLECTION, load_with_fallback
from fieldmap.services.report_store import ReportStore
from fieldmap.services.session import DashboardSession
from fieldmap.services.viewport import FrameViewport

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/map", tags=["map"])

_client_frames = TypeAdapter(ClientFrame)


# ── Dependencies (overridden in tests) ────────────────────────────────────────

def get_geocoder() -> Geocoder:
    """One geocoder per session; the session closes it on teardown."""
    return NominatimGeocoder(
        settings.geocoder_url,
        settings.geocoder_user_agent,
        timeout=settings.geocode_timeout_s,
    )


def get_change_feed(db=Depends(get_db)) -> Optional[ChangeFeed]:
    if db is None:
        return None
    return MongoChangeFeed(db[REPORTS_COLLECTION])


# ── Routes ────────────────────────────────────────────────────────────────────

@router.get("/markers", response_model=MarkerSnapshotResponse)
async def get_markers(
    request: Request,
    view_filter: ViewFilter = Depends(parse_view_filter),
    db=Depends(get_db),
    config: SyncConfig = Depends(get_sync_config),
):
    """
    The markers a freshly opened dashboard would draw.

    Unresolved reports are included at the fallback anchor; no geocoding
    happens on this path.
    """
    snapshot = getattr(request.app.state, "warm_snapshot", None)
    docs, notice = await load_with_fallback(db, config.recent_reports_limit, snapshot)

    store = ReportStore(config)
    store.load(docs)
    view = filter_reports(store.snapshot(), view_filter)
    markers = build_markers(cluster_reports(view, config.cluster_epsilon))
    return MarkerSnapshotResponse(markers=markers, total_reports=len(view), notice=notice)


async def _pump(websocket: WebSocket, outbox: asyncio.Queue) -> None:
    """Drain the session outbox onto the socket, in order."""
    while True:
        frame = await outbox.get()
        await websocket.send_text(json.dumps(frame))


@router.websocket("/session")
async def map_session(
    websocket: WebSocket,
    db=Depends(get_db),
    config: SyncConfig = Depends(get_sync_config),
    geocoder: Geocoder = Depends(get_geocoder),
    feed: Optional[ChangeFeed] = Depends(get_change_feed),
):
    await websocket.accept()

    outbox: asyncio.Queue = asyncio.Queue()
    session = DashboardSession(
        config,
        geocoder,
        FrameViewport(outbox),
        db=db,
        feed=feed,
        snapshot=getattr(websocket.app.state, "warm_snapshot", None),
        emit=outbox.put_nowait,
    )
    sender = asyncio.create_task(_pump(websocket, outbox))
    logger.info("Dashboard session opened")

    try:
        await session.start()
        while True:
            raw = await websocket.receive_text()
            try:
                frame = _client_frames.validate_python(json.loads(raw))
            except (ValueError, ValidationError) as exc:
                logger.info("Rejected client frame: %s", exc)
                outbox.put_nowait(
                    {"type": "notice", "level": "error", "message": "Invalid frame"}
                )
                continue
            await session.handle_frame(frame)
    except WebSocketDisconnect:
        logger.info("Dashboard session disconnected")
    finally:
        await session.aclose()
        sender.cancel()
        try:
            await sender
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            logger.debug("Session sender stopped: %s", exc)
