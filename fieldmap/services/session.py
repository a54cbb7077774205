"""
session.py — One dashboard session: constructs, wires and tears down the
sync engine for a single connected operator.

    DashboardSession
      ├── ReportStore            (canonical view)
      ├── LocationResolver       (per-session cache + single-flight queue)
      ├── MarkerSyncController   (owns the viewport and handle indices)
      └── RealtimeBridge         (change feed → store, warm-start snapshot)

Nothing here is process-wide except the warm-start snapshot, which is
advisory and shared so a reloading dashboard paints immediately.

Initial load cancellation: every refresh() bumps a generation counter and
cancels the previous in-flight load task. A load whose generation is no
longer current is dropped, so a slow stale response can never overwrite a
newer one.

Non-viewport frames (notices, connectivity, list rows, selections) go out
through `emit`, which the WebSocket route points at the same outbox the
viewport writes to.
"""

import asyncio
import logging
from typing import Any, Callable, Optional

from fieldmap.core.config import SyncConfig
from fieldmap.core.errors import DataFetchError
from fieldmap.models.map import (
    FilterFrame,
    FocusFrame,
    MarkerOut,
    RefreshFrame,
    SelectFrame,
    SetStatusFrame,
    ViewportFrame,
)
from fieldmap.models.report import Report
from fieldmap.services.cluster_engine import ViewFilter
from fieldmap.services.geocoder import Geocoder
from fieldmap.services.location_resolver import LocationResolver
from fieldmap.services.marker_sync import MarkerSyncController
from fieldmap.services.realtime_bridge import ChangeFeed, RealtimeBridge, WarmStartSnapshot
from fieldmap.services.report_repository import (
    FETCH_FAILED_NOTICE,
    STALE_DATA_NOTICE,
    fetch_recent_reports,
    update_report_status,
)
from fieldmap.services.report_store import ReportStore
from fieldmap.services.view_model import build_view_model, to_view
from fieldmap.services.viewport import Viewport

logger = logging.getLogger(__name__)

Emit = Callable[[dict[str, Any]], None]

_ACTION_TEXT = {
    "in_progress": "approved",
    "resolved": "resolved",
    "rejected": "rejected",
}


def _discard(_frame: dict[str, Any]) -> None:
    return None


class DashboardSession:
    def __init__(
        self,
        config: SyncConfig,
        geocoder: Geocoder,
        viewport: Viewport,
        db=None,
        feed: Optional[ChangeFeed] = None,
        snapshot: Optional[WarmStartSnapshot] = None,
        emit: Emit = _discard,
    ) -> None:
        self.config = config
        self.db = db
        self.emit = emit
        self.snapshot = snapshot
        self.geocoder = geocoder
        self.viewport = viewport

        self.store = ReportStore(config)
        self.resolver = LocationResolver(self.store, geocoder, config)
        self.store.on_unresolved = self.resolver.enqueue
        self.controller = MarkerSyncController(
            self.store,
            viewport,
            config,
            resolver=self.resolver,
            on_reconciled=self._on_reconciled,
        )
        self.bridge = RealtimeBridge(
            self.store,
            config,
            feed=feed,
            snapshot=snapshot,
            on_connectivity=self._on_connectivity,
            on_resync=self.request_refresh,
        )

        self._generation = 0
        self._load_task: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()
        self._closed = False

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Paint from the warm-start snapshot, subscribe, then load fresh data."""
        if self.snapshot is not None and len(self.snapshot):
            self.store.load(self.snapshot.read())
        self.bridge.start()
        if not self.bridge.has_feed:
            self._on_connectivity(False)
        await self.refresh()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.controller.dispose()
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()
        for task in list(self._background):
            task.cancel()
        await self.bridge.aclose()
        await self.resolver.aclose()
        closer = getattr(self.geocoder, "aclose", None)
        if closer is not None:
            await closer()
        logger.info("Dashboard session closed")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ── Loading ───────────────────────────────────────────────────────────────

    async def refresh(self) -> int:
        """
        (Re)load the most recent reports. Returns how many reports the store
        holds afterwards, or -1 when this load was superseded by a newer one.
        """
        self._generation += 1
        generation = self._generation
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()

        task = asyncio.get_running_loop().create_task(
            fetch_recent_reports(self.db, self.config.recent_reports_limit)
        )
        self._load_task = task
        try:
            docs = await task
        except asyncio.CancelledError:
            if generation != self._generation or self._closed:
                return -1
            raise
        except DataFetchError as exc:
            if generation != self._generation:
                return -1
            return self._fall_back(exc)

        if generation != self._generation:
            return -1
        count = self.store.load(docs)
        if self.snapshot is not None:
            self.snapshot.write_reports(self.store.snapshot())
        return count

    def request_refresh(self) -> None:
        if not self._closed:
            self._spawn(self.refresh())

    def _fall_back(self, exc: DataFetchError) -> int:
        logger.warning("Initial load failed: %s", exc)
        cached = self.snapshot.read() if self.snapshot is not None else []
        if cached:
            self.store.load(cached)
            self._notice(STALE_DATA_NOTICE, level="warning")
        else:
            self.store.load([])
            self._notice(FETCH_FAILED_NOTICE, level="error")
        return len(self.store)

    # ── Operator actions ──────────────────────────────────────────────────────

    def set_filter(self, status: str = "all", search: str = "") -> None:
        self.controller.set_filter(ViewFilter(status=status, search=search))

    async def focus(self, report_id: str) -> bool:
        return await self.controller.focus(report_id)

    def select(self, marker_id: str) -> list[Report]:
        reports = self.controller.select(marker_id)
        self.emit({
            "type": "selection",
            "marker_id": marker_id,
            "reports": [to_view(r).model_dump(mode="json") for r in reports],
        })
        return reports

    async def set_status(self, report_id: str, status: str) -> bool:
        """Persist an operator status change, then patch the store."""
        if self.store.get(report_id) is None:
            self._notice(f"Unknown report {report_id}", level="error")
            return False
        try:
            matched = await update_report_status(self.db, report_id, status)
        except DataFetchError as exc:
            logger.warning("Status update for %s failed: %s", report_id, exc)
            self._notice("Failed to update report status", level="error")
            return False
        if not matched:
            logger.warning("Status update for %s matched no document", report_id)

        self.store.patch(report_id, {"status": status})
        self._notice(f"Report {_ACTION_TEXT.get(status, 'updated')} successfully", level="success")
        return True

    async def handle_frame(self, frame) -> None:
        """Dispatch one validated client frame."""
        if isinstance(frame, FilterFrame):
            self.set_filter(frame.status, frame.search)
        elif isinstance(frame, FocusFrame):
            # Focus may wait on a geocode; keep receiving other frames meanwhile
            self._spawn(self.focus(frame.report_id))
        elif isinstance(frame, SelectFrame):
            self.select(frame.marker_id)
        elif isinstance(frame, SetStatusFrame):
            await self.set_status(frame.report_id, frame.status)
        elif isinstance(frame, RefreshFrame):
            await self.refresh()
        elif isinstance(frame, ViewportFrame):
            self.viewport.ready = frame.ready
            if frame.zoom is not None:
                self.viewport.zoom = frame.zoom
            if frame.ready:
                self.controller.schedule()

    # ── Outbound frames ───────────────────────────────────────────────────────

    def _notice(self, message: str, level: str = "info") -> None:
        self.emit({"type": "notice", "level": level, "message": message})

    def _on_connectivity(self, connected: bool) -> None:
        self.emit({"type": "connectivity", "connected": connected})

    def _on_reconciled(self, markers: list[MarkerOut], view: list[Report]) -> None:
        self.emit({
            "type": "reports",
            "markers": len(markers),
            "items": [
                row.model_dump(mode="json")
                for row in build_view_model(
                    view, include_resolved=self.controller.view_filter.status == "resolved"
                )
            ],
        })
