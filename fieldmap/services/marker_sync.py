"""
marker_sync.py — Keeps the rendered marker set in step with the report view.

MarkerSyncController is the only component that touches the viewport and the
marker/handle indices. Everything else just triggers it.

Triggers
────────
  - ReportStore change notification  (subscribed in __init__)
  - filter / search change           (set_filter)
  - explicit single-report status change (notify_status_change, also fired
    automatically for store patches that touch `status`)

Each trigger cancels the pending reconciliation (a single `call_later`
handle) and schedules a fresh one after the debounce interval, so a burst of
feed events collapses into one pass.

Reconciliation is a full clear-and-rebuild:
  1. remove every rendered marker
  2. filter → cluster the current store snapshot
  3. add one marker per group, rebuilding marker-id → handle and
     report-id → marker-id indices

It runs synchronously (viewport commands never await), so two passes can
never interleave. A status change removes the affected marker immediately
and leaves the redraw to the next pass; markers are never restyled in place.

If the viewport is not ready or rejects a handle, the pass stops with a
logged RenderSyncError. Only handles that were actually added are indexed,
so the next pass clears them and rebuilds from scratch.
"""

import asyncio
import logging
from typing import Any, Callable, Optional

from fieldmap.core.config import SyncConfig
from fieldmap.core.errors import RenderSyncError
from fieldmap.models.map import MarkerOut
from fieldmap.models.report import Coordinates, Report
from fieldmap.services.cluster_engine import (
    ViewFilter,
    build_markers,
    cluster_reports,
    filter_reports,
)
from fieldmap.services.location_resolver import LocationResolver
from fieldmap.services.report_store import ReportStore, StoreChange
from fieldmap.services.viewport import Viewport

logger = logging.getLogger(__name__)

ReconciledHook = Callable[[list[MarkerOut], list[Report]], None]


class MarkerSyncController:
    def __init__(
        self,
        store: ReportStore,
        viewport: Viewport,
        config: SyncConfig,
        resolver: Optional[LocationResolver] = None,
        view_filter: ViewFilter = ViewFilter(),
        on_reconciled: Optional[ReconciledHook] = None,
    ) -> None:
        self._store = store
        self._viewport = viewport
        self._config = config
        self._resolver = resolver
        self.view_filter = view_filter
        self.on_reconciled = on_reconciled

        self._handles: dict[str, Any] = {}
        self._markers: dict[str, MarkerOut] = {}
        self._report_index: dict[str, str] = {}
        self._pending: Optional[asyncio.TimerHandle] = None
        self._highlight_timers: dict[str, asyncio.TimerHandle] = {}
        self._disposed = False

        self.reconcile_count = 0
        self.aborted_count = 0

        self._unsubscribe = store.subscribe(self._on_store_change)

    # ── Read side ─────────────────────────────────────────────────────────────

    @property
    def markers(self) -> list[MarkerOut]:
        return list(self._markers.values())

    @property
    def pending(self) -> bool:
        return self._pending is not None

    @property
    def highlight_pending(self) -> int:
        return len(self._highlight_timers)

    def marker_for(self, report_id: str) -> Optional[MarkerOut]:
        marker_id = self._report_index.get(report_id)
        return self._markers.get(marker_id) if marker_id else None

    def handle_for(self, marker_id: str) -> Any:
        return self._handles.get(marker_id)

    def select(self, marker_id: str) -> list[Report]:
        """Route a marker click to the report(s) behind it."""
        marker = self._markers.get(marker_id)
        if marker is None:
            return []
        reports = (self._store.get(rid) for rid in marker.report_ids)
        return [r for r in reports if r is not None]

    # ── Triggers ──────────────────────────────────────────────────────────────

    def _on_store_change(self, change: StoreChange) -> None:
        if change.kind == "patch" and "status" in change.fields:
            for report_id in change.ids:
                self.remove_report_marker(report_id)
        self.schedule()

    def set_filter(self, view_filter: ViewFilter) -> None:
        self.view_filter = view_filter
        self.schedule()

    def notify_status_change(self, report_id: str) -> None:
        self.remove_report_marker(report_id)
        self.schedule()

    def schedule(self) -> None:
        """Replace any pending reconciliation with one after the quiet period."""
        if self._disposed:
            return
        if self._pending is not None:
            self._pending.cancel()
        loop = asyncio.get_running_loop()
        self._pending = loop.call_later(self._config.reconcile_debounce, self._run_scheduled)

    def _run_scheduled(self) -> None:
        self._pending = None
        self.reconcile()

    # ── Reconciliation ────────────────────────────────────────────────────────

    def reconcile(self) -> bool:
        """Clear and rebuild the marker set. Returns False if the pass was aborted."""
        if self._disposed:
            return False
        try:
            if not self._viewport.ready:
                raise RenderSyncError("viewport not ready")
            self._clear()

            view = filter_reports(self._store.snapshot(), self.view_filter)
            groups = cluster_reports(view, self._config.cluster_epsilon)
            markers = build_markers(groups)

            for marker in markers:
                handle = self._viewport.add(marker)
                self._handles[marker.id] = handle
                self._markers[marker.id] = marker
                for report_id in marker.report_ids:
                    self._report_index[report_id] = marker.id
        except RenderSyncError as exc:
            self.aborted_count += 1
            logger.warning("Reconciliation aborted, will retry on next trigger: %s", exc)
            return False

        self.reconcile_count += 1
        logger.debug(
            "Reconciled %d reports into %d markers (pass %d)",
            len(view), len(markers), self.reconcile_count,
        )
        if self.on_reconciled is not None:
            self.on_reconciled(markers, view)
        return True

    def _clear(self) -> None:
        for timer in self._highlight_timers.values():
            timer.cancel()
        self._highlight_timers.clear()

        for marker_id, handle in list(self._handles.items()):
            try:
                self._viewport.remove(handle)
            except RenderSyncError as exc:
                logger.debug("Marker %s already gone: %s", marker_id, exc)
        self._handles.clear()
        self._markers.clear()
        self._report_index.clear()

    def remove_report_marker(self, report_id: str) -> bool:
        """Drop the marker currently showing `report_id` (single or cluster)."""
        marker_id = self._report_index.get(report_id)
        if marker_id is None:
            return False
        handle = self._handles.pop(marker_id, None)
        marker = self._markers.pop(marker_id, None)
        if marker is not None:
            for rid in marker.report_ids:
                self._report_index.pop(rid, None)
        if handle is not None:
            try:
                self._viewport.remove(handle)
            except RenderSyncError as exc:
                logger.debug("Marker %s already gone: %s", marker_id, exc)
        return True

    # ── Focus ─────────────────────────────────────────────────────────────────

    async def focus(self, report_id: str) -> bool:
        """
        Pan/zoom to a report and briefly highlight its marker.

        An unresolved report gets one fresh geocode attempt first. Returns
        False when there is no trustworthy coordinate to move to.
        """
        report = self._store.get(report_id)
        if report is None:
            logger.info("Focus requested for unknown report %s", report_id)
            return False

        target: Optional[Coordinates] = None
        if not self._store.needs_location(report):
            target = report.location
        elif report.location_address and self._resolver is not None:
            target = await self._resolver.resolve_now(report.id, report.location_address)
            if target is not None and self._store.is_invalid(target):
                logger.info("Geocode for %s landed on the placeholder; not focusing", report_id)
                target = None

        if target is None or self._disposed:
            return False

        zoom_hint = max(self._config.focus_zoom, getattr(self._viewport, "zoom", 0) or 0)
        try:
            self._viewport.focus(target, zoom_hint)
        except RenderSyncError as exc:
            logger.warning("Focus on %s skipped: %s", report_id, exc)
            return False

        self._highlight(report_id)
        return True

    def _highlight(self, report_id: str) -> None:
        marker_id = self._report_index.get(report_id)
        handle = self._handles.get(marker_id) if marker_id else None
        if handle is None:
            return
        try:
            self._viewport.highlight(handle, True)
        except RenderSyncError as exc:
            logger.debug("Highlight skipped: %s", exc)
            return
        previous = self._highlight_timers.pop(marker_id, None)
        if previous is not None:
            previous.cancel()
        loop = asyncio.get_running_loop()
        self._highlight_timers[marker_id] = loop.call_later(
            self._config.highlight_duration, self._unhighlight, marker_id, handle
        )

    def _unhighlight(self, marker_id: str, handle: Any) -> None:
        self._highlight_timers.pop(marker_id, None)
        # Only the same drawn instance; a rebuilt marker starts unhighlighted
        if self._handles.get(marker_id) is not handle:
            return
        try:
            self._viewport.highlight(handle, False)
        except RenderSyncError as exc:
            logger.debug("Unhighlight skipped: %s", exc)

    # ── Teardown ──────────────────────────────────────────────────────────────

    def dispose(self) -> None:
        if self._disposed:
            return
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        self._unsubscribe()
        self._clear()
        self._disposed = True
