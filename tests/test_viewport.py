"""
test_viewport.py — FrameViewport command frames and the list-pane view model.
"""

import pytest

from conftest import report_doc
from fieldmap.core.config import SyncConfig
from fieldmap.core.errors import RenderSyncError
from fieldmap.models.map import Glyph, MarkerOut
from fieldmap.models.report import Coordinates
from fieldmap.services.report_store import ReportStore
from fieldmap.services.view_model import build_view_model, to_view
from fieldmap.services.viewport import FrameViewport


def _marker(marker_id="a"):
    return MarkerOut(
        id=marker_id,
        position=Coordinates(lat=14.6, lng=121.0),
        report_ids=[marker_id],
        is_cluster=False,
        glyph=Glyph(kind="single", color="yellow", icon="⏳"),
    )


def _drain(viewport):
    frames = []
    while not viewport.outbox.empty():
        frames.append(viewport.outbox.get_nowait())
    return frames


class TestFrameViewport:
    def test_add_then_remove(self):
        viewport = FrameViewport()
        handle = viewport.add(_marker())
        viewport.remove(handle)

        frames = _drain(viewport)
        assert [f["type"] for f in frames] == ["marker.add", "marker.remove"]
        assert frames[0]["marker"]["id"] == "a"
        assert frames[0]["handle"] == frames[1]["handle"]
        assert viewport.live_handles == frozenset()

    def test_handles_are_unique_per_add(self):
        viewport = FrameViewport()
        assert viewport.add(_marker()) != viewport.add(_marker())

    def test_remove_unknown_handle(self):
        viewport = FrameViewport()
        handle = viewport.add(_marker())
        viewport.remove(handle)
        with pytest.raises(RenderSyncError):
            viewport.remove(handle)

    def test_not_ready_rejects_add_and_focus(self):
        viewport = FrameViewport()
        viewport.ready = False
        with pytest.raises(RenderSyncError):
            viewport.add(_marker())
        with pytest.raises(RenderSyncError):
            viewport.focus(Coordinates(lat=1, lng=1), 16)

    def test_focus_updates_zoom(self):
        viewport = FrameViewport(zoom=12)
        viewport.focus(Coordinates(lat=14.6, lng=121.0), 16)

        assert viewport.zoom == 16
        assert _drain(viewport) == [
            {"type": "viewport.focus", "position": {"lat": 14.6, "lng": 121.0}, "zoom": 16}
        ]

    def test_highlight_requires_live_handle(self):
        viewport = FrameViewport()
        handle = viewport.add(_marker())
        viewport.highlight(handle, True)
        assert _drain(viewport)[-1]["active"] is True

        viewport.remove(handle)
        with pytest.raises(RenderSyncError):
            viewport.highlight(handle, False)


class TestViewModel:
    @pytest.fixture()
    def store(self):
        return ReportStore(SyncConfig())

    def test_resolved_reports_are_history(self, store):
        store.load([report_doc("a"), report_doc("b", status="resolved")])
        assert [row.id for row in build_view_model(store.snapshot())] == ["a"]
        assert len(build_view_model(store.snapshot(), include_resolved=True)) == 2

    def test_fallback_names(self, store):
        store.load([report_doc("a", user_id="abcdef0123", patrol_user_id="9876543210")])
        row = to_view(store.get("a"))
        assert row.reporter_display == "User abcdef01"
        assert row.assignee_display == "Patrol 98765432"

    def test_named_people(self, store):
        store.load([report_doc("a", reporter_name="Ana", assignee_name="Unit 7", patrol_user_id="p1")])
        row = to_view(store.get("a"))
        assert (row.reporter_display, row.assignee_display) == ("Ana", "Unit 7")

    @pytest.mark.parametrize(
        "status, actions",
        [
            ("pending", ["in_progress", "rejected"]),
            ("in_progress", ["awaiting_verification", "resolved"]),
            ("rejected", ["pending"]),
        ],
    )
    def test_next_actions(self, store, status, actions):
        store.load([report_doc("a", status=status)])
        assert to_view(store.get("a")).next_actions == actions
