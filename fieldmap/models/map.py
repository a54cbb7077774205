"""
map.py — Pydantic models for the live map: glyphs, markers and the
WebSocket session protocol.

Server → client frames are built from these models with model_dump(mode="json").
Client → server frames are validated through the `ClientFrame` discriminated
union; anything that fails validation is answered with a `notice` frame and
otherwise ignored.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

from fieldmap.models.report import Coordinates, ReportStatus

# ── Render hints ──────────────────────────────────────────────────────────────

_STATUS_COLORS = {
    "verifying": "purple",
    "pending": "yellow",
    "in_progress": "blue",
    "awaiting_verification": "orange",
    "resolved": "green",
    "rejected": "red",
}
_STATUS_ICONS = {
    "verifying": "🔍",
    "pending": "⏳",
    "in_progress": "🔧",
    "awaiting_verification": "📋",
    "resolved": "✅",
    "rejected": "❌",
}
_PRIORITY_COLORS = {"high": "red", "medium": "yellow", "low": "green"}
_PRIORITY_ICONS = {"high": "🚨", "medium": "⚠️", "low": "📍"}


class Glyph(BaseModel):
    """How the client should draw a marker."""

    kind: Literal["single", "cluster"]
    color: str
    icon: str
    label: str = ""
    count: int = 1
    status_summary: dict[str, int] = Field(default_factory=dict)


def status_color(status: str, priority: str) -> str:
    return _STATUS_COLORS.get(status) or _PRIORITY_COLORS.get(priority, "gray")


def status_icon(status: str, priority: str) -> str:
    return _STATUS_ICONS.get(status) or _PRIORITY_ICONS.get(priority, "📍")


# ── Markers ───────────────────────────────────────────────────────────────────

class MarkerOut(BaseModel):
    """A rendered marker as reported to clients and snapshot callers."""

    id: str
    position: Coordinates
    report_ids: list[str]
    is_cluster: bool
    glyph: Glyph


class MarkerSnapshotResponse(BaseModel):
    """Response for GET /api/v1/map/markers."""

    markers: list[MarkerOut]
    total_reports: int
    notice: Optional[str] = None


# ── Client → server frames ────────────────────────────────────────────────────

class FilterFrame(BaseModel):
    type: Literal["filter"]
    status: Union[ReportStatus, Literal["all"]] = "all"
    search: str = Field(default="", max_length=200)


class FocusFrame(BaseModel):
    type: Literal["focus"]
    report_id: str


class SelectFrame(BaseModel):
    type: Literal["select"]
    marker_id: str


class SetStatusFrame(BaseModel):
    type: Literal["set_status"]
    report_id: str
    status: ReportStatus


class RefreshFrame(BaseModel):
    type: Literal["refresh"]


class ViewportFrame(BaseModel):
    """The client reports map readiness and its current zoom."""

    type: Literal["viewport"]
    ready: bool = True
    zoom: Optional[int] = Field(default=None, ge=0, le=22)


ClientFrame = Annotated[
    Union[FilterFrame, FocusFrame, SelectFrame, SetStatusFrame, RefreshFrame, ViewportFrame],
    Field(discriminator="type"),
]
