"""
report.py — Pydantic schemas for field-submitted issue reports.

Coordinates  — a WGS84 (lat, lng) pair
Report       — canonical in-memory report held by a ReportStore
ReportView   — display-ready row for list/detail UIs (fallback names, next actions)
StatusUpdate — operator status change request

Location invariant
──────────────────
A Report's location is never a partially valid pair. `parse_report()` either
keeps a valid upstream coordinate, or substitutes the fallback anchor and sets
`location_unresolved=True`. Rendering code can therefore always trust
`report.location`.

Upstream location shapes accepted:
  { "lat": 14.84, "lng": 120.19 }
  { "type": "Point", "coordinates": [120.19, 14.84] }   ← GeoJSON, lng first
  null / missing
"""

from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator

ReportStatus = Literal[
    "verifying",
    "pending",
    "in_progress",
    "awaiting_verification",
    "resolved",
    "rejected",
]
ReportPriority = Literal["low", "medium", "high"]

REPORT_STATUSES: tuple[str, ...] = (
    "verifying",
    "pending",
    "in_progress",
    "awaiting_verification",
    "resolved",
    "rejected",
)

# Operator workflow: which statuses a report can be moved to from its current one.
NEXT_ACTIONS: dict[str, tuple[str, ...]] = {
    "pending": ("in_progress", "rejected"),
    "in_progress": ("awaiting_verification", "resolved"),
    "awaiting_verification": ("resolved", "rejected"),
    "verifying": ("pending", "in_progress"),
    "resolved": ("in_progress",),
    "rejected": ("pending",),
}


class Coordinates(BaseModel):
    """A WGS84 point."""

    model_config = {"frozen": True}

    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)

    def as_tuple(self) -> tuple[float, float]:
        return (self.lat, self.lng)


class Report(BaseModel):
    """A community-submitted issue record."""

    id: str
    title: str = ""
    description: str = ""
    category: str = "general"
    status: ReportStatus = "pending"
    priority: ReportPriority = "medium"

    location: Coordinates
    location_unresolved: bool = False
    location_address: Optional[str] = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    reporter_id: str = ""
    assignee_id: Optional[str] = None
    reporter_name: Optional[str] = None
    assignee_name: Optional[str] = None
    images: list[str] = Field(default_factory=list)

    @field_validator("created_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        # Mongo hands back naive UTC datetimes
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class ReportView(BaseModel):
    """Display-ready report row for the list/detail panes."""

    id: str
    title: str
    description: str
    category: str
    status: ReportStatus
    priority: ReportPriority
    location: Coordinates
    location_unresolved: bool
    location_address: Optional[str] = None
    created_at: datetime
    reporter_display: str
    assignee_display: Optional[str] = None
    images: list[str] = Field(default_factory=list)
    next_actions: list[ReportStatus] = Field(default_factory=list)


class ReportListResponse(BaseModel):
    items: list[ReportView]
    total: int
    notice: Optional[str] = None


class StatusUpdate(BaseModel):
    """Body for PATCH /api/v1/reports/{id}/status."""

    status: ReportStatus


# ── Location helpers ──────────────────────────────────────────────────────────

def coerce_location(raw: Any) -> Optional[tuple[float, float]]:
    """
    Extract a (lat, lng) pair from any accepted upstream shape.

    Returns None when the value is missing or not numeric. Range and
    sentinel checks are the caller's concern.
    """
    if raw is None:
        return None
    if isinstance(raw, Coordinates):
        return raw.as_tuple()
    if isinstance(raw, dict):
        if raw.get("type") == "Point":
            coords = raw.get("coordinates")
            if isinstance(coords, (list, tuple)) and len(coords) == 2:
                lng, lat = coords
            else:
                return None
        else:
            lat, lng = raw.get("lat"), raw.get("lng", raw.get("lon"))
    elif isinstance(raw, (list, tuple)) and len(raw) == 2:
        lat, lng = raw
    else:
        return None

    # bool is an int subclass
    if isinstance(lat, bool) or isinstance(lng, bool):
        return None
    try:
        lat, lng = float(lat), float(lng)
    except (TypeError, ValueError):
        return None
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        return None
    return (lat, lng)


def is_invalid_location(
    raw: Any,
    sentinel: tuple[float, float],
    tolerance: float,
) -> bool:
    """
    True if the location cannot be trusted for rendering.

    Invalid means: missing or non-numeric, either coordinate exactly zero,
    or within `tolerance` of the shared default the upstream app writes
    when a reporter never picked a point.
    """
    pair = coerce_location(raw)
    if pair is None:
        return True
    lat, lng = pair
    if lat == 0 or lng == 0:
        return True
    return abs(lat - sentinel[0]) < tolerance and abs(lng - sentinel[1]) < tolerance


def parse_report(
    payload: dict[str, Any],
    anchor: tuple[float, float],
    sentinel: tuple[float, float],
    tolerance: float,
) -> Report:
    """
    Build a Report from an upstream document (bulk load or change feed).

    Accepts Mongo documents (`_id` is stringified into `id` when there is no
    `id`), the legacy `user_id` / `patrol_user_id` reference names, and any
    accepted location shape. Raises pydantic.ValidationError on a malformed
    document — callers skip it with a warning.
    """
    data = dict(payload)
    if "id" not in data and "_id" in data:
        data["id"] = str(data["_id"])
    data.pop("_id", None)
    if "reporter_id" not in data and "user_id" in data:
        data["reporter_id"] = data.pop("user_id")
    if "assignee_id" not in data and "patrol_user_id" in data:
        data["assignee_id"] = data.pop("patrol_user_id")
    if data.get("id") is not None:
        data["id"] = str(data["id"])
    if data.get("reporter_id") is not None:
        data["reporter_id"] = str(data["reporter_id"])

    raw_location = data.get("location")
    if is_invalid_location(raw_location, sentinel, tolerance):
        data["location"] = {"lat": anchor[0], "lng": anchor[1]}
        data["location_unresolved"] = True
    else:
        lat, lng = coerce_location(raw_location)
        data["location"] = {"lat": lat, "lng": lng}
        data["location_unresolved"] = False

    if data.get("images") is None:
        data["images"] = []
    return Report.model_validate(data)
