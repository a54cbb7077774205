"""
cluster_engine.py — Groups co-located reports so markers never sit on top of
each other.

Pure functions, no I/O. The controller calls them on every reconciliation.

Algorithm (greedy, single pass, input order)
────────────────────────────────────────────
    for report in reports:
        join the FIRST existing group whose representative is strictly
        within epsilon (Euclidean, degree space); otherwise start a new
        group with this report's location as representative.

Earliest-created group wins ties, not the nearest one. Representatives never
move, so every new representative is at least epsilon away from all earlier
ones and no two markers in the output overlap. O(n·g) — fine for the capped
recent-reports window the dashboard shows.

Epsilon is fixed (default 0.0001° ≈ 10 m) regardless of zoom level.
"""

import math
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from fieldmap.models.map import Glyph, MarkerOut, status_color, status_icon
from fieldmap.models.report import Coordinates, Report

CLUSTER_ID_PREFIX = "cluster-"


@dataclass
class ClusterGroup:
    """A representative position and the reports drawn there."""

    representative: Coordinates
    members: list[Report] = field(default_factory=list)

    @property
    def location_key(self) -> str:
        return f"{self.representative.lat},{self.representative.lng}"

    @property
    def is_cluster(self) -> bool:
        return len(self.members) > 1

    @property
    def marker_id(self) -> str:
        if self.is_cluster:
            return f"{CLUSTER_ID_PREFIX}{self.location_key}"
        return self.members[0].id

    @property
    def member_ids(self) -> list[str]:
        return [r.id for r in self.members]


@dataclass(frozen=True)
class ViewFilter:
    """Status filter + free-text search applied before clustering."""

    status: str = "all"
    search: str = ""


def degree_distance(a: Coordinates, b: Coordinates) -> float:
    return math.hypot(a.lat - b.lat, a.lng - b.lng)


def cluster_reports(reports: Iterable[Report], epsilon: float) -> list[ClusterGroup]:
    groups: list[ClusterGroup] = []
    for report in reports:
        target: Optional[ClusterGroup] = None
        for group in groups:
            if degree_distance(report.location, group.representative) < epsilon:
                target = group
                break
        if target is None:
            groups.append(ClusterGroup(representative=report.location, members=[report]))
        else:
            target.members.append(report)
    return groups


def reporter_display(report: Report) -> str:
    if report.reporter_name:
        return report.reporter_name
    if report.reporter_id:
        return f"User {report.reporter_id[:8]}"
    return "User Unknown"


def matches_filter(report: Report, view_filter: ViewFilter) -> bool:
    if view_filter.status != "all" and report.status != view_filter.status:
        return False
    term = view_filter.search.strip().lower()
    if not term:
        return True
    return (
        term in report.title.lower()
        or term in report.description.lower()
        or term in reporter_display(report).lower()
    )


def filter_reports(reports: Iterable[Report], view_filter: ViewFilter) -> list[Report]:
    return [r for r in reports if matches_filter(r, view_filter)]


def glyph_for(group: ClusterGroup) -> Glyph:
    if group.is_cluster:
        summary: dict[str, int] = {}
        for report in group.members:
            summary[report.status] = summary.get(report.status, 0) + 1
        return Glyph(
            kind="cluster",
            color="purple",
            icon=str(len(group.members)),
            label=f"{len(group.members)} reports at this location",
            count=len(group.members),
            status_summary=summary,
        )

    report = group.members[0]
    title = report.title if len(report.title) <= 20 else f"{report.title[:20]}..."
    return Glyph(
        kind="single",
        color=status_color(report.status, report.priority),
        icon=status_icon(report.status, report.priority),
        label=title,
        status_summary={report.status: 1},
    )


def build_markers(groups: Sequence[ClusterGroup]) -> list[MarkerOut]:
    """One marker description per group, in group order."""
    return [
        MarkerOut(
            id=group.marker_id,
            position=group.representative,
            report_ids=group.member_ids,
            is_cluster=group.is_cluster,
            glyph=glyph_for(group),
        )
        for group in groups
    ]
