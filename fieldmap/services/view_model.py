"""
view_model.py — Display-ready report rows for the list/detail panes.

The list pane shows open work only: resolved reports move to history and are
excluded unless `include_resolved=True`. The map is not affected by this;
it renders whatever the current ViewFilter selects.
"""

from typing import Iterable

from fieldmap.models.report import NEXT_ACTIONS, Report, ReportView
from fieldmap.services.cluster_engine import reporter_display


def assignee_display(report: Report) -> str | None:
    if report.assignee_name:
        return report.assignee_name
    if report.assignee_id:
        return f"Patrol {report.assignee_id[:8]}"
    return None


def to_view(report: Report) -> ReportView:
    return ReportView(
        id=report.id,
        title=report.title,
        description=report.description,
        category=report.category,
        status=report.status,
        priority=report.priority,
        location=report.location,
        location_unresolved=report.location_unresolved,
        location_address=report.location_address,
        created_at=report.created_at,
        reporter_display=reporter_display(report),
        assignee_display=assignee_display(report),
        images=list(report.images),
        next_actions=list(NEXT_ACTIONS.get(report.status, ("pending", "in_progress"))),
    )


def build_view_model(reports: Iterable[Report], include_resolved: bool = False) -> list[ReportView]:
    return [to_view(r) for r in reports if include_resolved or r.status != "resolved"]
