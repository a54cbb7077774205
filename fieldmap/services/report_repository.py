"""
report_repository.py — The few MongoDB queries the dashboard needs.

  fetch_recent_reports()  — bulk load: newest N reports + display names
  update_report_status()  — operator status change
  load_with_fallback()    — bulk load that degrades to the warm-start snapshot

Report documents are owned by the upstream field app. Reports may carry their
own string `id` (imported from the mobile app) or only a Mongo `_id`; every
lookup here accepts either.
"""

import logging
from typing import Any, Optional

from bson import ObjectId

from fieldmap.core.errors import DataFetchError

logger = logging.getLogger(__name__)

REPORTS_COLLECTION = "reports"
PROFILES_COLLECTION = "profiles"

STALE_DATA_NOTICE = "Live data unavailable — showing last known reports"
FETCH_FAILED_NOTICE = "Failed to fetch reports"


def _id_query(report_id: str) -> dict[str, Any]:
    candidates: list[dict[str, Any]] = [{"id": report_id}, {"_id": report_id}]
    if ObjectId.is_valid(report_id):
        candidates.append({"_id": ObjectId(report_id)})
    return {"$or": candidates}


async def fetch_recent_reports(db, limit: int) -> list[dict[str, Any]]:
    """
    Newest `limit` reports ordered by created_at descending.

    Raises DataFetchError when the database is unavailable or the query
    fails. Username lookup failures are not fatal.
    """
    if db is None:
        raise DataFetchError("database unavailable")

    try:
        cursor = db[REPORTS_COLLECTION].find({}).sort("created_at", -1).limit(limit)
        docs = [doc async for doc in cursor]
    except Exception as exc:
        raise DataFetchError(f"report query failed: {exc}") from exc

    await _attach_display_names(db, docs)
    logger.debug("Fetched %d recent reports", len(docs))
    return docs


async def _attach_display_names(db, docs: list[dict[str, Any]]) -> None:
    """Fill reporter_name / assignee_name from the profiles collection."""
    user_ids = {
        str(uid)
        for doc in docs
        for uid in (
            doc.get("reporter_id") or doc.get("user_id"),
            doc.get("assignee_id") or doc.get("patrol_user_id"),
        )
        if uid
    }
    if not user_ids:
        return

    names: dict[str, str] = {}
    try:
        cursor = db[PROFILES_COLLECTION].find({"_id": {"$in": sorted(user_ids)}})
        async for profile in cursor:
            if profile.get("username"):
                names[str(profile["_id"])] = profile["username"]
    except Exception as exc:
        # Missing profiles collection just means fallback names in the UI
        logger.info("Profile lookup failed, using fallback usernames: %s", exc)
        return

    for doc in docs:
        reporter = doc.get("reporter_id") or doc.get("user_id")
        assignee = doc.get("assignee_id") or doc.get("patrol_user_id")
        if reporter and str(reporter) in names and not doc.get("reporter_name"):
            doc["reporter_name"] = names[str(reporter)]
        if assignee and str(assignee) in names and not doc.get("assignee_name"):
            doc["assignee_name"] = names[str(assignee)]


async def update_report_status(db, report_id: str, status: str) -> bool:
    """
    Persist an operator status change. Returns False if no report matched.

    Raises DataFetchError when the database is unavailable or the write fails.
    """
    if db is None:
        raise DataFetchError("database unavailable")
    try:
        result = await db[REPORTS_COLLECTION].update_one(
            _id_query(report_id), {"$set": {"status": status}}
        )
    except Exception as exc:
        raise DataFetchError(f"status update failed: {exc}") from exc
    return bool(getattr(result, "matched_count", 0))


async def load_with_fallback(
    db,
    limit: int,
    snapshot=None,
) -> tuple[list[dict[str, Any]], Optional[str]]:
    """
    Bulk load for one-shot callers (REST routes).

    Returns (documents, notice). On DataFetchError the warm-start snapshot is
    used when it has data, otherwise an empty list; `notice` then explains
    the degraded result.
    """
    try:
        docs = await fetch_recent_reports(db, limit)
    except DataFetchError as exc:
        logger.warning("Bulk load failed: %s", exc)
        cached = snapshot.read() if snapshot is not None else []
        if cached:
            return cached, STALE_DATA_NOTICE
        return [], FETCH_FAILED_NOTICE
    return docs, None
