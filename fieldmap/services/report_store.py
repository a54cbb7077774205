"""
report_store.py — Canonical in-memory set of reports for one dashboard session.

Every mutation goes through three entry points:

    load(batch)         initial / manual refresh (replaces the working set)
    upsert(report)      change-feed insert (insert-or-replace by id)
    patch(id, fields)   change-feed update, resolver location fix, operator action

After each mutation the store notifies subscribers with a StoreChange. The
notification is synchronous and cheap; subscribers (the marker controller)
debounce the expensive work themselves.

Reports whose location had to be replaced by the fallback anchor are handed
to the `on_unresolved` hook (the session wires it to LocationResolver.enqueue)
as soon as they enter the store with an address.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from pydantic import ValidationError

from fieldmap.core.config import SyncConfig
from fieldmap.models.report import Report, coerce_location, is_invalid_location, parse_report

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoreChange:
    """What changed in a single store mutation."""

    kind: str                     # "load" | "upsert" | "patch"
    ids: tuple[str, ...]
    fields: frozenset[str] = frozenset()


Listener = Callable[[StoreChange], None]
UnresolvedHook = Callable[[str, str], None]


class ReportStore:
    def __init__(
        self,
        config: SyncConfig,
        on_unresolved: Optional[UnresolvedHook] = None,
    ) -> None:
        self._config = config
        self._reports: dict[str, Report] = {}
        self._listeners: list[Listener] = []
        self.on_unresolved = on_unresolved
        self.version = 0

    # ── Parsing ───────────────────────────────────────────────────────────────

    def parse(self, payload: dict[str, Any]) -> Report:
        """Parse an upstream document with this session's anchor and sentinel."""
        return parse_report(
            payload,
            anchor=self._config.fallback_anchor,
            sentinel=self._config.sentinel,
            tolerance=self._config.sentinel_tolerance,
        )

    def is_invalid(self, location: Any) -> bool:
        return is_invalid_location(
            location, self._config.sentinel, self._config.sentinel_tolerance
        )

    def needs_location(self, report: Report) -> bool:
        """True while the report is drawn at the anchor or another untrusted point."""
        return report.location_unresolved or self.is_invalid(report.location)

    # ── Reads ─────────────────────────────────────────────────────────────────

    def get(self, report_id: str) -> Optional[Report]:
        return self._reports.get(report_id)

    def snapshot(self) -> tuple[Report, ...]:
        """Read-only view, newest first."""
        return tuple(sorted(self._reports.values(), key=lambda r: r.created_at, reverse=True))

    def __len__(self) -> int:
        return len(self._reports)

    def __contains__(self, report_id: object) -> bool:
        return report_id in self._reports

    # ── Subscriptions ─────────────────────────────────────────────────────────

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, change: StoreChange) -> None:
        self.version += 1
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                # A broken subscriber must not block the others or the mutation
                logger.exception("Store listener failed for %s change", change.kind)

    def _admit(self, report: Report) -> None:
        if (
            self.on_unresolved is not None
            and report.location_unresolved
            and report.location_address
            and report.location_address.strip()
        ):
            self.on_unresolved(report.id, report.location_address)

    # ── Mutations ─────────────────────────────────────────────────────────────

    def load(self, batch: Iterable[Report | dict[str, Any]]) -> int:
        """
        Replace the working set. Raw dicts are parsed; malformed items are
        skipped with a warning. Returns the number of reports kept.
        """
        reports: dict[str, Report] = {}
        for item in batch:
            if isinstance(item, Report):
                report = item
            else:
                try:
                    report = self.parse(item)
                except (ValidationError, TypeError, ValueError) as exc:
                    logger.warning("Skipping malformed report %r: %s", _item_id(item), exc)
                    continue
            reports[report.id] = report

        self._reports = reports
        for report in reports.values():
            self._admit(report)
        self._notify(StoreChange(kind="load", ids=tuple(reports)))
        logger.debug("Store loaded %d reports", len(reports))
        return len(reports)

    def upsert(self, report: Report) -> Report:
        """Insert or replace by id. Replaying the same report is harmless."""
        self._reports[report.id] = report
        self._admit(report)
        self._notify(StoreChange(kind="upsert", ids=(report.id,)))
        return report

    def patch(self, report_id: str, fields: dict[str, Any]) -> Optional[Report]:
        """
        Merge `fields` into an existing report.

        The unresolved-location flag survives unless the patch carries a
        valid location. Unknown ids are a warning and a no-op.
        """
        current = self._reports.get(report_id)
        if current is None:
            logger.warning("Ignoring patch for unknown report %s", report_id)
            return None

        updates = {k: v for k, v in fields.items() if k not in ("id", "_id", "location_unresolved")}
        if "user_id" in updates and "reporter_id" not in updates:
            updates["reporter_id"] = updates.pop("user_id")
        if "patrol_user_id" in updates and "assignee_id" not in updates:
            updates["assignee_id"] = updates.pop("patrol_user_id")

        if "location" in updates:
            raw_location = updates.pop("location")
            if not self.is_invalid(raw_location):
                lat, lng = coerce_location(raw_location)
                updates["location"] = {"lat": lat, "lng": lng}
                updates["location_unresolved"] = False

        merged = {**current.model_dump(), **updates}
        try:
            patched = Report.model_validate(merged)
        except ValidationError as exc:
            logger.warning("Rejecting malformed patch for report %s: %s", report_id, exc)
            return None

        self._reports[report_id] = patched
        if (
            patched.location_unresolved
            and "location_address" in updates
            and patched.location_address != current.location_address
        ):
            self._admit(patched)
        self._notify(StoreChange(kind="patch", ids=(report_id,), fields=frozenset(updates)))
        return patched


def _item_id(item: Any) -> Any:
    if isinstance(item, dict):
        return item.get("id", item.get("_id"))
    return None
