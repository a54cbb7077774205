"""
realtime_bridge.py — Change feed → ReportStore adapter.

HOW THE DATA FLOWS
──────────────────
1. MongoChangeFeed opens a Motor change stream on the `reports` collection
   (`collection.watch(full_document="updateLookup")`).
2. Each change document becomes a ChangeEvent:
     insert            → ChangeEvent("insert", fullDocument)
     update / replace  → ChangeEvent("update", {id, <changed top-level fields>})
3. RealtimeBridge.handle() turns inserts into ReportStore.upsert() and updates
   into ReportStore.patch(). A malformed event is logged and skipped.
4. The same events are mirrored into the WarmStartSnapshot so a reconnecting
   dashboard can paint instantly. The snapshot is advisory only: the store is
   the source of truth and the snapshot may be stale or empty.

Disconnects
───────────
Any feed failure surfaces as SubscriptionError. The bridge flips `connected`
(reported through `on_connectivity`), keeps the store untouched, and retries
with capped exponential backoff. When a subscription re-opens after a
failure, `on_resync` runs so the session reloads whatever changed while
the feed was down.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Optional, Protocol

from pydantic import ValidationError
from pymongo.errors import PyMongoError

from fieldmap.core.config import SyncConfig
from fieldmap.core.errors import SubscriptionError
from fieldmap.models.report import Report
from fieldmap.services.report_store import ReportStore

logger = logging.getLogger(__name__)

_MAX_BACKOFF_S = 30.0


@dataclass(frozen=True)
class ChangeEvent:
    kind: str                 # "insert" | "update"
    payload: dict[str, Any]


class ChangeFeed(Protocol):
    def events(self, on_open: Callable[[], None]) -> AsyncIterator[ChangeEvent]:
        """Yield change events; call `on_open` once the subscription is live."""
        ...


def change_event_from_mongo(change: dict[str, Any]) -> Optional[ChangeEvent]:
    """Translate a raw change stream document. Returns None for ignored ops."""
    op = change.get("operationType")
    full = change.get("fullDocument") or None
    key = (change.get("documentKey") or {}).get("_id")

    if op == "insert" and full is not None:
        return ChangeEvent(kind="insert", payload=dict(full))

    if op in ("update", "replace"):
        report_id = (full or {}).get("id") or (str(key) if key is not None else None)
        if report_id is None:
            return None
        if op == "replace" and full is not None:
            fields = {k: v for k, v in full.items() if k != "_id"}
        else:
            updated = (change.get("updateDescription") or {}).get("updatedFields") or {}
            fields = {}
            for path, value in updated.items():
                # "location.lat" style paths: take the whole top-level field
                top = path.split(".", 1)[0]
                if "." in path and full is not None and top in full:
                    fields[top] = full[top]
                elif "." not in path:
                    fields[top] = value
        fields["id"] = str(report_id)
        return ChangeEvent(kind="update", payload=fields)

    return None


class MongoChangeFeed:
    """Change stream over a Motor collection."""

    def __init__(self, collection: Any) -> None:
        self._collection = collection

    async def events(self, on_open: Callable[[], None]) -> AsyncIterator[ChangeEvent]:
        try:
            async with self._collection.watch(full_document="updateLookup") as stream:
                on_open()
                async for change in stream:
                    event = change_event_from_mongo(change)
                    if event is not None:
                        yield event
        except PyMongoError as exc:
            raise SubscriptionError(f"change stream failed: {exc}") from exc


# ── Warm-start snapshot ───────────────────────────────────────────────────────

def _payload_id(payload: dict[str, Any]) -> Optional[str]:
    value = payload.get("id", payload.get("_id"))
    return str(value) if value is not None else None


class WarmStartSnapshot:
    """
    Last-known report payloads for instant paint on reconnect/reload.

    Bounded, newest first. Purely a perceived-latency optimisation.
    """

    def __init__(self, capacity: int = 50) -> None:
        self.capacity = capacity
        self._items: list[dict[str, Any]] = []
        self.updated_at: Optional[datetime] = None

    def __len__(self) -> int:
        return len(self._items)

    def read(self) -> list[dict[str, Any]]:
        return [dict(item) for item in self._items]

    def clear(self) -> None:
        self._items = []
        self.updated_at = None

    def _touch(self) -> None:
        self.updated_at = datetime.now(timezone.utc)

    def write(self, payloads: list[dict[str, Any]]) -> None:
        self._items = [dict(p) for p in payloads[: self.capacity]]
        self._touch()

    def write_reports(self, reports: tuple[Report, ...] | list[Report]) -> None:
        payloads = []
        for report in reports:
            data = report.model_dump(mode="json")
            if report.location_unresolved:
                # Don't persist the anchor as if it were a real location
                data["location"] = None
            data.pop("location_unresolved", None)
            payloads.append(data)
        self.write(payloads)

    def record_insert(self, payload: dict[str, Any]) -> None:
        pid = _payload_id(payload)
        rest = [item for item in self._items if pid is None or _payload_id(item) != pid]
        self._items = [dict(payload), *rest][: self.capacity]
        self._touch()

    def record_update(self, payload: dict[str, Any]) -> None:
        pid = _payload_id(payload)
        if pid is None:
            return
        self._items = [
            {**item, **payload} if _payload_id(item) == pid else item
            for item in self._items
        ]
        self._touch()


# ── Bridge ────────────────────────────────────────────────────────────────────

class RealtimeBridge:
    def __init__(
        self,
        store: ReportStore,
        config: SyncConfig,
        feed: Optional[ChangeFeed] = None,
        snapshot: Optional[WarmStartSnapshot] = None,
        on_connectivity: Optional[Callable[[bool], None]] = None,
        on_resync: Optional[Callable[[], None]] = None,
    ) -> None:
        self._store = store
        self._config = config
        self._feed = feed
        self._snapshot = snapshot
        self.on_connectivity = on_connectivity
        self.on_resync = on_resync

        self.connected = False
        self._had_failure = False
        self._failures = 0
        self._task: Optional[asyncio.Task] = None

    # ── Event translation ────────────────────────────────────────────────────

    def handle(self, event: ChangeEvent) -> None:
        if event.kind == "insert":
            try:
                report = self._store.parse(event.payload)
            except (ValidationError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed insert event: %s", exc)
                return
            self._store.upsert(report)
            if self._snapshot is not None:
                self._snapshot.record_insert(event.payload)

        elif event.kind == "update":
            report_id = _payload_id(event.payload)
            if report_id is None:
                logger.warning("Skipping update event without an id")
                return
            fields = {k: v for k, v in event.payload.items() if k not in ("id", "_id")}
            self._store.patch(report_id, fields)
            if self._snapshot is not None:
                self._snapshot.record_update(event.payload)

        else:
            logger.debug("Ignoring change event of kind %s", event.kind)

    # ── Subscription loop ────────────────────────────────────────────────────

    @property
    def has_feed(self) -> bool:
        return self._feed is not None

    def _set_connected(self, value: bool) -> None:
        if self.connected == value:
            return
        self.connected = value
        if self.on_connectivity is not None:
            self.on_connectivity(value)

    def _opened(self) -> None:
        self._failures = 0
        self._set_connected(True)
        if self._had_failure:
            self._had_failure = False
            logger.info("Change feed reconnected; resyncing")
            if self.on_resync is not None:
                self.on_resync()

    async def run(self) -> None:
        if self._feed is None:
            logger.info("No change feed configured; live updates disabled")
            self._set_connected(False)
            return

        while True:
            try:
                async for event in self._feed.events(self._opened):
                    self.handle(event)
                raise SubscriptionError("change feed closed")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._had_failure = True
                self._set_connected(False)
                delay = min(
                    self._config.feed_reconnect_delay * (2 ** self._failures), _MAX_BACKOFF_S
                )
                self._failures += 1
                logger.warning("Change feed disconnected (%s); retrying in %.1fs", exc, delay)
                await asyncio.sleep(delay)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.run(), name="change-feed")

    async def aclose(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self.connected = False
