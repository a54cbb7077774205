"""
location_resolver.py — Background address resolution for reports drawn at
the fallback anchor.

Design
──────
  enqueue(id, address) ──► FIFO deque ──► one worker task ──► GeocodeCache
                                              │                    │
                                              └──► geocoder ◄──────┘ (miss only)
                                              │
                                              └──► ReportStore.patch(id, location)

- Deduplicated by report id while an item is waiting in the queue.
- Exactly one worker drains the queue; it exits when the queue is empty and
  is restarted by the next enqueue.
- At most one external lookup is in flight per session. `_lookup_lock` also
  serialises on-demand lookups triggered by a focus action.
- Consecutive external lookups are at least the politeness interval apart,
  whichever path (worker or focus) issues them. The gap is measured from the
  end of the previous call, under `_lookup_lock`. Cache hits skip the wait
  because they never touch the external service.
- A geocoder that returns nothing counts as a failure and is never cached.
- Failures are logged and swallowed. The report keeps its fallback anchor and
  is not retried until an operator focuses it.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Optional

from fieldmap.core.config import SyncConfig
from fieldmap.core.errors import GeocodeError
from fieldmap.models.report import Coordinates
from fieldmap.services.geocoder import Geocoder
from fieldmap.services.report_store import ReportStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeocodeQueueItem:
    report_id: str
    address: str


class GeocodeCache:
    """Address → coordinates. Each address is written at most once."""

    def __init__(self) -> None:
        self._entries: dict[str, Coordinates] = {}

    def get(self, address: str) -> Optional[Coordinates]:
        return self._entries.get(address)

    def put(self, address: str, coords: Coordinates) -> Coordinates:
        """Store the first successful result; later writes return the original."""
        return self._entries.setdefault(address, coords)

    def __contains__(self, address: object) -> bool:
        return address in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class LocationResolver:
    def __init__(
        self,
        store: ReportStore,
        geocoder: Geocoder,
        config: SyncConfig,
        cache: Optional[GeocodeCache] = None,
    ) -> None:
        self._store = store
        self._geocoder = geocoder
        self._config = config
        self.cache = cache if cache is not None else GeocodeCache()

        self._queue: deque[GeocodeQueueItem] = deque()
        self._queued_ids: set[str] = set()
        self._worker: Optional[asyncio.Task] = None
        self._lookup_lock = asyncio.Lock()
        self._last_external: Optional[float] = None
        self._closed = False

        self.lookups = 0
        self.failures = 0

    # ── Queue ─────────────────────────────────────────────────────────────────

    @property
    def pending(self) -> tuple[GeocodeQueueItem, ...]:
        return tuple(self._queue)

    @property
    def busy(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def enqueue(self, report_id: str, address: str) -> bool:
        """Queue a report for background resolution. Returns False when skipped."""
        if self._closed or not address or not address.strip():
            return False
        if report_id in self._queued_ids:
            return False

        self._queue.append(GeocodeQueueItem(report_id=report_id, address=address.strip()))
        self._queued_ids.add(report_id)
        self._ensure_worker()
        return True

    def _ensure_worker(self) -> None:
        if self.busy:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Queued items are picked up by the next enqueue inside the loop
            logger.debug("No running loop; geocode worker start deferred")
            return
        self._worker = loop.create_task(self._drain(), name="geocode-worker")

    async def _drain(self) -> None:
        while self._queue:
            item = self._queue.popleft()
            self._queued_ids.discard(item.report_id)
            looked_up = await self._process(item)
            if looked_up:
                await asyncio.sleep(self._config.geocode_interval)

    async def _process(self, item: GeocodeQueueItem) -> bool:
        cached = self.cache.get(item.address)
        if cached is not None:
            self._apply(item.report_id, cached)
            return False

        coords = await self._lookup(item.address)
        if coords is not None:
            self._apply(item.report_id, coords)
        return True

    # ── Lookups ───────────────────────────────────────────────────────────────

    async def _lookup(self, address: str) -> Optional[Coordinates]:
        async with self._lookup_lock:
            # Another caller may have resolved it while we waited for the lock
            cached = self.cache.get(address)
            if cached is not None:
                return cached

            await self._wait_for_interval()
            self.lookups += 1
            try:
                coords = await asyncio.wait_for(
                    self._geocoder.lookup(address),
                    timeout=self._config.geocode_timeout,
                )
            except asyncio.TimeoutError:
                self.failures += 1
                logger.warning(
                    "Geocode timed out after %.1fs for %r", self._config.geocode_timeout, address
                )
                return None
            except GeocodeError as exc:
                self.failures += 1
                logger.warning("%s", exc)
                return None
            except Exception as exc:
                self.failures += 1
                logger.warning(
                    "Geocode lookup raised %s for %r: %s", type(exc).__name__, address, exc
                )
                return None
            finally:
                self._last_external = asyncio.get_running_loop().time()

            if coords is None:
                self.failures += 1
                logger.warning("Geocode returned no result for %r", address)
                return None
            return self.cache.put(address, coords)

    async def _wait_for_interval(self) -> None:
        if self._last_external is None:
            return
        elapsed = asyncio.get_running_loop().time() - self._last_external
        remaining = self._config.geocode_interval - elapsed
        if remaining > 0:
            await asyncio.sleep(remaining)

    def _apply(self, report_id: str, coords: Coordinates) -> None:
        report = self._store.get(report_id)
        if report is None:
            logger.debug("Resolved report %s is no longer in the store", report_id)
            return
        if not report.location_unresolved:
            # A real location arrived from upstream in the meantime
            return
        self._store.patch(report_id, {"location": coords.model_dump()})

    async def resolve_now(self, report_id: str, address: str) -> Optional[Coordinates]:
        """
        On-demand attempt for a single report (operator focus). Uses the cache,
        then one lookup through the same single-flight lock.
        """
        if self._closed or not address or not address.strip():
            return None
        address = address.strip()
        coords = self.cache.get(address) or await self._lookup(address)
        if coords is not None:
            self._apply(report_id, coords)
        return coords

    # ── Teardown ──────────────────────────────────────────────────────────────

    async def aclose(self) -> None:
        self._closed = True
        self._queue.clear()
        self._queued_ids.clear()
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
