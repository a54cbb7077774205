"""
pytest configuration and shared fixtures for the FieldMap Sync tests.

Key concern: tests must not require a live MongoDB or a geocoding service.
We achieve this by:
  1. Patching connect_to_mongo / close_mongo_connection to no-ops so
     FastAPI's lifespan doesn't try to reach a real database.
  2. Setting db_client.client = None (disconnected) so health check
     correctly reports "disconnected", a valid test-mode state.
  3. Replacing the geocoder, viewport and change feed with in-memory fakes.

Engine tests use a SyncConfig with millisecond intervals so debounce and
politeness windows elapse quickly under `asyncio.sleep`.
"""

import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

# Set env vars BEFORE importing the app so Settings picks them up correctly
os.environ.setdefault("ENVIRONMENT", "test")

from fieldmap.core.config import SyncConfig  # noqa: E402
from fieldmap.core.errors import GeocodeError, RenderSyncError, SubscriptionError  # noqa: E402
from fieldmap.models.report import Coordinates  # noqa: E402

ANCHOR = (14.8386, 120.1881)


# ── Fake Mongo ────────────────────────────────────────────────────────────────

class FakeCursor:
    def __init__(self, docs):
        self._docs = list(docs)

    def sort(self, key, direction=1):
        self._docs.sort(key=lambda d: d.get(key) or datetime.min, reverse=direction < 0)
        return self

    def limit(self, n):
        self._docs = self._docs[:n]
        return self

    async def __aiter__(self):
        for doc in self._docs:
            yield dict(doc)


class FakeChangeStream:
    """Async context manager + iterator over queued change documents."""

    def __init__(self, changes: asyncio.Queue):
        self._changes = changes

    async def __aenter__(self):
        return self

    async def __aexit__(self, *_exc):
        return False

    def __aiter__(self):
        return self

    async def __anext__(self):
        change = await self._changes.get()
        if isinstance(change, Exception):
            raise change
        return change


class FakeCollection:
    def __init__(self):
        self._docs: list[dict] = []
        self.changes: asyncio.Queue = asyncio.Queue()
        self.fail_find = False
        self.updates: list[tuple[dict, dict]] = []

    def insert(self, *docs):
        self._docs.extend(dict(d) for d in docs)

    def find(self, query=None):
        if self.fail_find:
            raise RuntimeError("connection refused")
        return FakeCursor(d for d in self._docs if self._matches(d, query or {}))

    async def update_one(self, query, update):
        self.updates.append((query, update))
        result = MagicMock()
        result.matched_count = 0
        for doc in self._docs:
            if self._matches(doc, query):
                doc.update(update.get("$set", {}))
                result.matched_count = 1
                break
        return result

    def watch(self, **_kwargs):
        return FakeChangeStream(self.changes)

    @staticmethod
    def _matches(doc, query):
        for k, v in query.items():
            if k == "$or":
                if not any(FakeCollection._matches(doc, cond) for cond in v):
                    return False
            elif isinstance(v, dict) and "$in" in v:
                if doc.get(k) not in v["$in"]:
                    return False
            elif doc.get(k) != v:
                return False
        return True


class FakeDB:
    def __init__(self):
        self._cols: dict[str, FakeCollection] = {}

    def __getitem__(self, name):
        if name not in self._cols:
            self._cols[name] = FakeCollection()
        return self._cols[name]


# ── Engine fakes ──────────────────────────────────────────────────────────────

class FakeGeocoder:
    """
    Address → result table. A value may be a Coordinates, an exception to
    raise, or missing (treated as "no result").
    """

    def __init__(self, results: dict[str, Any] | None = None, delay: float = 0.0):
        self.results = dict(results or {})
        self.delay = delay
        self.calls: list[str] = []
        self.call_times: list[float] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def lookup(self, address: str) -> Coordinates:
        self.calls.append(address)
        self.call_times.append(asyncio.get_running_loop().time())
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            result = self.results.get(address)
            if result is None:
                raise GeocodeError(address, "no result")
            if isinstance(result, Exception):
                raise result
            return result
        finally:
            self.in_flight -= 1

    async def aclose(self):
        self.closed = True


class RecordingViewport:
    """In-memory viewport that records every command."""

    def __init__(self, ready: bool = True, zoom: int = 12):
        self.ready = ready
        self.zoom = zoom
        self.live: dict[int, Any] = {}
        self.ops: list[tuple] = []
        self.fail_after: int | None = None
        self._serial = 0

    def add(self, marker):
        if not self.ready:
            raise RenderSyncError("viewport not ready")
        if self.fail_after is not None and len(self.live) >= self.fail_after:
            raise RenderSyncError("map rejected marker")
        self._serial += 1
        self.live[self._serial] = marker
        self.ops.append(("add", marker.id))
        return self._serial

    def remove(self, handle):
        if handle not in self.live:
            raise RenderSyncError(f"unknown handle {handle}")
        marker = self.live.pop(handle)
        self.ops.append(("remove", marker.id))

    def focus(self, position, zoom_hint):
        if not self.ready:
            raise RenderSyncError("viewport not ready")
        self.zoom = zoom_hint
        self.ops.append(("focus", position.as_tuple(), zoom_hint))

    def highlight(self, handle, active):
        if handle not in self.live:
            raise RenderSyncError(f"unknown handle {handle}")
        self.ops.append(("highlight", self.live[handle].id, active))

    @property
    def markers(self):
        return list(self.live.values())

    def count(self, op):
        return sum(1 for entry in self.ops if entry[0] == op)


class FakeChangeFeed:
    """ChangeFeed fed from a queue. Put an Exception to drop the subscription."""

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.opens = 0

    async def events(self, on_open):
        self.opens += 1
        on_open()
        while True:
            item = await self.queue.get()
            if isinstance(item, Exception):
                raise SubscriptionError(str(item))
            yield item


def report_doc(report_id: str, lat=14.60, lng=121.00, minutes_ago: int = 0, **extra) -> dict:
    """A report document as the upstream field app stores it."""
    doc = {
        "id": report_id,
        "title": f"Report {report_id}",
        "description": "Broken streetlight",
        "status": "pending",
        "priority": "medium",
        "location": {"lat": lat, "lng": lng} if lat is not None else None,
        "created_at": datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc) - timedelta(minutes=minutes_ago),
        "user_id": "u-1234567890",
    }
    doc.update(extra)
    return doc


async def settle(seconds: float = 0.05) -> None:
    """Let timers (debounce, politeness, highlight) fire."""
    await asyncio.sleep(seconds)


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture()
def sync_config() -> SyncConfig:
    return SyncConfig(
        reconcile_debounce=0.01,
        geocode_interval=0.02,
        geocode_timeout=0.5,
        highlight_duration=0.03,
        feed_reconnect_delay=0.01,
    )


@pytest.fixture()
def fake_db():
    return FakeDB()


@pytest.fixture()
def geocoder():
    return FakeGeocoder()


@pytest.fixture()
def viewport():
    return RecordingViewport()


@pytest.fixture(autouse=True)
async def mock_db():
    """
    Patch the MongoDB lifecycle for every test.

    - connect_to_mongo → no-op AsyncMock
    - close_mongo_connection → no-op AsyncMock
    - db_client.client / db_client.db → None
    """
    with (
        patch("fieldmap.core.database.connect_to_mongo", new_callable=AsyncMock),
        patch("fieldmap.core.database.close_mongo_connection", new_callable=AsyncMock),
    ):
        import fieldmap.core.database as db_module

        original_client = db_module.db_client.client
        original_db = db_module.db_client.db

        db_module.db_client.client = None
        db_module.db_client.db = None

        yield

        db_module.db_client.client = original_client
        db_module.db_client.db = original_db


@pytest.fixture(autouse=True)
def reset_app_state():
    """Fresh warm-start snapshot and rate-limit counters per test."""
    from fieldmap.core.rate_limit import limiter
    from fieldmap.main import app

    app.state.warm_snapshot.clear()
    limiter.reset()
    yield
    app.dependency_overrides.clear()


@pytest.fixture()
async def client(mock_db):  # noqa: ARG001 (mock_db must run first)
    """
    HTTPX async test client wired to the FastAPI app.

    Usage:
        async def test_something(client):
            response = await client.get("/health")
            assert response.status_code == 200
    """
    from fieldmap.main import app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture()
async def db_client(fake_db):
    """Async client with get_db overridden to the in-memory FakeDB."""
    from fieldmap.core.database import get_db
    from fieldmap.main import app

    app.dependency_overrides[get_db] = lambda: fake_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
