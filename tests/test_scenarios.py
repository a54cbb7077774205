"""
test_scenarios.py — End-to-end behaviour of one session's engine: feed
events in, rendered markers out.
"""

import asyncio

import pytest

from conftest import ANCHOR, FakeChangeFeed, FakeGeocoder, RecordingViewport, report_doc, settle
from fieldmap.core.config import SyncConfig
from fieldmap.models.report import Coordinates
from fieldmap.services.cluster_engine import degree_distance
from fieldmap.services.realtime_bridge import ChangeEvent
from fieldmap.services.session import DashboardSession

SUBIC = Coordinates(lat=14.84, lng=120.19)


@pytest.fixture()
async def engine(sync_config, fake_db):
    """A started session with an empty database and a live fake feed."""
    created = []

    async def _start(geocoder=None, config=None):
        feed = FakeChangeFeed()
        viewport = RecordingViewport()
        session = DashboardSession(
            config or sync_config, geocoder or FakeGeocoder(), viewport, db=fake_db, feed=feed
        )
        created.append(session)
        await session.start()
        await settle(0.02)
        return session, feed, viewport

    yield _start
    for session in created:
        await session.aclose()


async def test_insert_without_location_is_geocoded_onto_the_map(engine):
    geocoder = FakeGeocoder({"Subic Bay Freeport": SUBIC})
    session, feed, viewport = await engine(geocoder)

    doc = report_doc("r1", lat=None, location_address="Subic Bay Freeport")
    await feed.queue.put(ChangeEvent("insert", doc))
    await settle(0.15)

    assert [m.id for m in viewport.markers] == ["r1"]
    assert viewport.markers[0].position == SUBIC
    assert session.store.get("r1").location_unresolved is False
    assert geocoder.calls == ["Subic Bay Freeport"]


async def test_two_reports_at_default_coordinate_form_one_cluster(engine):
    session, feed, viewport = await engine()

    await feed.queue.put(ChangeEvent("insert", report_doc("r1", lat=ANCHOR[0], lng=ANCHOR[1])))
    await feed.queue.put(ChangeEvent("insert", report_doc("r2", lat=ANCHOR[0], lng=ANCHOR[1])))
    await settle()

    assert len(viewport.markers) == 1
    marker = viewport.markers[0]
    assert marker.is_cluster
    assert sorted(marker.report_ids) == ["r1", "r2"]
    assert marker.position.as_tuple() == ANCHOR


async def test_status_change_inside_debounce_window_draws_once(engine, sync_config):
    config = sync_config.with_overrides(reconcile_debounce=0.05)
    session, feed, viewport = await engine(config=config)
    await settle(0.1)
    passes_before = session.controller.reconcile_count

    await feed.queue.put(ChangeEvent("insert", report_doc("r1")))
    await settle(0.01)
    await feed.queue.put(ChangeEvent("update", {"id": "r1", "status": "resolved"}))
    await settle(0.15)

    assert len(viewport.markers) == 1
    assert viewport.markers[0].glyph.status_summary == {"resolved": 1}
    assert viewport.count("add") == 1
    assert session.controller.reconcile_count == passes_before + 1


async def test_failed_geocode_keeps_anchor_and_queue_moves_on(engine):
    geocoder = FakeGeocoder({"Olongapo Public Market": SUBIC})
    session, feed, viewport = await engine(geocoder)

    await feed.queue.put(ChangeEvent("insert", report_doc("r1", lat=None, location_address="Atlantis")))
    await feed.queue.put(
        ChangeEvent("insert", report_doc("r2", lat=None, location_address="Olongapo Public Market"))
    )
    await settle(0.15)

    assert session.store.get("r1").location.as_tuple() == ANCHOR
    assert session.store.get("r1").location_unresolved is True
    assert session.store.get("r2").location == SUBIC
    gap = geocoder.call_times[1] - geocoder.call_times[0]
    assert gap >= session.config.geocode_interval * 0.9


async def test_burst_of_inserts_reconciles_once(engine):
    config = SyncConfig(reconcile_debounce=0.1)
    session, feed, viewport = await engine(config=config)
    await settle(0.15)
    passes_before = session.controller.reconcile_count

    for i in range(10):
        await feed.queue.put(ChangeEvent("insert", report_doc(f"r{i}", lat=14.5 + i * 0.01)))
        await asyncio.sleep(0.004)
    await settle(0.2)

    assert session.controller.reconcile_count == passes_before + 1
    assert len(viewport.markers) == 10


async def test_markers_never_overlap(engine):
    session, feed, viewport = await engine()

    for i in range(30):
        lat = 14.6 + (i % 7) * 0.00006
        lng = 121.0 + (i % 5) * 0.00004
        await feed.queue.put(ChangeEvent("insert", report_doc(f"r{i}", lat=lat, lng=lng)))
    await settle()

    positions = [m.position for m in viewport.markers]
    for i, a in enumerate(positions):
        for b in positions[i + 1:]:
            assert degree_distance(a, b) >= session.config.cluster_epsilon
    assert sum(len(m.report_ids) for m in viewport.markers) == 30


async def test_rebuild_without_changes_renders_same_set(engine):
    session, feed, viewport = await engine()
    for i in range(5):
        await feed.queue.put(ChangeEvent("insert", report_doc(f"r{i}", lat=14.6 + (i % 2) * 0.01)))
    await settle()
    before = sorted((m.id, tuple(sorted(m.report_ids))) for m in viewport.markers)

    session.controller.reconcile()
    session.controller.reconcile()

    after = sorted((m.id, tuple(sorted(m.report_ids))) for m in viewport.markers)
    assert before == after
    assert len(viewport.live) == len(before)
