"""
test_reports.py — Tests for the /api/v1/reports routes.

Uses the in-memory FakeDB from conftest so no real MongoDB is needed.
"""

import pytest

from conftest import report_doc


@pytest.fixture()
def seeded_db(fake_db):
    fake_db["reports"].insert(
        report_doc("a", status="pending", title="Pothole on Rizal Ave", minutes_ago=3),
        report_doc("b", status="in_progress", lat=15.0, minutes_ago=2, patrol_user_id="p-abcdefghij"),
        report_doc("c", status="resolved", lat=None, minutes_ago=1),
    )
    fake_db["profiles"].insert({"_id": "u-1234567890", "username": "maria"})
    return fake_db


class TestReportsList:
    async def test_list_returns_open_reports(self, db_client, seeded_db):
        r = await db_client.get("/api/v1/reports")
        assert r.status_code == 200

        data = r.json()
        assert [item["id"] for item in data["items"]] == ["b", "a"]
        assert data["total"] == 2
        assert data["notice"] is None

    async def test_include_resolved(self, db_client, seeded_db):
        data = (await db_client.get("/api/v1/reports?include_resolved=true")).json()
        assert [item["id"] for item in data["items"]] == ["c", "b", "a"]

    async def test_resolved_filter_shows_history(self, db_client, seeded_db):
        data = (await db_client.get("/api/v1/reports?status=resolved")).json()
        assert [item["id"] for item in data["items"]] == ["c"]
        assert data["items"][0]["location_unresolved"] is True

    async def test_search(self, db_client, seeded_db):
        data = (await db_client.get("/api/v1/reports?search=pothole")).json()
        assert [item["id"] for item in data["items"]] == ["a"]

    async def test_row_display_fields(self, db_client, seeded_db):
        items = (await db_client.get("/api/v1/reports")).json()["items"]
        row = {item["id"]: item for item in items}["b"]
        assert row["reporter_display"] == "maria"
        assert row["assignee_display"] == "Patrol p-abcdef"
        assert row["next_actions"] == ["awaiting_verification", "resolved"]

    async def test_unknown_status_rejected(self, db_client):
        r = await db_client.get("/api/v1/reports?status=exploded")
        assert r.status_code == 422

    async def test_no_db_returns_notice(self, client):
        data = (await client.get("/api/v1/reports")).json()
        assert data["items"] == []
        assert data["notice"] == "Failed to fetch reports"

    async def test_no_db_uses_warm_snapshot(self, client):
        from fieldmap.main import app

        app.state.warm_snapshot.write([report_doc("cached")])
        data = (await client.get("/api/v1/reports")).json()
        assert [item["id"] for item in data["items"]] == ["cached"]
        assert data["notice"].startswith("Live data unavailable")

    async def test_successful_list_warms_snapshot(self, db_client, seeded_db):
        from fieldmap.main import app

        await db_client.get("/api/v1/reports")
        assert len(app.state.warm_snapshot) == 3


class TestReportStatus:
    async def test_patch_updates_document(self, db_client, seeded_db):
        r = await db_client.patch("/api/v1/reports/a/status", json={"status": "in_progress"})
        assert r.status_code == 200
        assert r.json() == {"id": "a", "status": "in_progress"}
        assert seeded_db["reports"].updates[-1][1] == {"$set": {"status": "in_progress"}}

    async def test_patch_unknown_report_404(self, db_client, seeded_db):
        r = await db_client.patch("/api/v1/reports/ghost/status", json={"status": "resolved"})
        assert r.status_code == 404

    async def test_patch_invalid_status_422(self, db_client, seeded_db):
        r = await db_client.patch("/api/v1/reports/a/status", json={"status": "done"})
        assert r.status_code == 422

    async def test_patch_without_db_503(self, client):
        r = await client.patch("/api/v1/reports/a/status", json={"status": "resolved"})
        assert r.status_code == 503

    async def test_patch_is_rate_limited(self, db_client, seeded_db):
        codes = [
            (await db_client.patch("/api/v1/reports/a/status", json={"status": "pending"})).status_code
            for _ in range(31)
        ]
        assert codes[:30] == [200] * 30
        assert codes[30] == 429
