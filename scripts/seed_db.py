#!/usr/bin/env python3
"""
seed_db.py — Populate MongoDB with sample reports for local development.

Inserts:
  - A few dozen field reports around Olongapo / Subic Bay, including
    co-located reports (clusters), reports with no location and reports
    that only carry a free-text address (to exercise geocoding)
  - Matching reporter/patrol profiles
  - The indexes the dashboard queries rely on

Usage:
    python scripts/seed_db.py

Uses MONGO_URI / MONGO_DB_NAME from the environment or .env, like the API.

Safe to re-run: deletes seed data first, then re-inserts.
"""

import asyncio
import random
from datetime import datetime, timedelta, timezone

from motor.motor_asyncio import AsyncIOMotorClient

from fieldmap.core.config import settings
from fieldmap.models.report import REPORT_STATUSES

SEED_PREFIX = "seed-"

PROFILES = [
    {"_id": f"{SEED_PREFIX}user-01", "username": "maria.santos"},
    {"_id": f"{SEED_PREFIX}user-02", "username": "jun.dela.cruz"},
    {"_id": f"{SEED_PREFIX}patrol-01", "username": "Patrol Unit Alpha"},
]

_PLACES = [
    ("Clogged drainage canal", 14.8292, 120.2828),
    ("Broken streetlight", 14.8361, 120.2847),
    ("Illegal dumping", 14.8179, 120.2903),
    ("Fallen tree blocking road", 14.8443, 120.2741),
]

_ADDRESSES = [
    "Olongapo City Hall, Olongapo",
    "Subic Bay Freeport Zone",
    "Barretto, Olongapo",
]


def build_sample_reports(now: datetime | None = None, seed: int = 7) -> list[dict]:
    """Deterministic sample documents in the upstream field app's shape."""
    now = now or datetime.now(timezone.utc)
    rng = random.Random(seed)
    docs: list[dict] = []

    for i in range(24):
        title, lat, lng = _PLACES[i % len(_PLACES)]
        doc = {
            "id": f"{SEED_PREFIX}{i:03d}",
            "title": title,
            "description": f"{title} reported by a resident",
            "category": "infrastructure",
            "status": rng.choice(REPORT_STATUSES),
            "priority": rng.choice(["low", "medium", "high"]),
            # Every fourth place repeats exactly, so those reports cluster
            "location": {"lat": lat, "lng": lng},
            "user_id": PROFILES[i % 2]["_id"],
            "created_at": now - timedelta(minutes=15 * i),
            "images": [],
        }
        if doc["status"] != "pending":
            doc["patrol_user_id"] = PROFILES[2]["_id"]
        docs.append(doc)

    # Reports the upstream app saved without a real point
    for j, address in enumerate(_ADDRESSES):
        docs.append({
            "id": f"{SEED_PREFIX}addr-{j}",
            "title": "Flooded street",
            "description": "No pin dropped, address only",
            "status": "pending",
            "priority": "high",
            "location": {"lat": settings.sentinel_lat, "lng": settings.sentinel_lng},
            "location_address": address,
            "user_id": PROFILES[0]["_id"],
            "created_at": now - timedelta(minutes=5 + j),
        })
    docs.append({
        "id": f"{SEED_PREFIX}noloc",
        "title": "Stray animals",
        "status": "verifying",
        "location": None,
        "user_id": "unknown-reporter-0001",
        "created_at": now - timedelta(minutes=1),
    })
    return docs


async def seed() -> None:
    print("Connecting to MongoDB...")
    client = AsyncIOMotorClient(settings.mongo_uri)
    db = client[settings.mongo_db_name]

    try:
        await client.admin.command("ping")
        print("Connected.")

        # ─── Clean up previous seed data ──────────────────────────────────────
        deleted = await db.reports.delete_many({"id": {"$regex": f"^{SEED_PREFIX}"}})
        await db.profiles.delete_many({"_id": {"$regex": f"^{SEED_PREFIX}"}})
        print(f"Removed {deleted.deleted_count} existing seed reports.")

        # ─── Insert sample data ───────────────────────────────────────────────
        result = await db.reports.insert_many(build_sample_reports())
        await db.profiles.insert_many(PROFILES)
        print(f"Inserted {len(result.inserted_ids)} reports and {len(PROFILES)} profiles.")

        # ─── Ensure indexes exist ─────────────────────────────────────────────
        await db.reports.create_index([("created_at", -1)])
        await db.reports.create_index([("id", 1)])
        print("Indexes ensured.")

        print("\nSeed complete! Reports by status:")
        pipeline = [{"$group": {"_id": "$status", "count": {"$sum": 1}}}]
        async for doc in db.reports.aggregate(pipeline):
            print(f"  {doc['_id']}: {doc['count']}")

        print("\nNote: the change stream used for live updates requires a replica set.")

    finally:
        client.close()


if __name__ == "__main__":
    asyncio.run(seed())
