"""
database.py — The process-wide Motor handle for the upstream reports store.

Opened once in the app lifespan and shared by REST handlers and every
dashboard session. When the ping fails at startup the handle stays empty:
`get_db()` yields None, list endpoints serve the warm-start snapshot, and
sessions run without a change feed until the process is restarted.
"""

import logging
import re
from typing import Optional

import certifi
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from fieldmap.core.config import settings

logger = logging.getLogger(__name__)

SERVER_SELECTION_TIMEOUT_MS = 5000


class MongoState:
    """Mutable holder so tests can swap `.client` and `.db` in place."""

    client: Optional[AsyncIOMotorClient] = None
    db: Optional[AsyncIOMotorDatabase] = None

    @property
    def connected(self) -> bool:
        return self.db is not None

    def reset(self) -> None:
        self.client = None
        self.db = None


db_client = MongoState()


async def connect_to_mongo(uri: Optional[str] = None, db_name: Optional[str] = None) -> None:
    uri = uri or settings.mongo_uri
    db_name = db_name or settings.mongo_db_name
    logger.info("Opening MongoDB handle for %s (db: %s)", _mask_credentials(uri), db_name)

    client = AsyncIOMotorClient(
        uri,
        serverSelectionTimeoutMS=SERVER_SELECTION_TIMEOUT_MS,
        tlsCAFile=certifi.where(),
    )
    try:
        await client.admin.command("ping")
    except Exception as exc:
        logger.warning("MongoDB ping failed, serving warm-start data only: %s", exc)
        client.close()
        db_client.reset()
        return

    db_client.client = client
    db_client.db = client[db_name]
    logger.info("MongoDB ready")


async def close_mongo_connection() -> None:
    if db_client.client is not None:
        db_client.client.close()
        logger.info("MongoDB handle closed")
    db_client.reset()


def get_db() -> Optional[AsyncIOMotorDatabase]:
    """FastAPI dependency. None while the store is unreachable."""
    return db_client.db


def _mask_credentials(uri: str) -> str:
    return re.sub(r"://[^:/@]+:[^@]+@", "://***@", uri)
