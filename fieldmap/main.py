"""
FieldMap Sync API — Application entry point.

Bootstraps FastAPI, wires up middleware, registers route groups,
and manages the MongoDB connection lifecycle.

Each dashboard is one WebSocket session (routes/map.py) with its own
report store, geocode queue and marker controller. The only app-scoped
engine state is the warm-start snapshot on `app.state.warm_snapshot`.

Run locally:
  uvicorn fieldmap.main:app --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from fieldmap.core import database
from fieldmap.core.config import settings
from fieldmap.core.rate_limit import limiter
from fieldmap.routes.health import router as health_router
from fieldmap.routes.map import router as map_router
from fieldmap.routes.reports import router as reports_router
from fieldmap.services.realtime_bridge import WarmStartSnapshot

# ─── Logging ───────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


# ─── Lifespan ──────────────────────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open MongoDB on startup, close it on shutdown."""
    logger.info("Starting FieldMap Sync API (env: %s)", settings.environment)
    # Module reference so tests can patch the lifecycle functions
    await database.connect_to_mongo()
    yield
    logger.info("Shutting down FieldMap Sync API")
    await database.close_mongo_connection()


# ─── App ───────────────────────────────────────────────────────────────────────
app = FastAPI(
    title="FieldMap Sync API",
    description=(
        "Live map backend for the field operations dashboard: report feed, "
        "geocoding of missing locations, clustering and marker sync."
    ),
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.environment != "production" else None,
    redoc_url="/redoc" if settings.environment != "production" else None,
)

# Last-known reports for instant paint; shared by every session
app.state.warm_snapshot = WarmStartSnapshot(capacity=settings.warm_snapshot_size)


# ─── Rate limiting ─────────────────────────────────────────────────────────────
# Routes opt in with @limiter.limit("N/minute") + request: Request parameter.
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ─── Middleware ─────────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── Routes ────────────────────────────────────────────────────────────────────
app.include_router(health_router, prefix="/health", tags=["health"])
app.include_router(reports_router)
app.include_router(map_router)


@app.get("/", tags=["root"])
async def root():
    """API root — basic metadata."""
    return {
        "name": "FieldMap Sync API",
        "version": "0.1.0",
        "status": "running",
        "environment": settings.environment,
        "docs": "/docs",
    }
