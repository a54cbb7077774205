"""
Failure taxonomy for the sync engine.

None of these are meant to reach the operator as a crash: every boundary
catches them and converts them into a fallback (snapshot, anchor, retry on
next trigger, connectivity indicator). Routes translate the few that can
surface over HTTP into HTTPException.
"""


class FieldMapError(Exception):
    """Base class for all engine errors."""


class DataFetchError(FieldMapError):
    """Bulk/initial report load failed or the database is unavailable."""


class GeocodeError(FieldMapError):
    """A single address lookup failed, timed out or returned nothing usable."""

    def __init__(self, address: str, reason: str):
        super().__init__(f"geocode failed for {address!r}: {reason}")
        self.address = address
        self.reason = reason


class RenderSyncError(FieldMapError):
    """The viewport is not ready or rejected a render handle."""


class SubscriptionError(FieldMapError):
    """The change feed disconnected or could not be opened."""
