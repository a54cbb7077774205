"""
geocoder.py — Free-text address → coordinates via a Nominatim-compatible API.

Used only by LocationResolver, which is responsible for caching, queueing
and the one-request-in-flight rule. This module is a thin async wrapper that
turns every failure mode into a GeocodeError:

  - HTTP error status            → GeocodeError("http 503")
  - network error / timeout      → GeocodeError("ConnectTimeout: ...")
  - empty result list            → GeocodeError("no result")
  - result without usable lat/lon → GeocodeError("malformed result")

To swap to a different provider (Photon, Mapbox, Google):
  1. Implement the same `lookup()` coroutine
  2. Pass the instance to DashboardSession / LocationResolver
"""

import logging
from typing import Protocol

import httpx

from fieldmap.core.errors import GeocodeError
from fieldmap.models.report import Coordinates, coerce_location

logger = logging.getLogger(__name__)


class Geocoder(Protocol):
    async def lookup(self, address: str) -> Coordinates:
        """Resolve one address or raise GeocodeError."""
        ...


class NominatimGeocoder:
    """
    Async client for the OpenStreetMap Nominatim search endpoint.

    A single httpx.AsyncClient is reused for the geocoder's lifetime (one per
    dashboard session); call `aclose()` on teardown.
    """

    def __init__(
        self,
        base_url: str,
        user_agent: str,
        timeout: float = 8.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"Accept": "application/json", "User-Agent": user_agent},
        )

    async def lookup(self, address: str) -> Coordinates:
        try:
            response = await self._client.get(
                f"{self.base_url}/search",
                params={"format": "json", "q": address, "addressdetails": 0, "limit": 1},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            raise GeocodeError(address, f"http {exc.response.status_code}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise GeocodeError(address, f"{type(exc).__name__}: {exc}") from exc

        if not isinstance(data, list) or not data:
            raise GeocodeError(address, "no result")

        first = data[0] if isinstance(data[0], dict) else {}
        pair = coerce_location({"lat": first.get("lat"), "lng": first.get("lon")})
        if pair is None:
            raise GeocodeError(address, "malformed result")

        logger.debug("Geocoded %r → %s", address, pair)
        return Coordinates(lat=pair[0], lng=pair[1])

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
