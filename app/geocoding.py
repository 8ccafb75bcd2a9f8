"""
Optional address geocoding. The service works without coordinates; a failed
lookup just leaves the request without a location.
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from app import config
from app.models import GeoPoint

logger = logging.getLogger(__name__)


class Geocoder(Protocol):
    async def geocode(self, text: str) -> GeoPoint | None: ...


class NominatimGeocoder:
    """Resolve free text through the OpenStreetMap search API."""

    def __init__(
        self,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 5.0,
    ) -> None:
        self.base_url = base_url or config.GEOCODER_URL
        self._client = client
        self.timeout = timeout

    async def geocode(self, text: str) -> GeoPoint | None:
        if not text:
            return None
        params = {"format": "jsonv2", "q": text, "limit": 1}
        headers = {"User-Agent": config.GEOCODER_USER_AGENT}
        try:
            if self._client is not None:
                response = await self._client.get(
                    self.base_url, params=params, headers=headers
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(
                        self.base_url, params=params, headers=headers
                    )
            response.raise_for_status()
            hits = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Geocoding failed for %r: %s", text, e)
            return None

        if not isinstance(hits, list) or not hits:
            return None
        try:
            return GeoPoint(lat=float(hits[0]["lat"]), lng=float(hits[0]["lon"]))
        except (KeyError, TypeError, ValueError):
            logger.warning("Geocoder returned unusable coordinates for %r", text)
            return None
