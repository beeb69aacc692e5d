"""Reverse geocoding (coordinate -> place names) with caching and rate limiting.

Public reverse-geocoding services are rate-limited; Nominatim in particular
asks for at most one request per second and a descriptive User-Agent.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from . import config
from .config import Granularity, LocationAccuracy
from .geo import Coordinate

logger = logging.getLogger(__name__)

UNKNOWN_LOCATION = "Unknown Location"


@dataclass(frozen=True)
class Placemark:
    latitude: float
    longitude: float
    locality: Optional[str] = None
    administrative_area: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None


class RateLimitedError(Exception):
    """The geocoding service asked us to slow down."""


class ReverseGeocoder(Protocol):
    async def reverse(self, point: Coordinate) -> Optional[Placemark]:
        ...


class NominatimGeocoder:
    """Reverse geocoder backed by OpenStreetMap Nominatim."""

    def __init__(
        self,
        base_url: str = config.nominatim_url,
        user_agent: str = config.nominatim_user_agent,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url
        self._http = httpx.AsyncClient(
            timeout=config.request_timeout,
            transport=transport,
            headers={"User-Agent": user_agent, "Accept": "application/json"},
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def reverse(self, point: Coordinate) -> Optional[Placemark]:
        response = await self._http.get(
            self._base_url,
            params={
                "format": "jsonv2",
                "lat": f"{point.latitude:.8f}",
                "lon": f"{point.longitude:.8f}",
                "zoom": "18",
                "addressdetails": "1",
                "accept-language": "en",
            },
        )
        if response.status_code == 429:
            raise RateLimitedError("Nominatim rate limit hit")
        response.raise_for_status()

        address = response.json().get("address")
        if not address:
            return None
        return Placemark(
            latitude=point.latitude,
            longitude=point.longitude,
            locality=address.get("city") or address.get("town") or address.get("village") or address.get("hamlet"),
            administrative_area=address.get("state") or address.get("region"),
            country=address.get("country"),
            postal_code=address.get("postcode"),
        )


def cache_key(point: Coordinate, precision: int = config.geocode_cache_precision) -> str:
    """Round a coordinate into a cache key (3 decimals is about 100 m)."""
    return f"{round(point.latitude, precision)},{round(point.longitude, precision)}"


class CachingGeocoder:
    """Wraps a geocoder with an in-memory cache, request spacing and retries.

    Returns None when the service has no answer or every attempt failed.
    """

    def __init__(
        self,
        geocoder: ReverseGeocoder,
        delay: float = config.geocode_delay,
        max_retries: int = config.geocode_max_retries,
        retry_delay: float = config.geocode_retry_delay,
    ):
        self._geocoder = geocoder
        self._delay = delay
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._cache: dict[str, Placemark] = {}
        self._last_request_at = 0.0
        self.failures = 0

    def cached(self, point: Coordinate) -> Optional[Placemark]:
        return self._cache.get(cache_key(point))

    def clear(self) -> None:
        self._cache.clear()

    async def reverse(self, point: Coordinate) -> Optional[Placemark]:
        if (hit := self.cached(point)) is not None:
            return hit

        for attempt in range(1, self._max_retries + 1):
            await self._wait_turn()
            try:
                placemark = await self._geocoder.reverse(point)
            except RateLimitedError:
                logger.warning("Geocoding rate limit hit, attempt %d/%d", attempt, self._max_retries)
                if attempt < self._max_retries:
                    await asyncio.sleep(self._retry_delay * attempt)
                continue
            except (httpx.HTTPError, ValueError) as e:
                # ValueError: a 200 whose body is not JSON (throttle or error page)
                logger.warning("Geocoding failed for %s: %s", cache_key(point), e)
                if attempt < self._max_retries:
                    await asyncio.sleep(self._retry_delay)
                continue

            if placemark is not None:
                self._cache[cache_key(point)] = placemark
            return placemark

        self.failures += 1
        return None

    async def _wait_turn(self) -> None:
        wait = self._delay - (time.monotonic() - self._last_request_at)
        if wait > 0:
            await asyncio.sleep(wait)
        self._last_request_at = time.monotonic()


def place_key(placemark: Placemark, granularity: Granularity) -> str:
    """The name photos are grouped under at the given granularity."""
    if granularity == Granularity.PRECISE:
        return f"{placemark.latitude},{placemark.longitude}"
    if granularity == Granularity.AREA_CODE:
        return placemark.postal_code or placemark.locality or placemark.country or "Unknown"
    if granularity == Granularity.CITY:
        return placemark.locality or placemark.administrative_area or placemark.country or "Unknown"
    if granularity == Granularity.REGION:
        return placemark.administrative_area or placemark.country or "Unknown"
    return placemark.country or "Unknown"


def fallback_key(point: Coordinate) -> str:
    """Key used when geocoding gave up: the coordinate to about 1 km."""
    return f"{round(point.latitude, 2)},{round(point.longitude, 2)}"


def describe_place(placemark: Optional[Placemark], accuracy: LocationAccuracy) -> str:
    """Human-readable known-location name at the user's sharing accuracy."""
    if placemark is None:
        return UNKNOWN_LOCATION
    if accuracy == LocationAccuracy.CITY:
        parts = [placemark.locality, placemark.country]
    elif accuracy == LocationAccuracy.REGION:
        parts = [placemark.administrative_area, placemark.country]
    else:
        parts = [placemark.country]
    parts = [p for p in parts if p]
    return ", ".join(parts) if parts else UNKNOWN_LOCATION
