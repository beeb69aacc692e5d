"""Global configuration and defaults for the TravelPact data core."""

import os
from enum import Enum
from pathlib import Path
from urllib.parse import urlparse

from .errors import ConfigurationError


class LocationAccuracy(Enum):
    """How precisely the known location is shared with others."""
    CITY = "city"
    REGION = "region"
    COUNTRY = "country"

    @property
    def coordinate_step(self) -> float:
        """Rounding step in degrees (~1 km, ~10 km, ~100 km)."""
        return {
            LocationAccuracy.CITY: 0.01,
            LocationAccuracy.REGION: 0.1,
            LocationAccuracy.COUNTRY: 1.0,
        }[self]


class Granularity(Enum):
    """Place granularity used to group photos into waypoints."""
    PRECISE = "precise"
    AREA_CODE = "area_code"
    CITY = "city"
    REGION = "region"
    COUNTRY = "country"


# Backend
supabase_url: str = os.environ.get("TRAVELPACT_SUPABASE_URL", "http://localhost:54321")
supabase_key: str = os.environ.get("TRAVELPACT_SUPABASE_KEY", "")
access_token: str = os.environ.get("TRAVELPACT_ACCESS_TOKEN", "")
request_timeout: float = 30.0

# Storage buckets
MEDIA_BUCKET: str = "waypoint-media"
THUMBNAIL_BUCKET: str = "waypoint-thumbnails"
signed_url_expiry: int = 3600
thumbnail_max_size: int = 400
thumbnail_quality: int = 80

# Travel detection
TRAVEL_THRESHOLD_KM: float = 100.0
SUGGESTION_BUFFER_KM: float = 10.0
location_accuracy: LocationAccuracy = LocationAccuracy.CITY

# Photo analysis
granularity: Granularity = Granularity.CITY
geocode_delay: float = 0.2
geocode_max_retries: int = 3
geocode_retry_delay: float = 2.0
geocode_cache_precision: int = 3
nominatim_url: str = "https://nominatim.openstreetmap.org/reverse"
nominatim_user_agent: str = "travelpact/0.1.0 (reverse-geocode)"
max_uploads_per_waypoint: int = 5

# Change feed
change_feed_interval: float = 5.0

# Local key-value cache
cache_path: Path = Path.home() / ".travelpact" / "cache.json"


def validate_backend_url(url: str) -> str:
    """Return the URL without a trailing slash or raise ConfigurationError.

    A malformed backend URL is fatal: nothing else can run without it.
    """
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigurationError(f"Invalid backend URL: {url!r}")
    return url.rstrip("/")
