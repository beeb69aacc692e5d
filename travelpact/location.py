"""Known vs. actual location, and the "you may have traveled" suggestion.

The actual location is the device's continuous fix and never leaves this
process. The known location is coarse, confirmed by the user, cached locally
and synced (obfuscated) to the user's profile.
"""

import logging
from datetime import datetime
from typing import Optional

from . import config
from .backend import BackendClient
from .cache import KeyValueCache
from .config import LocationAccuracy
from .errors import TravelPactError
from .geo import Coordinate, GeofenceCircle, haversine_km, obfuscate, should_suggest_travel
from .geocode import Placemark, describe_place
from .models import LocationData
from .store import StateStore, TravelSuggested
from .timeutils import format_timestamp, parse_optional_timestamp, utcnow

logger = logging.getLogger(__name__)

SOURCE = "location"
KNOWN_LOCATION_KEY = "TravelPact.KnownLocation"


class LocationManager:
    def __init__(
        self,
        backend: BackendClient,
        store: StateStore,
        cache: KeyValueCache,
        accuracy: LocationAccuracy = config.location_accuracy,
    ):
        self.backend = backend
        self.store = store
        self.cache = cache
        self.accuracy = accuracy

        self.actual_location: Optional[Coordinate] = None
        self.known_location: Optional[Coordinate] = None
        self.known_location_name = ""
        self.last_known_update: Optional[datetime] = None
        self.show_travel_suggestion = False
        self.travel_distance_km = 0.0
        # Where the last suggestion fired or was dismissed; no repeat inside it
        self.suppression: Optional[GeofenceCircle] = None

        self._load_stored_known_location()

    def _load_stored_known_location(self) -> None:
        stored = self.cache.get(KNOWN_LOCATION_KEY)
        if not stored:
            return
        try:
            self.known_location = Coordinate(float(stored["latitude"]), float(stored["longitude"]))
        except (KeyError, TypeError, ValueError):
            logger.warning("Ignoring malformed cached known location")
            return
        self.known_location_name = stored.get("name", "")
        if stored.get("accuracy") in {a.value for a in LocationAccuracy}:
            self.accuracy = LocationAccuracy(stored["accuracy"])
        self.last_known_update = parse_optional_timestamp(stored.get("updated_at"))

    def _save_known_location(self) -> None:
        if self.known_location is None:
            return
        self.cache.set(KNOWN_LOCATION_KEY, {
            "latitude": self.known_location.latitude,
            "longitude": self.known_location.longitude,
            "name": self.known_location_name,
            "accuracy": self.accuracy.value,
            "updated_at": format_timestamp(self.last_known_update or utcnow()),
        })

    # Travel detection

    def update_actual_location(self, point: Coordinate) -> bool:
        """Record a new device fix; returns True if a suggestion fired."""
        self.actual_location = point
        return self.check_for_travel()

    def check_for_travel(self) -> bool:
        actual, known = self.actual_location, self.known_location
        if actual is None or known is None or self.show_travel_suggestion:
            return False

        self.travel_distance_km = haversine_km(actual, known)
        last = self.suppression.center if self.suppression else None
        if not should_suggest_travel(actual, known, last):
            return False

        self.show_travel_suggestion = True
        self.suppression = GeofenceCircle(actual, config.SUGGESTION_BUFFER_KM)
        self.store.publish(TravelSuggested(self.travel_distance_km, actual.latitude, actual.longitude))
        logger.info("Suggesting a known-location update, %.1f km from known", self.travel_distance_km)
        return True

    def dismiss_suggestion(self) -> None:
        """Hide the suggestion until the device leaves the area around the current fix."""
        self.show_travel_suggestion = False
        if self.actual_location is not None:
            self.suppression = GeofenceCircle(self.actual_location, config.SUGGESTION_BUFFER_KM)
        self.store.set(SOURCE, "show_travel_suggestion", False)

    async def accept_suggestion(self, name: str) -> None:
        """Make the current device fix the new known location."""
        if self.actual_location is None:
            raise TravelPactError("Current location is not available")
        await self.update_known_location(self.actual_location, name)

    async def update_known_location(self, point: Coordinate, name: str) -> None:
        """Replace the known location locally, then sync it to the profile.

        The local copy is kept even if the sync fails.
        """
        self.known_location = point
        self.known_location_name = name
        self.last_known_update = utcnow()
        self.show_travel_suggestion = False
        if self.actual_location is not None:
            self.suppression = GeofenceCircle(self.actual_location, config.SUGGESTION_BUFFER_KM)

        self._save_known_location()
        self.store.set(SOURCE, "known_location", LocationData.at(point, name))
        self.store.set(SOURCE, "show_travel_suggestion", False)

        try:
            await self.sync_known_location()
        except TravelPactError as e:
            self.store.report_error(SOURCE, f"Failed to sync known location: {e.message}")

    def obfuscate(self, point: Coordinate) -> Coordinate:
        return obfuscate(point, self.accuracy.coordinate_step)

    def describe(self, placemark: Optional[Placemark]) -> str:
        return describe_place(placemark, self.accuracy)

    async def sync_known_location(self) -> None:
        if self.known_location is None:
            return
        session = await self.backend.get_session()
        now = format_timestamp(utcnow())
        coarse = self.obfuscate(self.known_location)
        update = {
            "known_location": LocationData.at(coarse, self.known_location_name).to_row(),
            "known_location_name": self.known_location_name,
            "location_accuracy": self.accuracy.value,
            "location_updated_at": now,
            "updated_at": now,
        }
        await self.backend.table("profiles").update(update).eq("id", session.user_id).execute()
        logger.info("Known location synced to database")
