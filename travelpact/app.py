"""Wires the backend client, state store and managers together."""

import logging
from typing import Optional

import httpx

from . import config
from .auth import AuthManager
from .backend import BackendClient
from .cache import KeyValueCache
from .connections import ConnectionsManager
from .contact_data import ContactDataManager
from .contacts import ContactSyncManager
from .errors import ConfigurationError
from .geocode import CachingGeocoder, NominatimGeocoder, ReverseGeocoder
from .location import LocationManager
from .media import MediaManager
from .pacts import PactManager
from .photos import PhotoAnalysisService
from .store import StateStore
from .waypoints import WaypointsManager

logger = logging.getLogger(__name__)


class TravelPactApp:
    """Owns one instance of every manager; construct once per process.

    Nothing here is global: tests build an app around a fake transport and
    get fully isolated managers.
    """

    def __init__(
        self,
        backend: BackendClient,
        cache: KeyValueCache,
        geocoder: Optional[ReverseGeocoder] = None,
        store: Optional[StateStore] = None,
    ):
        self.backend = backend
        self.cache = cache
        self.store = store or StateStore()
        self._geocoder = geocoder or NominatimGeocoder()

        self.auth = AuthManager(backend, self.store)
        self.location = LocationManager(backend, self.store, cache, config.location_accuracy)
        self.waypoints = WaypointsManager(backend, self.store)
        self.connections = ConnectionsManager(backend, self.store)
        self.pacts = PactManager(backend, self.store)
        self.contacts = ContactSyncManager(backend, self.store, cache)
        self.contact_data = ContactDataManager(backend, self.store)
        self.media = MediaManager(backend)
        self.photos = PhotoAnalysisService(
            backend,
            self.store,
            CachingGeocoder(self._geocoder),
            self.media,
            config.granularity,
            cache=cache,
        )

    @classmethod
    def from_config(cls, transport: Optional[httpx.AsyncBaseTransport] = None) -> "TravelPactApp":
        """Build an app from the current config values.

        Raises:
            ConfigurationError: If the backend URL is malformed or no API key is set.
        """
        if not config.supabase_key:
            raise ConfigurationError("No backend API key set (TRAVELPACT_SUPABASE_KEY)")
        backend = BackendClient(
            config.supabase_url,
            config.supabase_key,
            access_token=config.access_token,
            transport=transport,
        )
        logger.debug("Backend at %s", backend.url)
        return cls(backend, KeyValueCache(config.cache_path))

    async def __aenter__(self) -> "TravelPactApp":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.pacts.unsubscribe()
        if isinstance(self._geocoder, NominatimGeocoder):
            await self._geocoder.aclose()
        await self.backend.aclose()

    async def refresh(self) -> bool:
        """Check the session and, when signed in, load everything the user sees."""
        await self.auth.check_auth_status()
        if not self.auth.is_authenticated:
            return False
        await self.waypoints.load_waypoints()
        await self.connections.load_connections()
        await self.pacts.load_my_pacts()
        await self.pacts.load_invitations()
        self.contacts.load_cached_contacts()
        self.photos.load_pending_waypoints()
        return True
