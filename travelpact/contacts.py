"""Match address-book contacts to TravelPact accounts by phone number."""

import logging
import re
from typing import Optional
from uuid import NAMESPACE_URL, UUID, uuid5

from .backend import BackendClient
from .cache import KeyValueCache
from .errors import TravelPactError
from .models import DeviceContact, TravelPactContact
from .store import LoadingChanged, StateStore
from .timeutils import format_timestamp, utcnow

logger = logging.getLogger(__name__)

SOURCE = "contacts"
CACHE_KEY = "CachedTravelPactContacts"


def clean_phone_number(number: str) -> str:
    """Keep digits and '+' only: "(555) 010-9999" -> "5550109999"."""
    return re.sub(r"[^0-9+]", "", number)


def contact_id(identifier: str) -> UUID:
    # Stable across syncs so cached contacts keep their ids
    return uuid5(NAMESPACE_URL, f"contact:{identifier}")


class ContactSyncManager:
    def __init__(self, backend: BackendClient, store: StateStore, cache: KeyValueCache):
        self.backend = backend
        self.store = store
        self.cache = cache
        self.contacts: list[TravelPactContact] = []
        self.error_message = ""

    @property
    def app_users(self) -> list[TravelPactContact]:
        return [c for c in self.contacts if c.has_account]

    def _set_contacts(self, contacts: list[TravelPactContact]) -> None:
        self.contacts = sorted(contacts, key=lambda c: c.display_name.lower())
        self.store.set(SOURCE, "contacts", list(self.contacts))

    def load_cached_contacts(self) -> list[TravelPactContact]:
        cached = self.cache.get(CACHE_KEY) or []
        contacts = []
        for row in cached:
            try:
                contacts.append(TravelPactContact.model_validate(row))
            except ValueError as e:
                logger.warning("Skipping malformed cached contact: %s", e)
        self._set_contacts(contacts)
        return self.contacts

    async def sync_contacts(self, device_contacts: list[DeviceContact]) -> list[TravelPactContact]:
        """Look every contact up in profiles, then save matches as connections.

        A lookup failure for one contact leaves it unmatched; the rest go on.
        """
        self.store.publish(LoadingChanged(SOURCE, True))
        self.error_message = ""
        try:
            session = await self.backend.get_session()
            contacts = []
            for device_contact in device_contacts:
                contact = await self._match(device_contact)
                if contact.user_id == session.user_id:
                    continue
                contacts.append(contact)

            self._set_contacts(contacts)
            self.cache.set(CACHE_KEY, [c.to_row() for c in self.contacts])
            logger.info(
                "Synced %d contacts, %d on TravelPact", len(self.contacts), len(self.app_users)
            )
            await self._save_connections(session.user_id)
        except TravelPactError as e:
            self.error_message = f"Failed to sync contacts: {e.message}"
            self.store.report_error(SOURCE, self.error_message)
        finally:
            self.store.publish(LoadingChanged(SOURCE, False))
        return self.contacts

    async def _match(self, device_contact: DeviceContact) -> TravelPactContact:
        phones = [clean_phone_number(p) for p in device_contact.phone_numbers]
        phones = [p for p in phones if p]
        contact = TravelPactContact(
            id=contact_id(device_contact.identifier),
            name=device_contact.full_name,
            phone_number=phones[0] if phones else None,
            email=device_contact.emails[0] if device_contact.emails else None,
            contact_identifier=device_contact.identifier,
        )

        for phone in phones:
            try:
                profile = await self._find_profile(phone)
            except TravelPactError as e:
                logger.warning("Lookup failed for %s: %s", device_contact.identifier, e.message)
                continue
            if profile is None:
                continue

            user_id = UUID(str(profile["id"]))
            return contact.model_copy(update={
                "name": contact.name or profile.get("name") or "",
                "phone_number": phone,
                "has_account": True,
                "user_id": user_id,
                "photo_url": profile.get("photo_url"),
                "latest_waypoint_id": await self._latest_waypoint_id(user_id),
            })
        return contact

    async def _find_profile(self, phone: str) -> Optional[dict]:
        result = await (
            self.backend.table("profiles")
            .select("id, name, photo_url")
            .eq("phone", phone)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    async def _latest_waypoint_id(self, user_id: UUID) -> Optional[UUID]:
        try:
            result = await (
                self.backend.table("waypoints")
                .select("id, name, known_location, arrival_time")
                .eq("user_id", user_id)
                .order("arrival_time", ascending=False)
                .limit(1)
                .execute()
            )
        except TravelPactError as e:
            logger.warning("Could not fetch latest waypoint for %s: %s", user_id, e.message)
            return None
        return UUID(str(result.data[0]["id"])) if result.data else None

    async def _save_connections(self, user_id: UUID) -> None:
        if not self.app_users:
            return
        now = format_timestamp(utcnow())
        rows = [
            {
                "user_id": str(user_id),
                "connection_user_id": str(c.user_id),
                "name": c.display_name,
                "has_account": True,
                "location_source": "actual",
                "connection_type": "accepted",
                "created_at": now,
                "updated_at": now,
            }
            for c in self.app_users
        ]
        await (
            self.backend.table("connections")
            .upsert(rows, on_conflict="user_id,connection_user_id")
            .execute()
        )
