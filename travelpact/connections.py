"""The user's connections: people placed on the map, with or without accounts."""

import logging
from typing import Optional
from uuid import UUID, uuid4

from .backend import BackendClient
from .errors import ConnectionExistsError, TravelPactError
from .geo import Coordinate
from .models import Connection, LocationData, UserProfile
from .store import LoadingChanged, StateStore
from .timeutils import format_timestamp, utcnow

logger = logging.getLogger(__name__)

SOURCE = "connections"


class ConnectionsManager:
    def __init__(self, backend: BackendClient, store: StateStore):
        self.backend = backend
        self.store = store
        self.connections: list[Connection] = []
        self.error_message = ""

    @property
    def visible_connections(self) -> list[Connection]:
        return [c for c in self.connections if c.connection_type != "blocked"]

    def _set_connections(self, connections: list[Connection]) -> None:
        self.connections = connections
        self.store.set(SOURCE, "connections", list(connections))

    async def load_connections(self) -> list[Connection]:
        self.store.publish(LoadingChanged(SOURCE, True))
        self.error_message = ""
        try:
            session = await self.backend.get_session()
            result = await (
                self.backend.table("connections")
                .select()
                .eq("user_id", session.user_id)
                .order("name", ascending=True)
                .execute()
            )
            self._set_connections([Connection.model_validate(row) for row in result.data or []])
            logger.info("Loaded %d connections", len(self.connections))
        except TravelPactError as e:
            self.error_message = f"Failed to load connections: {e.message}"
            self.store.report_error(SOURCE, self.error_message)
        finally:
            self.store.publish(LoadingChanged(SOURCE, False))
        return self.connections

    async def add_connection(
        self,
        name: str,
        location: Optional[Coordinate] = None,
        location_name: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Connection:
        """Add someone without an account, optionally pinned to a location."""
        session = await self.backend.get_session()
        now = utcnow()
        connection = Connection(
            id=uuid4(),
            user_id=session.user_id,
            name=name,
            assigned_location=LocationData.at(location, location_name) if location else None,
            assigned_location_name=location_name,
            location_source="assigned" if location else None,
            has_account=False,
            connection_type="accepted",
            notes=notes,
            created_at=now,
            updated_at=now,
        )
        await self.backend.table("connections").insert(connection.to_row()).execute()
        self._set_connections(sorted(self.connections + [connection], key=lambda c: c.name))
        return connection

    async def update_connection_location(
        self, connection: Connection, location: Coordinate, location_name: str
    ) -> Connection:
        session = await self.backend.get_session()
        now = utcnow()
        assigned = LocationData.at(location, location_name)
        await (
            self.backend.table("connections")
            .update({
                "assigned_location": assigned.to_row(),
                "assigned_location_name": location_name,
                "location_source": "assigned",
                "updated_at": format_timestamp(now),
            })
            .eq("id", connection.id)
            .eq("user_id", session.user_id)
            .execute()
        )
        updated = connection.model_copy(update={
            "assigned_location": assigned,
            "assigned_location_name": location_name,
            "location_source": "assigned",
            "updated_at": now,
        })
        self._set_connections([updated if c.id == connection.id else c for c in self.connections])
        return updated

    async def delete_connection(self, connection: Connection) -> None:
        session = await self.backend.get_session()
        await (
            self.backend.table("connections")
            .delete()
            .eq("id", connection.id)
            .eq("user_id", session.user_id)
            .execute()
        )
        self._set_connections([c for c in self.connections if c.id != connection.id])

    async def search_app_users(self, query: str) -> list[UserProfile]:
        """Profiles whose name contains ``query``, case-insensitively; at most 10."""
        query = query.strip()
        if not query:
            return []
        result = await (
            self.backend.table("profiles")
            .select("id, phone, name, photo_url")
            .ilike("name", f"%{query}%")
            .limit(10)
            .execute()
        )
        return [UserProfile.model_validate(row) for row in result.data or []]

    async def connect_with_app_user(self, profile: UserProfile) -> Connection:
        """Connect to another account holder; each pair may be connected once."""
        session = await self.backend.get_session()
        existing = await (
            self.backend.table("connections")
            .select("id")
            .eq("user_id", session.user_id)
            .eq("connection_user_id", profile.id)
            .execute()
        )
        if existing.data:
            raise ConnectionExistsError()

        now = utcnow()
        connection = Connection(
            id=uuid4(),
            user_id=session.user_id,
            connection_user_id=profile.id,
            name=profile.name,
            actual_known_location=profile.location,
            location_source="actual",
            has_account=True,
            connection_type="accepted",
            created_at=now,
            updated_at=now,
        )
        await self.backend.table("connections").insert(connection.to_row()).execute()
        self._set_connections(sorted(self.connections + [connection], key=lambda c: c.name))
        logger.info("Connected with %s", profile.name)
        return connection

    def get(self, connection_id: UUID) -> Optional[Connection]:
        return next((c for c in self.connections if c.id == connection_id), None)
