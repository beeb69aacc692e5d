"""Another user's shared travel history, as seen by the signed-in user."""

import logging
from datetime import datetime, timezone
from uuid import UUID

from .backend import BackendClient
from .errors import TravelPactError
from .models import ContactRoute, ContactWaypoint
from .store import LoadingChanged, StateStore

logger = logging.getLogger(__name__)

SOURCE = "contact_data"
PRIVATE_HISTORY = "This user's travel history is private"
SHARED_PRIVACY_LEVELS = ["friends", "public"]

_EARLIEST = datetime.min.replace(tzinfo=timezone.utc)


class ContactDataManager:
    def __init__(self, backend: BackendClient, store: StateStore):
        self.backend = backend
        self.store = store
        self.routes: list[ContactRoute] = []
        self.error_message = ""

    async def load_contact_routes(self, user_id: UUID) -> list[ContactRoute]:
        """Load the routes ``user_id`` shares, most recently travelled first.

        Viewing needs an accepted connection to that user, or at least one of
        their routes being public. Otherwise the list comes back empty and
        ``error_message`` says the history is private.
        """
        self.store.publish(LoadingChanged(SOURCE, True))
        self.error_message = ""
        self.routes = []
        try:
            if not await self.can_view(user_id):
                self.error_message = PRIVATE_HISTORY
                self.store.report_error(SOURCE, self.error_message)
                return self.routes

            routes = await self._fetch_routes(user_id)
            self.routes = sorted(routes, key=lambda r: r.latest_arrival or _EARLIEST, reverse=True)
            self.store.set(SOURCE, str(user_id), list(self.routes))
            logger.info("Loaded %d shared routes for %s", len(self.routes), user_id)
        except TravelPactError as e:
            self.error_message = f"Failed to load travel data: {e.message}"
            self.store.report_error(SOURCE, self.error_message)
        finally:
            self.store.publish(LoadingChanged(SOURCE, False))
        return self.routes

    async def can_view(self, user_id: UUID) -> bool:
        session = await self.backend.get_session()
        connected = await (
            self.backend.table("connections")
            .select("connection_type")
            .eq("user_id", session.user_id)
            .eq("connection_user_id", user_id)
            .eq("connection_type", "accepted")
            .limit(1)
            .execute()
        )
        if connected.data:
            return True

        public = await (
            self.backend.table("routes")
            .select("id")
            .eq("user_id", user_id)
            .eq("privacy_level", "public")
            .limit(1)
            .execute()
        )
        return bool(public.data)

    async def _fetch_routes(self, user_id: UUID) -> list[ContactRoute]:
        result = await (
            self.backend.table("routes")
            .select("""
                id,
                name,
                description,
                start_date,
                end_date,
                waypoints!inner(
                    id,
                    name,
                    known_location,
                    arrival_time,
                    departure_time,
                    city,
                    area_code,
                    country,
                    sequence_order
                )
            """)
            .eq("user_id", user_id)
            .in_("privacy_level", SHARED_PRIVACY_LEVELS)
            .order("start_date", ascending=False)
            .execute()
        )

        routes = []
        for row in result.data or []:
            # Stops without a known location cannot be drawn
            waypoints = sorted(
                (ContactWaypoint.model_validate(w) for w in row.get("waypoints") or [] if w.get("known_location")),
                key=lambda w: w.sequence_order,
            )
            if not waypoints:
                continue
            routes.append(ContactRoute.model_validate({**row, "waypoints": waypoints}))
        return routes
