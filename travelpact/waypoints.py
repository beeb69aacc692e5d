"""Waypoints and routes: load, create, edit, delete and split."""

import logging
from typing import Optional
from uuid import UUID, uuid4

from .backend import BackendClient
from .errors import RouteCreationError, TravelPactError
from .geo import Coordinate
from .models import LocationData, Route, Waypoint
from .store import LoadingChanged, StateStore
from .timeutils import format_timestamp, utcnow

logger = logging.getLogger(__name__)

SOURCE = "waypoints"


def renumber_after_deletion(waypoints: list[Waypoint], deleted: Waypoint) -> list[Waypoint]:
    """Drop ``deleted`` and close the gap it leaves in its route's sequence.

    Waypoints of other routes are untouched; relative order is preserved.
    """
    now = utcnow()
    remaining = []
    for wp in waypoints:
        if wp.id == deleted.id:
            continue
        if wp.route_id == deleted.route_id and wp.sequence_order > deleted.sequence_order:
            wp = wp.model_copy(update={"sequence_order": wp.sequence_order - 1, "updated_at": now})
        remaining.append(wp)
    return remaining


class WaypointsManager:
    def __init__(self, backend: BackendClient, store: StateStore):
        self.backend = backend
        self.store = store
        self.waypoints: list[Waypoint] = []
        self.error_message = ""

    def _set_waypoints(self, waypoints: list[Waypoint]) -> None:
        self.waypoints = waypoints
        self.store.set(SOURCE, "waypoints", list(waypoints))

    async def load_waypoints(self) -> list[Waypoint]:
        """Reload the signed-in user's waypoints in sequence order.

        On failure the previous list is kept and the error is published.
        """
        self.store.publish(LoadingChanged(SOURCE, True))
        self.error_message = ""
        try:
            session = await self.backend.get_session()
            result = await (
                self.backend.table("waypoints")
                .select()
                .eq("user_id", session.user_id)
                .order("sequence_order", ascending=True)
                .execute()
            )
            self._set_waypoints([Waypoint.model_validate(row) for row in result.data or []])
            logger.info("Loaded %d waypoints", len(self.waypoints))
        except TravelPactError as e:
            self.error_message = f"Failed to load waypoints: {e.message}"
            self.store.report_error(SOURCE, self.error_message)
        finally:
            self.store.publish(LoadingChanged(SOURCE, False))
        return self.waypoints

    async def create_waypoint(self, name: str, point: Coordinate) -> Waypoint:
        """Append a waypoint at ``point`` to the end of the user's main route."""
        session = await self.backend.get_session()
        route_id = await self._get_or_create_main_route(session.user_id)

        orders = [wp.sequence_order for wp in self.waypoints if wp.route_id == route_id]
        sequence_order = max(orders, default=-1) + 1
        now = utcnow()
        location = LocationData.at(point)

        waypoint = Waypoint(
            id=uuid4(),
            route_id=route_id,
            user_id=session.user_id,
            name=name,
            known_location=location,
            actual_location=location,
            granularity_level="precise",
            sequence_order=sequence_order,
            arrival_time=now,
            created_at=now,
            updated_at=now,
        )
        row = waypoint.to_row(include={
            "id", "route_id", "user_id", "name", "known_location", "actual_location",
            "sequence_order", "arrival_time", "created_at", "updated_at",
        })
        await self.backend.table("waypoints").insert(row).execute()

        self._set_waypoints(sorted(self.waypoints + [waypoint], key=lambda wp: wp.sequence_order))
        logger.info("Created waypoint %s at sequence %d", name, sequence_order)
        return waypoint

    async def update_waypoint(self, waypoint: Waypoint) -> None:
        """Push a renamed / re-noted waypoint, then replace it locally."""
        await (
            self.backend.table("waypoints")
            .update({
                "name": waypoint.name,
                "notes": waypoint.notes,
                "updated_at": format_timestamp(utcnow()),
            })
            .eq("id", waypoint.id)
            .execute()
        )
        self._set_waypoints([waypoint if wp.id == waypoint.id else wp for wp in self.waypoints])

    async def delete_waypoint(self, waypoint: Waypoint) -> None:
        """Delete a waypoint and renumber the later ones in its route."""
        session = await self.backend.get_session()
        await (
            self.backend.table("waypoints")
            .delete()
            .eq("id", waypoint.id)
            .eq("user_id", session.user_id)
            .execute()
        )
        await self._reorder_after_deletion(waypoint)
        self._set_waypoints(renumber_after_deletion(self.waypoints, waypoint))
        logger.info("Deleted waypoint %s", waypoint.name)

        await self.load_waypoints()

    async def _reorder_after_deletion(self, deleted: Waypoint) -> None:
        later = [
            wp for wp in self.waypoints
            if wp.route_id == deleted.route_id and wp.sequence_order > deleted.sequence_order
        ]
        for wp in later:
            try:
                await (
                    self.backend.table("waypoints")
                    .update({
                        "sequence_order": wp.sequence_order - 1,
                        "updated_at": format_timestamp(utcnow()),
                    })
                    .eq("id", wp.id)
                    .execute()
                )
            except TravelPactError as e:
                logger.error("Error reordering waypoint %s: %s", wp.id, e.message)

    async def split_route_at(self, waypoint: Waypoint) -> Optional[UUID]:
        """Cut the route in two at ``waypoint``, which is deleted.

        Waypoints after the cut move to a new route, numbered from 0. If the
        waypoint is the first or last of its route there is nothing to split
        and it is only deleted. Returns the new route's id, if one was made.
        """
        session = await self.backend.get_session()
        same_route = [wp for wp in self.waypoints if wp.route_id == waypoint.route_id]
        before = [wp for wp in same_route if wp.sequence_order < waypoint.sequence_order]
        after = sorted(
            (wp for wp in same_route if wp.sequence_order > waypoint.sequence_order),
            key=lambda wp: wp.sequence_order,
        )

        new_route_id = None
        if before and after:
            new_route_id = await self._create_split_route(session.user_id, waypoint.name)
            moved = {}
            for index, wp in enumerate(after):
                now = utcnow()
                await (
                    self.backend.table("waypoints")
                    .update({
                        "route_id": str(new_route_id),
                        "sequence_order": index,
                        "updated_at": format_timestamp(now),
                    })
                    .eq("id", wp.id)
                    .execute()
                )
                moved[wp.id] = wp.model_copy(update={
                    "route_id": new_route_id, "sequence_order": index, "updated_at": now,
                })
            self._set_waypoints([moved.get(wp.id, wp) for wp in self.waypoints])
            logger.info(
                "Split route at %s: %d waypoints stay, %d move to the new route",
                waypoint.name, len(before), len(after),
            )
        else:
            logger.info("Nothing on one side of %s, only deleting it", waypoint.name)

        await self.delete_waypoint(waypoint)
        return new_route_id

    async def _create_split_route(self, user_id: UUID, split_name: str) -> UUID:
        now = utcnow()
        route = Route(
            id=uuid4(),
            user_id=user_id,
            name="Route - Part 2",
            description=f"Second part of route split at {split_name}",
            status="completed",
            privacy_level="private",
            created_at=now,
            updated_at=now,
        )
        result = await (
            self.backend.table("routes")
            .insert(route.to_row(exclude={"start_date"}), returning=True)
            .select("id")
            .execute()
        )
        if not result.data or "id" not in result.data[0]:
            raise RouteCreationError()
        return UUID(str(result.data[0]["id"]))

    async def _get_or_create_main_route(self, user_id: UUID) -> UUID:
        result = await (
            self.backend.table("routes")
            .select("id")
            .eq("user_id", user_id)
            .order("created_at", ascending=True)
            .limit(1)
            .execute()
        )
        if result.data:
            return UUID(str(result.data[0]["id"]))

        now = utcnow()
        route = Route(
            id=uuid4(),
            user_id=user_id,
            name="My Journey",
            description="Main travel route",
            status="active",
            privacy_level="private",
            created_at=now,
            updated_at=now,
        )
        await self.backend.table("routes").insert(route.to_row(exclude={"start_date"})).execute()
        logger.info("Created main route for user %s", user_id)
        return route.id
