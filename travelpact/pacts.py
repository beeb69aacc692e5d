"""Travel pacts: shared trips between users, their members and invitations."""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from .backend import BackendClient, Change, ChangeFeed
from .errors import InvalidTransitionError, TravelPactError
from .geo import Coordinate
from .models import (
    LocationData,
    PactInvitation,
    PactLocationUpdate,
    PactMember,
    PactMemberStatus,
    PactType,
    PactWithMembers,
    TravelPact,
    TravelPactContact,
)
from .store import LoadingChanged, StateStore
from .timeutils import format_timestamp, utcnow

logger = logging.getLogger(__name__)

SOURCE = "pacts"


def check_transition(current: PactMemberStatus, target: PactMemberStatus) -> None:
    if not current.can_become(target):
        raise InvalidTransitionError(
            f"Cannot change pact membership from {current.value} to {target.value}"
        )


class PactManager:
    def __init__(self, backend: BackendClient, store: StateStore):
        self.backend = backend
        self.store = store
        self.my_pacts: list[PactWithMembers] = []
        self.pending_invitations: list[PactInvitation] = []
        self.error_message = ""
        self._feed: Optional[ChangeFeed] = None
        self._reloads: set[asyncio.Task] = set()

    @property
    def active_live_pacts(self) -> list[PactWithMembers]:
        return [p for p in self.my_pacts if p.pact.is_live]

    # Creating and ending

    async def create_pact(
        self,
        name: str,
        pact_type: PactType,
        contacts: list[TravelPactContact],
        description: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        route_id: Optional[UUID] = None,
    ) -> TravelPact:
        """Create a pact with the current user as accepted creator and invite ``contacts``.

        Contacts with an account are invited by user id, the rest by phone.
        """
        session = await self.backend.get_session()
        now = utcnow()
        draft = TravelPact(
            id=uuid4(),
            creator_id=session.user_id,
            name=name,
            description=description,
            pact_type=pact_type,
            route_id=route_id,
            start_date=start_date or now,
            end_date=end_date,
            privacy_level="pact_members",
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        result = await (
            self.backend.table("pacts")
            .insert(draft.to_row(exclude_none=True), returning=True)
            .single()
            .execute()
        )
        pact = TravelPact.model_validate(result.data) if result.data else draft

        creator_name = await self._own_name(session.user_id)
        members = [PactMember(
            id=uuid4(),
            pact_id=pact.id,
            user_id=session.user_id,
            name=creator_name,
            role="creator",
            status=PactMemberStatus.ACCEPTED,
            joined_at=now,
            invited_at=now,
            invited_by=session.user_id,
        )]
        for contact in contacts:
            members.append(PactMember(
                id=uuid4(),
                pact_id=pact.id,
                user_id=contact.user_id if contact.has_account else None,
                phone_number=None if contact.has_account else contact.phone_number,
                name=contact.display_name,
                role="member",
                status=PactMemberStatus.PENDING,
                invited_at=now,
                invited_by=session.user_id,
            ))
            if not contact.has_account and contact.phone_number:
                # No account yet: the invite goes out by text message
                logger.info("Would send SMS invite for pact %s to %s", name, contact.phone_number)

        await (
            self.backend.table("pact_members")
            .insert([m.to_row(exclude_none=True) for m in members])
            .execute()
        )
        logger.info("Created %s pact %s with %d invitees", pact_type.value, name, len(contacts))

        await self.load_my_pacts()
        return pact

    async def _own_name(self, user_id: UUID) -> str:
        result = await self.backend.table("profiles").select("name").eq("id", user_id).execute()
        if result.data:
            return result.data[0].get("name") or "Me"
        return "Me"

    async def end_pact(self, pact: TravelPact) -> None:
        now = format_timestamp(utcnow())
        await (
            self.backend.table("pacts")
            .update({"is_active": False, "end_date": now, "updated_at": now})
            .eq("id", pact.id)
            .execute()
        )
        await self.load_my_pacts()

    # Membership

    async def accept_invitation(self, invitation: PactInvitation) -> None:
        await self._respond(invitation, PactMemberStatus.ACCEPTED)

    async def decline_invitation(self, invitation: PactInvitation) -> None:
        await self._respond(invitation, PactMemberStatus.DECLINED)

    async def _respond(self, invitation: PactInvitation, target: PactMemberStatus) -> None:
        check_transition(invitation.status, target)
        session = await self.backend.get_session()
        values = {"status": target.value}
        if target == PactMemberStatus.ACCEPTED:
            values["joined_at"] = format_timestamp(utcnow())
        await (
            self.backend.table("pact_members")
            .update(values)
            .eq("id", invitation.id)
            .eq("user_id", session.user_id)
            .execute()
        )
        self.pending_invitations = [i for i in self.pending_invitations if i.id != invitation.id]
        self.store.set(SOURCE, "pending_invitations", list(self.pending_invitations))
        logger.info("Invitation to %s %s", invitation.pact.name, target.value)

        if target == PactMemberStatus.ACCEPTED:
            await self.load_my_pacts()

    async def leave_pact(self, pact: PactWithMembers) -> None:
        session = await self.backend.get_session()
        mine = next((m for m in pact.members if m.user_id == session.user_id), None)
        if mine is None:
            raise InvalidTransitionError(f"You are not a member of {pact.pact.name}")
        check_transition(mine.status, PactMemberStatus.LEFT)

        await (
            self.backend.table("pact_members")
            .update({"status": PactMemberStatus.LEFT.value})
            .eq("pact_id", pact.id)
            .eq("user_id", session.user_id)
            .execute()
        )
        await self.load_my_pacts()

    # Loading

    async def load_my_pacts(self) -> list[PactWithMembers]:
        """Pacts the user has accepted or been invited to, with all their members."""
        self.store.publish(LoadingChanged(SOURCE, True))
        self.error_message = ""
        try:
            session = await self.backend.get_session()
            result = await (
                self.backend.table("pact_members")
                .select("""
                    pact_id,
                    status,
                    pacts!inner(*)
                """)
                .eq("user_id", session.user_id)
                .in_("status", [PactMemberStatus.ACCEPTED, PactMemberStatus.PENDING])
                .execute()
            )
            pacts = {}
            for row in result.data or []:
                pact = TravelPact.model_validate(row["pacts"])
                pacts[pact.id] = pact

            members = defaultdict(list)
            if pacts:
                result = await (
                    self.backend.table("pact_members")
                    .select()
                    .in_("pact_id", pacts.keys())
                    .execute()
                )
                for row in result.data or []:
                    member = PactMember.model_validate(row)
                    members[member.pact_id].append(member)

            self.my_pacts = sorted(
                (PactWithMembers(pact=p, members=members[p.id]) for p in pacts.values()),
                key=lambda p: p.pact.created_at,
                reverse=True,
            )
            self.store.set(SOURCE, "my_pacts", list(self.my_pacts))
            self.store.set(SOURCE, "active_live_pacts", self.active_live_pacts)
        except TravelPactError as e:
            self.error_message = f"Failed to load pacts: {e.message}"
            self.store.report_error(SOURCE, self.error_message)
        finally:
            self.store.publish(LoadingChanged(SOURCE, False))
        return self.my_pacts

    async def load_invitations(self) -> list[PactInvitation]:
        try:
            session = await self.backend.get_session()
            result = await (
                self.backend.table("pact_members")
                .select("""
                    id,
                    status,
                    invited_at,
                    pacts(*),
                    profiles!invited_by(id, name, photo_url)
                """)
                .eq("user_id", session.user_id)
                .eq("status", PactMemberStatus.PENDING)
                .order("invited_at", ascending=False)
                .execute()
            )
            self.pending_invitations = [
                PactInvitation(
                    id=row["id"],
                    pact=row["pacts"],
                    invited_by=row.get("profiles"),
                    invited_at=row["invited_at"],
                    status=row["status"],
                )
                for row in result.data or []
                if row.get("pacts")
            ]
            self.store.set(SOURCE, "pending_invitations", list(self.pending_invitations))
        except TravelPactError as e:
            self.error_message = f"Failed to load invitations: {e.message}"
            self.store.report_error(SOURCE, self.error_message)
        return self.pending_invitations

    # Live location

    async def update_live_location(
        self,
        pact_id: UUID,
        point: Coordinate,
        accuracy: float,
        heading: Optional[float] = None,
        speed: Optional[float] = None,
    ) -> PactLocationUpdate:
        session = await self.backend.get_session()
        update = PactLocationUpdate(
            pact_id=pact_id,
            user_id=session.user_id,
            location=LocationData.at(point),
            timestamp=utcnow(),
            accuracy=accuracy,
            heading=heading,
            speed=speed,
        )
        await self.backend.table("pact_location_updates").insert(update.to_row()).execute()
        return update

    async def broadcast_live_location(self, point: Coordinate, accuracy: float) -> int:
        """Send one fix to every active live pact; returns how many succeeded."""
        sent = 0
        for pact in self.active_live_pacts:
            try:
                await self.update_live_location(pact.id, point, accuracy)
                sent += 1
            except TravelPactError as e:
                logger.warning("Live location for pact %s not sent: %s", pact.id, e.message)
        return sent

    # Change feed

    async def subscribe_to_updates(self) -> ChangeFeed:
        """Reload pacts and invitations whenever the user's membership rows change."""
        if self._feed is not None:
            return self._feed
        session = await self.backend.get_session()
        self._feed = self.backend.subscribe("pact_members", "user_id", session.user_id, self._on_change)
        return self._feed

    def _on_change(self, change: Change) -> None:
        logger.debug("pact_members %s", change.type.value)
        task = asyncio.get_running_loop().create_task(self._reload())
        self._reloads.add(task)
        task.add_done_callback(self._reloads.discard)

    async def _reload(self) -> None:
        await self.load_my_pacts()
        await self.load_invitations()

    async def unsubscribe(self) -> None:
        if self._feed is not None:
            await self._feed.stop()
            self._feed = None
        reloads = list(self._reloads)
        for task in reloads:
            task.cancel()
        await asyncio.gather(*reloads, return_exceptions=True)
        self._reloads.clear()
