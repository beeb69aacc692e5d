"""Session and profile-completion checks."""

import logging
from typing import Optional

from .backend import BackendClient
from .errors import NotAuthenticatedError, TravelPactError
from .models import LocationData, UserProfile
from .store import StateStore
from .timeutils import format_timestamp, utcnow

logger = logging.getLogger(__name__)

SOURCE = "auth"


class AuthManager:
    def __init__(self, backend: BackendClient, store: StateStore):
        self.backend = backend
        self.store = store
        self.is_authenticated = False
        self.has_completed_profile = False

    async def check_auth_status(self) -> bool:
        """Refresh session validity and whether onboarding has been completed.

        Returns True when the user is signed in and onboarding is done.
        """
        try:
            session = await self.backend.get_session()
        except TravelPactError as e:
            logger.info("No valid session: %s", e.message)
            self._publish(False, False)
            return False

        complete = await self._profile_complete(session.user_id)
        self._publish(True, complete)
        return complete

    async def _profile_complete(self, user_id) -> bool:
        try:
            result = await (
                self.backend.table("profiles")
                .select("id, name, onboarding_completed, created_at")
                .eq("id", user_id)
                .execute()
            )
        except TravelPactError as e:
            logger.warning("Error checking profile: %s", e.message)
            return False

        if not result.data:
            logger.info("No profile exists for user %s", user_id)
            return False
        # A profile only counts once onboarding has been finished
        return bool(result.data[0].get("onboarding_completed"))

    def _publish(self, authenticated: bool, completed: bool) -> None:
        self.is_authenticated = authenticated
        self.has_completed_profile = completed
        self.store.set(SOURCE, "is_authenticated", authenticated)
        self.store.set(SOURCE, "has_completed_profile", completed)

    async def get_profile(self) -> Optional[UserProfile]:
        session = await self.backend.get_session()
        result = await self.backend.table("profiles").select().eq("id", session.user_id).execute()
        if not result.data:
            return None
        return UserProfile.model_validate(result.data[0])

    async def save_profile(
        self,
        name: str,
        phone: str,
        photo_url: Optional[str] = None,
        location: Optional[LocationData] = None,
    ) -> UserProfile:
        """Insert or update the signed-in user's profile row.

        An existing row keeps its creation time, skills and onboarding flag.
        """
        session = await self.backend.get_session()
        existing = await self.get_profile()
        now = utcnow()
        profile = UserProfile(
            id=session.user_id,
            phone=phone,
            name=name,
            photo_url=photo_url,
            location=location,
            skills=existing.skills if existing else None,
            onboarding_completed=existing.onboarding_completed if existing else None,
            created_at=existing.created_at if existing and existing.created_at else now,
            updated_at=now,
        )
        exclude = {"skills", "onboarding_completed"}
        if existing is not None:
            exclude.add("created_at")
        row = profile.to_row(exclude=exclude)
        await self.backend.table("profiles").upsert(row).execute()
        logger.info("Profile saved for %s", name)
        return profile

    async def update_skills(self, skills: list[str]) -> None:
        session = await self.backend.get_session()
        await (
            self.backend.table("profiles")
            .update({"skills": skills, "updated_at": format_timestamp(utcnow())})
            .eq("id", session.user_id)
            .execute()
        )

    async def complete_onboarding(self) -> None:
        session = await self.backend.get_session()
        await (
            self.backend.table("profiles")
            .update({"onboarding_completed": True, "updated_at": format_timestamp(utcnow())})
            .eq("id", session.user_id)
            .execute()
        )
        self._publish(True, True)

    async def sign_out(self) -> None:
        try:
            await self.backend.sign_out()
        except NotAuthenticatedError:
            # token was already invalid
            pass
        self._publish(False, False)
