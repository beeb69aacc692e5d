"""Data models mirroring the backend tables.

Field names are the backend's snake_case column names. Records are frozen:
change one with ``model_copy(update=...)`` and replace it in its list.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .geo import Coordinate
from .timeutils import format_timestamp, parse_optional_timestamp


class Record(BaseModel):
    # All datetimes go back to the backend in the canonical UTC format
    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        json_encoders={datetime: format_timestamp},
    )

    def to_row(self, **kwargs) -> dict:
        """Dump with wire names and JSON-ready values."""
        return self.model_dump(mode="json", **kwargs)


class LocationData(Record):
    latitude: float
    longitude: float
    address: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(self.latitude, self.longitude)

    @classmethod
    def at(cls, point: Coordinate, address: Optional[str] = None) -> "LocationData":
        return cls(latitude=point.latitude, longitude=point.longitude, address=address)


class UserProfile(Record):
    id: UUID
    phone: str = ""
    name: str = ""
    photo_url: Optional[str] = None
    location: Optional[LocationData] = None
    skills: Optional[list[str]] = None
    onboarding_completed: Optional[bool] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def parse_dates(cls, v):
        return parse_optional_timestamp(v)


class Connection(Record):
    """A user's contact, who may or may not have an account of their own."""
    id: UUID
    user_id: UUID
    connection_user_id: Optional[UUID] = None
    name: str
    assigned_location: Optional[LocationData] = None
    assigned_location_name: Optional[str] = None
    actual_known_location: Optional[LocationData] = None
    actual_known_location_name: Optional[str] = None
    location_source: Optional[str] = None
    has_account: bool = False
    connection_type: str = "accepted"
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def parse_dates(cls, v):
        return parse_optional_timestamp(v)

    @property
    def display_location(self) -> Optional[LocationData]:
        # Self-reported location wins over the one the owner assigned
        if self.has_account and self.actual_known_location is not None:
            return self.actual_known_location
        return self.assigned_location

    @property
    def display_location_name(self) -> Optional[str]:
        if self.has_account and self.actual_known_location_name is not None:
            return self.actual_known_location_name
        return self.assigned_location_name


class Route(Record):
    id: UUID
    user_id: UUID
    name: str
    description: Optional[str] = None
    status: str = "active"
    privacy_level: str = "private"
    start_date: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @field_validator("start_date", "created_at", "updated_at", mode="before")
    @classmethod
    def parse_dates(cls, v):
        return parse_optional_timestamp(v)


class Waypoint(Record):
    """A stop on a route. ``sequence_order`` is contiguous within a route."""
    id: UUID
    route_id: UUID
    user_id: UUID
    name: str
    known_location: Optional[LocationData] = None
    actual_location: Optional[LocationData] = None
    granularity_level: Optional[str] = None
    sequence_order: int
    arrival_time: Optional[datetime] = None
    departure_time: Optional[datetime] = None
    city: Optional[str] = None
    area_code: Optional[str] = None
    country: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @field_validator("arrival_time", "departure_time", "created_at", "updated_at", mode="before")
    @classmethod
    def parse_dates(cls, v):
        return parse_optional_timestamp(v)

    @property
    def coordinate(self) -> Optional[Coordinate]:
        location = self.known_location or self.actual_location
        return location.coordinate if location else None


class ContactWaypoint(Record):
    """A waypoint on a route someone else shared; only located stops are kept."""
    id: UUID
    name: str
    known_location: LocationData
    arrival_time: Optional[datetime] = None
    departure_time: Optional[datetime] = None
    city: Optional[str] = None
    area_code: Optional[str] = None
    country: Optional[str] = None
    sequence_order: int

    @field_validator("arrival_time", "departure_time", mode="before")
    @classmethod
    def parse_dates(cls, v):
        return parse_optional_timestamp(v)


class ContactRoute(Record):
    id: UUID
    name: str
    description: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    waypoints: list[ContactWaypoint] = Field(default_factory=list)

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def parse_dates(cls, v):
        return parse_optional_timestamp(v)

    @property
    def latest_arrival(self) -> Optional[datetime]:
        arrivals = [w.arrival_time for w in self.waypoints if w.arrival_time]
        return max(arrivals) if arrivals else None


class PactType(str, Enum):
    TIMELINE = "timeline"
    LIVE = "live"


class PactMemberStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    LEFT = "left"

    def can_become(self, target: "PactMemberStatus") -> bool:
        return target in _MEMBER_TRANSITIONS.get(self, ())


_MEMBER_TRANSITIONS = {
    PactMemberStatus.PENDING: (PactMemberStatus.ACCEPTED, PactMemberStatus.DECLINED),
    PactMemberStatus.ACCEPTED: (PactMemberStatus.LEFT,),
}


class TravelPact(Record):
    id: UUID
    creator_id: UUID
    name: str
    description: Optional[str] = None
    pact_type: PactType
    route_id: Optional[UUID] = None
    start_date: datetime
    end_date: Optional[datetime] = None
    privacy_level: str = "pact_members"
    is_active: bool = True
    created_at: datetime
    updated_at: datetime

    @field_validator("start_date", "end_date", "created_at", "updated_at", mode="before")
    @classmethod
    def parse_dates(cls, v):
        return parse_optional_timestamp(v)

    @property
    def is_live(self) -> bool:
        return self.pact_type == PactType.LIVE and self.is_active

    @property
    def is_timeline(self) -> bool:
        return self.pact_type == PactType.TIMELINE


class PactMember(Record):
    id: UUID
    pact_id: UUID
    user_id: Optional[UUID] = None  # None for people invited by phone only
    phone_number: Optional[str] = None
    name: str
    role: str = "member"
    status: PactMemberStatus
    joined_at: Optional[datetime] = None
    invited_at: datetime
    invited_by: UUID

    @field_validator("joined_at", "invited_at", mode="before")
    @classmethod
    def parse_dates(cls, v):
        return parse_optional_timestamp(v)


class PactWithMembers(Record):
    pact: TravelPact
    members: list[PactMember] = Field(default_factory=list)
    creator: Optional[UserProfile] = None

    @property
    def id(self) -> UUID:
        return self.pact.id

    @property
    def accepted_members(self) -> list[PactMember]:
        return [m for m in self.members if m.status == PactMemberStatus.ACCEPTED]

    @property
    def pending_members(self) -> list[PactMember]:
        return [m for m in self.members if m.status == PactMemberStatus.PENDING]

    @property
    def member_count(self) -> int:
        return len(self.accepted_members)


class PactInvitation(Record):
    """A pending membership row, viewed from the invitee's side."""
    id: UUID
    pact: TravelPact
    invited_by: Optional[UserProfile] = None
    invited_at: datetime
    status: PactMemberStatus

    @field_validator("invited_at", mode="before")
    @classmethod
    def parse_dates(cls, v):
        return parse_optional_timestamp(v)

    @property
    def is_active(self) -> bool:
        return self.status == PactMemberStatus.PENDING


class PactLocationUpdate(Record):
    id: UUID = Field(default_factory=uuid4)
    pact_id: UUID
    user_id: UUID
    location: LocationData
    timestamp: datetime
    accuracy: float
    heading: Optional[float] = None
    speed: Optional[float] = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def parse_dates(cls, v):
        return parse_optional_timestamp(v)

    @field_validator("heading", "speed", mode="before")
    @classmethod
    def drop_invalid_readings(cls, v):
        # Location services report -1 when heading or speed is unknown
        if v is not None and v < 0:
            return None
        return v


class MediaPrivacy(str, Enum):
    PRIVATE = "private"
    PACT_MEMBERS = "pact_members"
    PUBLIC = "public"
    PUBLIC_SLIDESHOW = "public_slideshow"
    TRASH = "trash"

    @property
    def is_public(self) -> bool:
        return self in (MediaPrivacy.PUBLIC, MediaPrivacy.PUBLIC_SLIDESHOW)


class MediaKind(str, Enum):
    PHOTO = "photo"
    VIDEO = "video"

    @classmethod
    def _missing_(cls, value):
        if value:
            raise ValueError(f"Unsupported media type: '{value}'. Must be 'photo' or 'video'")
        return super()._missing_(value)


class MediaItem(Record):
    id: UUID
    waypoint_id: UUID
    user_id: UUID
    file_path: str
    storage_bucket: Optional[str] = None
    media_type: MediaKind = MediaKind.PHOTO
    file_size_bytes: Optional[int] = None
    mime_type: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    duration_seconds: Optional[float] = None
    privacy_level: MediaPrivacy = MediaPrivacy.PRIVATE
    caption: Optional[str] = None
    taken_at: Optional[datetime] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("taken_at", "created_at", "updated_at", mode="before")
    @classmethod
    def parse_dates(cls, v):
        return parse_optional_timestamp(v)

    @field_validator("media_type", mode="before")
    @classmethod
    def parse_media_type(cls, v):
        if isinstance(v, str):
            return MediaKind(v.lower())
        return v

    @property
    def original_path(self) -> str:
        return f"{self.user_id}/{self.waypoint_id}/{self.file_path}"

    @property
    def thumbnail_path(self) -> str:
        return f"{self.user_id}/{self.id}_thumb.jpg"


class TravelPactContact(Record):
    """A device contact, matched against the profiles table."""
    id: UUID
    name: str = ""
    phone_number: Optional[str] = None
    email: Optional[str] = None
    has_account: bool = False
    user_id: Optional[UUID] = None
    photo_url: Optional[str] = None
    latest_waypoint_id: Optional[UUID] = None
    contact_identifier: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.phone_number or self.email or "Unknown"

    @property
    def bubble_initials(self) -> str:
        """Two-letter badge for the contact."""
        clean_name = self.name.strip()
        if not clean_name:
            if self.phone_number:
                digits = re.sub(r"\D", "", self.phone_number)
                if len(digits) >= 2:
                    return digits[-2:]
            if self.email:
                return self.email[:2].upper()
            return "?"

        parts = clean_name.split()
        if len(parts) >= 2:
            return (parts[0][0] + parts[-1][0]).upper()
        return parts[0][:2].upper()


class DeviceContact(Record):
    """A contact as read from the device address book."""
    identifier: str
    given_name: str = ""
    family_name: str = ""
    organization_name: str = ""
    nickname: str = ""
    phone_numbers: list[str] = Field(default_factory=list)
    emails: list[str] = Field(default_factory=list)

    @property
    def full_name(self) -> str:
        name = " ".join(part for part in (self.given_name, self.family_name) if part)
        return name or self.organization_name or self.nickname


class PhotoAsset(Record):
    """A photo from the library, possibly without a location."""
    identifier: str
    taken_at: datetime
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    path: Optional[str] = None

    @field_validator("taken_at", mode="before")
    @classmethod
    def parse_dates(cls, v):
        return parse_optional_timestamp(v)

    @property
    def location_available(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def coordinate(self) -> Optional[Coordinate]:
        if not self.location_available:
            return None
        return Coordinate(self.latitude, self.longitude)


class PhotoWaypoint(Record):
    """A waypoint candidate: one run of consecutive photos sharing a place key."""
    id: UUID = Field(default_factory=uuid4)
    location: LocationData
    location_name: str
    place_key: str
    area_code: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    start_date: datetime
    end_date: datetime
    photo_count: int
    granularity_level: str
    assets: list[PhotoAsset] = Field(default_factory=list)
