"""Waypoint photos: upload with thumbnails, counts and viewable URLs."""

import io
import logging
from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from PIL import Image

from . import config
from .backend import BackendClient
from .models import MediaItem, MediaKind, MediaPrivacy
from .timeutils import utcnow

logger = logging.getLogger(__name__)


def to_jpeg(data: bytes, quality: int = 90) -> tuple[bytes, int, int]:
    """Return JPEG bytes plus pixel size; JPEG input passes through untouched."""
    with Image.open(io.BytesIO(data)) as img:
        width, height = img.size
        if img.format == "JPEG":
            return data, width, height
        out = io.BytesIO()
        img.convert("RGB").save(out, format="JPEG", quality=quality)
        return out.getvalue(), width, height


def make_thumbnail(
    data: bytes,
    max_size: int = config.thumbnail_max_size,
    quality: int = config.thumbnail_quality,
) -> bytes:
    """Downscale to fit a ``max_size`` square, keeping aspect ratio."""
    with Image.open(io.BytesIO(data)) as img:
        thumb = img.convert("RGB")
        thumb.thumbnail((max_size, max_size), Image.Resampling.LANCZOS)
        out = io.BytesIO()
        thumb.save(out, format="JPEG", quality=quality)
        return out.getvalue()


class MediaManager:
    def __init__(self, backend: BackendClient):
        self.backend = backend

    async def upload_photo(
        self,
        waypoint_id: UUID,
        data: bytes,
        privacy: MediaPrivacy = MediaPrivacy.PRIVATE,
        taken_at: Optional[datetime] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        caption: Optional[str] = None,
    ) -> MediaItem:
        """Store the original and its thumbnail, then record the media row.

        Nothing is rolled back: if the row insert fails the uploaded objects stay.
        """
        session = await self.backend.get_session()
        media_id = uuid4()
        jpeg, width, height = to_jpeg(data)
        now = utcnow()
        item = MediaItem(
            id=media_id,
            waypoint_id=waypoint_id,
            user_id=session.user_id,
            file_path=f"{media_id}.jpg",
            storage_bucket=config.MEDIA_BUCKET,
            media_type=MediaKind.PHOTO,
            file_size_bytes=len(jpeg),
            mime_type="image/jpeg",
            width=width,
            height=height,
            privacy_level=privacy,
            caption=caption,
            taken_at=taken_at,
            latitude=latitude,
            longitude=longitude,
            created_at=now,
            updated_at=now,
        )

        await self.backend.upload(config.MEDIA_BUCKET, item.original_path, jpeg, "image/jpeg")
        await self.backend.upload(
            config.THUMBNAIL_BUCKET, item.thumbnail_path, make_thumbnail(jpeg), "image/jpeg"
        )
        await self.backend.table("media").insert(item.to_row(exclude_none=True)).execute()
        logger.info("Uploaded %s (%d bytes) for waypoint %s", item.file_path, len(jpeg), waypoint_id)
        return item

    async def load_media(self, waypoint_id: UUID) -> list[MediaItem]:
        result = await (
            self.backend.table("media")
            .select()
            .eq("waypoint_id", waypoint_id)
            .neq("privacy_level", MediaPrivacy.TRASH)
            .order("taken_at", ascending=True)
            .execute()
        )
        return [MediaItem.model_validate(row) for row in result.data or []]

    async def media_count(self, waypoint_id: UUID) -> int:
        """Number of media items on a waypoint, not counting trashed ones."""
        result = await (
            self.backend.table("media")
            .select("id", count=True)
            .eq("waypoint_id", waypoint_id)
            .neq("privacy_level", MediaPrivacy.TRASH)
            .execute()
        )
        if result.count is not None:
            return result.count
        return len(result.data or [])

    def thumbnail_url(self, item: MediaItem) -> str:
        return self.backend.public_url(config.THUMBNAIL_BUCKET, item.thumbnail_path)

    async def viewable_url(self, item: MediaItem) -> str:
        """Public items get the public thumbnail URL; the rest a signed URL to the original."""
        if item.privacy_level.is_public:
            return self.thumbnail_url(item)
        return await self.backend.create_signed_url(
            item.storage_bucket or config.MEDIA_BUCKET,
            item.original_path,
            expires_in=config.signed_url_expiry,
        )
