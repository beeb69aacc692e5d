"""Tests for photo upload, thumbnails, counts and URL resolution."""

import asyncio
import io
from uuid import UUID, uuid4

from PIL import Image

from conftest import BASE_URL, USER_ID, body, params
from travelpact.media import MediaManager, make_thumbnail, to_jpeg
from travelpact.models import MediaItem, MediaPrivacy

WAYPOINT_ID = UUID("88888888-8888-8888-8888-888888888888")


def image_bytes(size=(1200, 800), fmt="PNG") -> bytes:
    out = io.BytesIO()
    Image.new("RGB", size, color=(200, 80, 40)).save(out, format=fmt)
    return out.getvalue()


def test_thumbnail_fits_in_400_square() -> None:
    thumb = make_thumbnail(image_bytes((1200, 800)))
    with Image.open(io.BytesIO(thumb)) as img:
        assert img.format == "JPEG"
        assert img.size == (400, 267)


def test_small_images_are_not_upscaled() -> None:
    with Image.open(io.BytesIO(make_thumbnail(image_bytes((120, 90))))) as img:
        assert img.size == (120, 90)


def test_to_jpeg_converts_and_measures() -> None:
    data, width, height = to_jpeg(image_bytes((640, 480), "PNG"))
    assert (width, height) == (640, 480)
    assert data[:2] == b"\xff\xd8"
    jpeg = image_bytes((10, 10), "JPEG")
    assert to_jpeg(jpeg)[0] == jpeg


def test_upload_photo_stores_original_thumbnail_and_row(server, backend) -> None:
    manager = MediaManager(backend)

    item = asyncio.run(manager.upload_photo(WAYPOINT_ID, image_bytes(), latitude=1.5, longitude=2.5))

    uploads = [r.url.path for r in server.requests if r.url.path.startswith("/storage/v1/object/")]
    assert uploads == [
        f"/storage/v1/object/waypoint-media/{USER_ID}/{WAYPOINT_ID}/{item.id}.jpg",
        f"/storage/v1/object/waypoint-thumbnails/{USER_ID}/{item.id}_thumb.jpg",
    ]
    row = body(server.calls("POST", "/rest/v1/media")[0])
    assert row["file_path"] == f"{item.id}.jpg"
    assert row["storage_bucket"] == "waypoint-media"
    assert row["media_type"] == "photo"
    assert row["mime_type"] == "image/jpeg"
    assert row["privacy_level"] == "private"
    assert row["width"] == 1200 and row["height"] == 800
    assert row["latitude"] == 1.5
    assert row["file_size_bytes"] == item.file_size_bytes > 0


def test_media_count_excludes_trash(server, backend) -> None:
    server.add("GET", "/rest/v1/media", json=[], headers={"Content-Range": "*/4"})
    manager = MediaManager(backend)

    assert asyncio.run(manager.media_count(WAYPOINT_ID)) == 4
    query = params(server.requests[-1])
    assert query["privacy_level"] == "neq.trash"
    assert query["waypoint_id"] == f"eq.{WAYPOINT_ID}"


def media_item(privacy) -> MediaItem:
    media_id = uuid4()
    return MediaItem(
        id=media_id,
        waypoint_id=WAYPOINT_ID,
        user_id=USER_ID,
        file_path=f"{media_id}.jpg",
        storage_bucket="waypoint-media",
        privacy_level=privacy,
    )


def test_public_media_uses_public_thumbnail(server, backend) -> None:
    manager = MediaManager(backend)
    for privacy in (MediaPrivacy.PUBLIC, MediaPrivacy.PUBLIC_SLIDESHOW):
        item = media_item(privacy)
        url = asyncio.run(manager.viewable_url(item))
        assert url == f"{BASE_URL}/storage/v1/object/public/waypoint-thumbnails/{USER_ID}/{item.id}_thumb.jpg"
    assert server.requests == []


def test_private_media_gets_signed_url(server, backend) -> None:
    item = media_item(MediaPrivacy.PACT_MEMBERS)
    sign_path = f"/storage/v1/object/sign/waypoint-media/{item.original_path}"
    server.add("POST", sign_path, json={"signedURL": f"/object/sign/waypoint-media/{item.original_path}?token=t"})
    manager = MediaManager(backend)

    url = asyncio.run(manager.viewable_url(item))

    assert url == f"{BASE_URL}/storage/v1/object/sign/waypoint-media/{item.original_path}?token=t"
    assert body(server.calls("POST", sign_path)[0]) == {"expiresIn": 3600}
