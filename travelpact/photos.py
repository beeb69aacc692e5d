"""Group geotagged photos into waypoint candidates and sync them as a route.

Photos are walked in capture order. Each one is reverse-geocoded to a place
key at the chosen granularity, and every maximal run of consecutive photos
with the same key becomes one candidate. Runs are never merged, so a trip
A -> B -> A gives three candidates.
"""

import logging
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Optional
from uuid import UUID, uuid4

import piexif
from pydantic import BaseModel

from . import config
from .backend import BackendClient
from .cache import KeyValueCache
from .config import Granularity
from .errors import PhotoAnalysisError, TravelPactError
from .geocode import CachingGeocoder, Placemark, fallback_key, place_key
from .media import MediaManager
from .models import LocationData, PhotoAsset, PhotoWaypoint, Route, Waypoint
from .store import AnalysisProgress, StateStore
from .timeutils import (
    attach_local_timezone,
    format_date_range,
    localize_to_location,
    utcnow,
)

logger = logging.getLogger(__name__)

SOURCE = "photos"
CHECKPOINT_KEY = "PhotoAnalysisCheckpoint"
PENDING_KEY = "PendingPhotoWaypoints"
PHOTO_SUFFIXES = {".jpg", ".jpeg"}


class CancellationToken:
    """Checked between photos (analysis) and between waypoints (sync)."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class AnalysisStats(BaseModel):
    """Track photo analysis and sync statistics."""
    photos_total: int = 0
    photos_with_location: int = 0
    photos_skipped: int = 0
    geocode_failures: int = 0
    waypoints_found: int = 0
    waypoints_synced: int = 0
    photos_uploaded: int = 0
    uploads_failed: int = 0
    cancelled: bool = False
    paused: bool = False

    def print_summary(self, elapsed_time: float) -> None:
        print(f"\n{'='*70}")
        print("PHOTO ANALYSIS SUMMARY")
        print(f"{'='*70}")
        print(f"Photos: {self.photos_total} | With location: {self.photos_with_location} | Skipped: {self.photos_skipped}")
        print(f"Waypoints found: {self.waypoints_found} in {elapsed_time:.1f}s")
        if self.geocode_failures > 0:
            print(f"Geocoding gave up on {self.geocode_failures} photos (grouped by coordinates)")
        if self.waypoints_synced or self.photos_uploaded or self.uploads_failed:
            print(f"{'='*70}")
            print("SYNC")
            print(f"{'='*70}")
            print(f"Waypoints synced: {self.waypoints_synced} | Photos uploaded: {self.photos_uploaded} | Upload failures: {self.uploads_failed}")
        if self.cancelled:
            print("Cancelled before finishing")
        if self.paused:
            print("Paused; resume to pick up where analysis stopped")
        print(f"{'='*70}")


# Loading photos from disk

def _rational_to_float(value) -> float:
    num, den = value
    return num / den if den else 0.0


def _dms_to_degrees(dms, ref: bytes) -> float:
    """Convert EXIF (deg, min, sec) rationals to signed decimal degrees."""
    d, m, s = (_rational_to_float(v) for v in dms)
    degrees = d + m / 60 + s / 3600
    if ref in (b"S", b"W"):
        degrees = -degrees
    return round(degrees, 7)


def read_exif_location(exif_dict: dict) -> tuple[Optional[float], Optional[float]]:
    gps = exif_dict.get("GPS") or {}
    try:
        lat = _dms_to_degrees(gps[piexif.GPSIFD.GPSLatitude], gps.get(piexif.GPSIFD.GPSLatitudeRef, b"N"))
        lon = _dms_to_degrees(gps[piexif.GPSIFD.GPSLongitude], gps.get(piexif.GPSIFD.GPSLongitudeRef, b"E"))
    except (KeyError, TypeError, ValueError):
        return None, None
    return lat, lon


def read_exif_datetime(exif_dict: dict) -> Optional[datetime]:
    """DateTimeOriginal as a naive wall-clock time, if present and sane."""
    raw = (exif_dict.get("Exif") or {}).get(piexif.ExifIFD.DateTimeOriginal)
    if not raw:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode("ascii", errors="ignore")
    try:
        return datetime.strptime(raw.strip("\x00 "), "%Y:%m:%d %H:%M:%S")
    except ValueError:
        return None


def load_photo(path: Path) -> PhotoAsset:
    """Build a PhotoAsset from a JPEG's EXIF; file mtime when no capture time."""
    try:
        exif_dict = piexif.load(str(path))
    except (ValueError, OSError) as e:
        logger.warning("No readable EXIF in %s: %s", path.name, e)
        exif_dict = {}

    lat, lon = read_exif_location(exif_dict)
    naive = read_exif_datetime(exif_dict)
    if naive is None:
        taken_at = datetime.fromtimestamp(path.stat().st_mtime).astimezone()
    elif lat is not None and lon is not None:
        # EXIF times are wall-clock times where the photo was taken
        taken_at = attach_local_timezone(naive, lat, lon)
    else:
        taken_at = naive.astimezone()

    return PhotoAsset(identifier=path.name, taken_at=taken_at, latitude=lat, longitude=lon, path=str(path))


def load_photos_from_dir(directory: Path) -> list[PhotoAsset]:
    """Every JPEG under ``directory``, sorted by capture time."""
    paths = sorted(p for p in Path(directory).rglob("*") if p.suffix.lower() in PHOTO_SUFFIXES)
    return sorted((load_photo(p) for p in paths), key=lambda a: a.taken_at)


# Clustering

def waypoint_name(key: str, start: datetime, end: datetime) -> str:
    return f"{key} ({format_date_range(start, end)})"


def build_waypoint(
    assets: list[PhotoAsset],
    key: str,
    placemark: Optional[Placemark],
    granularity: Granularity,
) -> PhotoWaypoint:
    """Turn one run of photos into a candidate located at its first photo."""
    first = assets[0]
    start, end = assets[0].taken_at, assets[-1].taken_at
    # Label dates as they were on the ground, not in UTC
    local_start = localize_to_location(start, first.latitude, first.longitude)
    local_end = localize_to_location(end, assets[-1].latitude, assets[-1].longitude)

    city = (placemark.locality if placemark else None) or key
    country = placemark.country if placemark else None
    name = waypoint_name(key, local_start, local_end)
    return PhotoWaypoint(
        location=LocationData(
            latitude=first.latitude,
            longitude=first.longitude,
            address=name,
            city=city,
            country=country,
        ),
        location_name=name,
        place_key=key,
        area_code=placemark.postal_code if placemark else None,
        city=city,
        country=country,
        start_date=start,
        end_date=end,
        photo_count=len(assets),
        granularity_level=granularity.value,
        assets=list(assets),
    )


class PhotoAnalysisService:
    """Clusters photos into candidates and saves the chosen ones as a route.

    With a cache, a paused analysis leaves a checkpoint that ``analyze(...,
    resume=True)`` picks up from, and finished candidates are kept as pending
    until they are synced.
    """

    def __init__(
        self,
        backend: BackendClient,
        store: StateStore,
        geocoder: CachingGeocoder,
        media: MediaManager,
        granularity: Granularity = config.granularity,
        cache: Optional[KeyValueCache] = None,
    ):
        self.backend = backend
        self.store = store
        self.geocoder = geocoder
        self.media = media
        self.granularity = granularity
        self.cache = cache
        self.waypoints: list[PhotoWaypoint] = []
        self.stats = AnalysisStats()
        self.is_paused = False
        self._pause_requested = False

    def _progress(self, current: int, total: int, message: str, location: Optional[str] = None) -> None:
        self.store.publish(AnalysisProgress(
            current=current,
            total=total,
            message=message,
            waypoints_found=self.stats.waypoints_found,
            photos_skipped=self.stats.photos_skipped,
            current_location=location,
        ))

    def _publish_waypoints(self, waypoints: list[PhotoWaypoint]) -> None:
        self.waypoints = waypoints
        self.store.set(SOURCE, "waypoints", list(waypoints))

    async def resolve_key(self, asset: PhotoAsset, granularity: Granularity) -> tuple[str, Optional[Placemark]]:
        placemark = await self.geocoder.reverse(asset.coordinate)
        if placemark is None:
            self.stats.geocode_failures += 1
            return fallback_key(asset.coordinate), None
        return place_key(placemark, granularity), placemark

    # Pause and resume

    def pause(self) -> None:
        """Stop at the next photo and keep a checkpoint to resume from."""
        self._pause_requested = True

    @property
    def has_checkpoint(self) -> bool:
        return bool(self.cache and self.cache.get(CHECKPOINT_KEY))

    def clear_checkpoint(self) -> None:
        if self.cache is not None:
            self.cache.remove(CHECKPOINT_KEY)

    def _save_checkpoint(
        self,
        processed: int,
        total: int,
        granularity: Granularity,
        waypoints: list[PhotoWaypoint],
        run: list[PhotoAsset],
        run_key: Optional[str],
        run_placemark: Optional[Placemark],
    ) -> None:
        if self.cache is None:
            logger.warning("No cache configured; paused analysis cannot be resumed")
            return
        self.cache.set(CHECKPOINT_KEY, {
            "granularity": granularity.value,
            "total": total,
            "processed": processed,
            "waypoints": [w.to_row() for w in waypoints],
            "run": [a.to_row() for a in run],
            "run_key": run_key,
            "run_placemark": asdict(run_placemark) if run_placemark else None,
        })

    def _load_checkpoint(self, total: int, granularity: Granularity):
        saved = self.cache.get(CHECKPOINT_KEY) if self.cache is not None else None
        if not saved:
            return None
        if saved.get("total") != total or saved.get("granularity") != granularity.value:
            logger.info("Saved analysis progress is for other photos or granularity; starting over")
            return None
        placemark = saved.get("run_placemark")
        return (
            saved["processed"],
            [PhotoWaypoint.model_validate(w) for w in saved["waypoints"]],
            [PhotoAsset.model_validate(a) for a in saved["run"]],
            saved.get("run_key"),
            Placemark(**placemark) if placemark else None,
        )

    # Pending candidates

    def _save_pending(self) -> None:
        if self.cache is not None:
            self.cache.set(PENDING_KEY, [w.to_row() for w in self.waypoints])

    def load_pending_waypoints(self) -> list[PhotoWaypoint]:
        """Candidates from an earlier finished analysis that were never synced."""
        saved = self.cache.get(PENDING_KEY) if self.cache is not None else None
        if saved:
            self._publish_waypoints([PhotoWaypoint.model_validate(w) for w in saved])
        return self.waypoints

    def clear_pending_waypoints(self) -> None:
        self._publish_waypoints([])
        if self.cache is not None:
            self.cache.remove(PENDING_KEY)

    async def analyze(
        self,
        photos: list[PhotoAsset],
        granularity: Optional[Granularity] = None,
        token: Optional[CancellationToken] = None,
        resume: bool = False,
    ) -> list[PhotoWaypoint]:
        """Cluster photos into waypoint candidates.

        Photos without a location are counted as skipped. On cancellation the
        runs already closed are returned, the open one is dropped and any
        checkpoint is discarded. On pause the closed runs are returned and
        the rest is kept in a checkpoint; with ``resume`` a matching
        checkpoint is continued instead of starting from the first photo.

        Raises:
            PhotoAnalysisError: If no photo carries a location.
        """
        granularity = granularity or self.granularity
        token = token or CancellationToken()
        self.stats = AnalysisStats(photos_total=len(photos))
        self._pause_requested = False
        self.is_paused = False

        located = sorted((p for p in photos if p.location_available), key=lambda p: p.taken_at)
        self.stats.photos_with_location = len(located)
        self.stats.photos_skipped = len(photos) - len(located)
        if not located:
            raise PhotoAnalysisError("No photos with location data found")

        start = 0
        waypoints: list[PhotoWaypoint] = []
        run: list[PhotoAsset] = []
        run_key: Optional[str] = None
        run_placemark: Optional[Placemark] = None

        checkpoint = self._load_checkpoint(len(located), granularity) if resume else None
        if checkpoint is not None:
            start, waypoints, run, run_key, run_placemark = checkpoint
            self.stats.waypoints_found = len(waypoints)
            logger.info("Resuming analysis at photo %d of %d", start + 1, len(located))
        else:
            self.clear_checkpoint()

        logger.info(
            "Analyzing %d photos at %s granularity (%d without location skipped)",
            len(located) - start, granularity.value, self.stats.photos_skipped,
        )
        self._progress(start, len(located), "Analyzing photo locations...")

        for index, asset in enumerate(located[start:], start=start + 1):
            if token.cancelled:
                logger.info("Analysis cancelled after %d photos", index - 1)
                self.stats.cancelled = True
                self.clear_checkpoint()
                run = []
                break
            if self._pause_requested:
                logger.info("Analysis paused after %d photos", index - 1)
                self._save_checkpoint(index - 1, len(located), granularity, waypoints, run, run_key, run_placemark)
                self.stats.paused = self.is_paused = True
                self._publish_waypoints(waypoints)
                return waypoints

            key, placemark = await self.resolve_key(asset, granularity)
            if run and key != run_key:
                waypoints.append(build_waypoint(run, run_key, run_placemark, granularity))
                self.stats.waypoints_found = len(waypoints)
                run = []
            if not run:
                run_key, run_placemark = key, placemark
            run.append(asset)

            self._progress(index, len(located), "Analyzing photo locations...", key)

        if run:
            waypoints.append(build_waypoint(run, run_key, run_placemark, granularity))
        self.stats.waypoints_found = len(waypoints)

        self._publish_waypoints(waypoints)
        if not self.stats.cancelled:
            self.clear_checkpoint()
            self._save_pending()
        self._progress(len(located), len(located), f"Found {len(waypoints)} waypoints")
        return waypoints

    async def sync_to_database(
        self,
        selected_ids: Optional[set[UUID]] = None,
        token: Optional[CancellationToken] = None,
    ) -> UUID:
        """Save candidates as a completed "My Travel Timeline" route.

        Waypoints are numbered from 1 and get up to a handful of their photos
        uploaded. A failed upload is logged and skipped. Returns the route id.
        A sync that runs to the end clears the pending candidates.

        Raises:
            PhotoAnalysisError: If there is nothing to sync.
        """
        token = token or CancellationToken()
        to_sync = [w for w in self.waypoints if selected_ids is None or w.id in selected_ids]
        if not to_sync:
            raise PhotoAnalysisError("No waypoints to sync")

        session = await self.backend.get_session()
        route_id = await self._create_route(session.user_id, to_sync)
        logger.info("Syncing %d of %d waypoints to route %s", len(to_sync), len(self.waypoints), route_id)

        for index, candidate in enumerate(to_sync, start=1):
            if token.cancelled:
                logger.info("Sync cancelled after %d waypoints", index - 1)
                self.stats.cancelled = True
                break
            await self._create_waypoint(candidate, route_id, session.user_id, index)
            self.stats.waypoints_synced += 1
            self._progress(index, len(to_sync), "Syncing waypoints to database...", candidate.location_name)
        else:
            self.clear_pending_waypoints()

        return route_id

    async def _create_route(self, user_id: UUID, waypoints: list[PhotoWaypoint]) -> UUID:
        now = utcnow()
        route = Route(
            id=uuid4(),
            user_id=user_id,
            name="My Travel Timeline",
            description="Automatically generated from photo library",
            status="completed",
            privacy_level="private",
            start_date=waypoints[0].start_date,
            created_at=now,
            updated_at=now,
        )
        result = await (
            self.backend.table("routes")
            .insert(route.to_row(), returning=True)
            .select("id")
            .execute()
        )
        if not result.data or "id" not in result.data[0]:
            raise PhotoAnalysisError("Failed to create route")
        return UUID(str(result.data[0]["id"]))

    async def _create_waypoint(
        self, candidate: PhotoWaypoint, route_id: UUID, user_id: UUID, sequence_order: int
    ) -> UUID:
        now = utcnow()
        waypoint = Waypoint(
            id=uuid4(),
            route_id=route_id,
            user_id=user_id,
            name=candidate.location_name,
            known_location=candidate.location,
            granularity_level=candidate.granularity_level,
            sequence_order=sequence_order,
            arrival_time=candidate.start_date,
            departure_time=candidate.end_date,
            city=candidate.city,
            area_code=candidate.area_code,
            country=candidate.country,
            created_at=now,
            updated_at=now,
        )
        await (
            self.backend.table("waypoints")
            .insert(waypoint.to_row(exclude={"actual_location", "notes"}))
            .execute()
        )

        for asset in candidate.assets[:config.max_uploads_per_waypoint]:
            if not asset.path:
                continue
            try:
                data = Path(asset.path).read_bytes()
                await self.media.upload_photo(
                    waypoint.id,
                    data,
                    taken_at=asset.taken_at,
                    latitude=asset.latitude,
                    longitude=asset.longitude,
                )
                self.stats.photos_uploaded += 1
            except (OSError, TravelPactError) as e:
                self.stats.uploads_failed += 1
                logger.warning("Failed to upload %s: %s", asset.identifier, e)
        return waypoint.id
