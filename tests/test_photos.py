"""Tests for photo clustering, photo loading and timeline sync."""

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import piexif
import pytest
from PIL import Image

from conftest import USER_ID, body
from travelpact.config import Granularity
from travelpact.errors import PhotoAnalysisError
from travelpact.geocode import CachingGeocoder, NominatimGeocoder, Placemark
from travelpact.media import MediaManager
from travelpact.models import PhotoAsset
from travelpact.photos import (
    CHECKPOINT_KEY,
    PENDING_KEY,
    CancellationToken,
    PhotoAnalysisService,
    load_photo,
    load_photos_from_dir,
)
from travelpact.store import AnalysisProgress

UTC = timezone.utc
PARIS = (48.8566, 2.3522)
LYON = (45.764, 4.8357)
PLACES = {
    PARIS: Placemark(*PARIS, "Paris", "Ile-de-France", "France", "75004"),
    LYON: Placemark(*LYON, "Lyon", "Auvergne-Rhone-Alpes", "France", "69002"),
}
ROUTE_ID = "99999999-9999-9999-9999-999999999999"


class FakeGeocoder:
    def __init__(self, failing=()):
        self.failing = set(failing)

    async def reverse(self, point):
        key = (point.latitude, point.longitude)
        if key in self.failing:
            raise httpx.ConnectError("geocoder unreachable")
        return PLACES.get(key)


def photo(name, place, day, hour=10, path=None) -> PhotoAsset:
    lat, lon = place if place else (None, None)
    return PhotoAsset(
        identifier=name,
        taken_at=datetime(2025, 6, day, hour, tzinfo=UTC),
        latitude=lat,
        longitude=lon,
        path=path,
    )


@pytest.fixture
def service(backend, store):
    geocoder = CachingGeocoder(FakeGeocoder(), delay=0, retry_delay=0)
    return PhotoAnalysisService(backend, store, geocoder, MediaManager(backend), Granularity.CITY)


def test_runs_are_not_merged(service) -> None:
    photos = [
        photo("1", PARIS, 1),
        photo("2", PARIS, 2),
        photo("3", LYON, 3),
        photo("4", PARIS, 5),
    ]

    waypoints = asyncio.run(service.analyze(photos))

    assert [(w.place_key, w.photo_count) for w in waypoints] == [("Paris", 2), ("Lyon", 1), ("Paris", 1)]
    assert [w.location_name for w in waypoints] == [
        "Paris (Jun 1 - Jun 2)",
        "Lyon (Jun 3)",
        "Paris (Jun 5)",
    ]
    first = waypoints[0]
    assert first.city == "Paris" and first.country == "France" and first.area_code == "75004"
    assert first.location.latitude == PARIS[0]
    assert first.granularity_level == "city"
    assert [a.identifier for a in first.assets] == ["1", "2"]


def test_photos_are_sorted_before_grouping(service) -> None:
    photos = [photo("late", PARIS, 4), photo("early", PARIS, 1), photo("mid", LYON, 2)]
    waypoints = asyncio.run(service.analyze(photos))
    assert [w.place_key for w in waypoints] == ["Paris", "Lyon", "Paris"]


def test_coarser_granularity_joins_runs(service) -> None:
    photos = [photo("1", PARIS, 1), photo("2", LYON, 2), photo("3", PARIS, 3)]
    waypoints = asyncio.run(service.analyze(photos, Granularity.COUNTRY))
    assert [(w.place_key, w.photo_count) for w in waypoints] == [("France", 3)]
    assert waypoints[0].location_name == "France (Jun 1 - Jun 3)"
    assert waypoints[0].granularity_level == "country"


def test_photos_without_location_are_skipped(service, store) -> None:
    progress = []
    store.subscribe(AnalysisProgress, progress.append)

    waypoints = asyncio.run(service.analyze([photo("1", PARIS, 1), photo("2", None, 2)]))

    assert len(waypoints) == 1
    assert service.stats.photos_skipped == 1
    assert service.stats.photos_with_location == 1
    assert progress[-1].photos_skipped == 1
    assert progress[-1].waypoints_found == 1


def test_no_located_photos_is_an_error(service) -> None:
    with pytest.raises(PhotoAnalysisError):
        asyncio.run(service.analyze([photo("1", None, 1)]))


def test_failed_geocoding_falls_back_to_coordinates(backend, store) -> None:
    geocoder = CachingGeocoder(FakeGeocoder(failing=[PARIS]), delay=0, max_retries=1, retry_delay=0)
    service = PhotoAnalysisService(backend, store, geocoder, MediaManager(backend))

    waypoints = asyncio.run(service.analyze([photo("1", PARIS, 1)]))

    assert waypoints[0].place_key == "48.86,2.35"
    assert waypoints[0].city == "48.86,2.35"
    assert service.stats.geocode_failures == 1


def test_unknown_place_falls_back_to_rounded_coordinates(service) -> None:
    nowhere = (10.12345, 20.6789)
    waypoints = asyncio.run(service.analyze([photo("1", nowhere, 1)]))
    assert waypoints[0].place_key == "10.12,20.68"
    assert service.stats.geocode_failures == 1


def test_cancellation_keeps_closed_runs_only(service, store) -> None:
    token = CancellationToken()
    store.subscribe(AnalysisProgress, lambda e: token.cancel() if e.current == 3 else None)
    photos = [photo("1", PARIS, 1), photo("2", PARIS, 2), photo("3", LYON, 3), photo("4", LYON, 4)]

    waypoints = asyncio.run(service.analyze(photos, token=token))

    assert [(w.place_key, w.photo_count) for w in waypoints] == [("Paris", 2)]
    assert service.stats.cancelled
    assert service.waypoints == waypoints


def write_jpeg(path, when: str, lat=None, lon=None) -> None:
    exif = {"0th": {}, "Exif": {piexif.ExifIFD.DateTimeOriginal: when}, "GPS": {}, "1st": {}, "thumbnail": None}
    if lat is not None:
        exif["GPS"] = {
            piexif.GPSIFD.GPSLatitudeRef: b"N" if lat >= 0 else b"S",
            piexif.GPSIFD.GPSLatitude: [(round(abs(lat) * 10000), 10000), (0, 1), (0, 1)],
            piexif.GPSIFD.GPSLongitudeRef: b"E" if lon >= 0 else b"W",
            piexif.GPSIFD.GPSLongitude: [(round(abs(lon) * 10000), 10000), (0, 1), (0, 1)],
        }
    Image.new("RGB", (64, 48), color=(10, 120, 200)).save(path, format="JPEG", exif=piexif.dump(exif))


def test_load_photo_reads_exif_gps_and_local_time(tmp_path) -> None:
    path = tmp_path / "paris.jpg"
    write_jpeg(path, "2025:06:01 12:00:00", 48.8566, 2.3522)

    asset = load_photo(path)

    assert asset.latitude == pytest.approx(48.8566)
    assert asset.longitude == pytest.approx(2.3522)
    # noon in Paris in June is 10:00 UTC
    assert asset.taken_at == datetime(2025, 6, 1, 10, 0, tzinfo=UTC)
    assert asset.path == str(path)


def test_load_photo_southern_and_western_hemispheres(tmp_path) -> None:
    path = tmp_path / "rio.jpg"
    write_jpeg(path, "2025:06:01 12:00:00", -22.9068, -43.1729)
    asset = load_photo(path)
    assert asset.latitude == pytest.approx(-22.9068)
    assert asset.longitude == pytest.approx(-43.1729)


def test_load_photos_from_dir_sorts_and_filters(tmp_path) -> None:
    write_jpeg(tmp_path / "b.jpg", "2025:06:02 09:00:00", 48.8566, 2.3522)
    (tmp_path / "sub").mkdir()
    write_jpeg(tmp_path / "sub" / "a.JPG", "2025:06:01 09:00:00")
    (tmp_path / "notes.txt").write_text("not a photo")

    assets = load_photos_from_dir(tmp_path)

    assert [a.identifier for a in assets] == ["a.JPG", "b.jpg"]
    assert not assets[0].location_available


def test_sync_creates_timeline_route(server, backend, service) -> None:
    server.add("POST", "/rest/v1/routes", json=[{"id": ROUTE_ID}], status=201)
    photos = [photo("1", PARIS, 1), photo("2", LYON, 3, hour=18)]
    waypoints = asyncio.run(service.analyze(photos))

    route_id = asyncio.run(service.sync_to_database())

    assert str(route_id) == ROUTE_ID
    route = body(server.calls("POST", "/rest/v1/routes")[0])
    assert route["name"] == "My Travel Timeline"
    assert route["status"] == "completed"
    assert route["user_id"] == str(USER_ID)
    assert route["start_date"] == "2025-06-01T10:00:00Z"

    rows = [body(r) for r in server.calls("POST", "/rest/v1/waypoints")]
    assert [r["sequence_order"] for r in rows] == [1, 2]
    assert [r["name"] for r in rows] == [w.location_name for w in waypoints]
    assert rows[1]["arrival_time"] == "2025-06-03T18:00:00Z"
    assert rows[0]["known_location"]["city"] == "Paris"
    assert all(r["route_id"] == ROUTE_ID for r in rows)
    assert service.stats.waypoints_synced == 2


def test_sync_only_selected(server, backend, service) -> None:
    server.add("POST", "/rest/v1/routes", json=[{"id": ROUTE_ID}], status=201)
    waypoints = asyncio.run(service.analyze([photo("1", PARIS, 1), photo("2", LYON, 2)]))

    asyncio.run(service.sync_to_database({waypoints[1].id}))

    rows = [body(r) for r in server.calls("POST", "/rest/v1/waypoints")]
    assert [r["city"] for r in rows] == ["Lyon"]
    assert rows[0]["sequence_order"] == 1


def test_sync_uploads_at_most_five_photos(server, backend, service, tmp_path) -> None:
    server.add("POST", "/rest/v1/routes", json=[{"id": ROUTE_ID}], status=201)
    photos = []
    for i in range(7):
        path = tmp_path / f"p{i}.jpg"
        Image.new("RGB", (32, 32)).save(path, format="JPEG")
        photos.append(photo(str(i), PARIS, 1, hour=8 + i, path=str(path)))
    photos.append(photo("gone", PARIS, 1, hour=20, path=str(tmp_path / "missing.jpg")))
    asyncio.run(service.analyze(photos))

    asyncio.run(service.sync_to_database())

    assert len(server.calls("POST", "/rest/v1/media")) == 5
    assert service.stats.photos_uploaded == 5


def test_upload_failures_are_skipped(server, backend, service, tmp_path) -> None:
    server.add("POST", "/rest/v1/routes", json=[{"id": ROUTE_ID}], status=201)
    photos = [photo("gone", PARIS, 1, path=str(tmp_path / "missing.jpg"))]
    asyncio.run(service.analyze(photos))

    asyncio.run(service.sync_to_database())

    assert service.stats.uploads_failed == 1
    assert len(server.calls("POST", "/rest/v1/waypoints")) == 1


def test_sync_with_nothing_selected_is_an_error(service) -> None:
    with pytest.raises(PhotoAnalysisError):
        asyncio.run(service.sync_to_database())


def test_sync_stops_between_waypoints_when_cancelled(server, backend, service) -> None:
    server.add("POST", "/rest/v1/routes", json=[{"id": ROUTE_ID}], status=201)
    asyncio.run(service.analyze([photo("1", PARIS, 1), photo("2", LYON, 2)]))
    token = CancellationToken()
    token.cancel()

    asyncio.run(service.sync_to_database(token=token))

    assert server.calls("POST", "/rest/v1/waypoints") == []
    assert service.stats.cancelled


def test_dates_are_labelled_in_local_time(service) -> None:
    # 23:30 UTC on Jun 1 is already Jun 2 in Paris
    late = PhotoAsset(identifier="1", taken_at=datetime(2025, 6, 1, 23, 30, tzinfo=UTC), latitude=PARIS[0], longitude=PARIS[1])
    waypoints = asyncio.run(service.analyze([late]))
    assert waypoints[0].location_name == "Paris (Jun 2)"
    assert waypoints[0].start_date == datetime(2025, 6, 1, 23, 30, tzinfo=UTC)
    assert waypoints[0].end_date - waypoints[0].start_date == timedelta(0)


def test_html_geocoder_answer_falls_back_to_coordinates(backend, store) -> None:
    nominatim = NominatimGeocoder(
        transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>busy</html>"))
    )
    geocoder = CachingGeocoder(nominatim, delay=0, max_retries=1, retry_delay=0)
    service = PhotoAnalysisService(backend, store, geocoder, MediaManager(backend))

    waypoints = asyncio.run(service.analyze([photo("1", (48.8512, 2.3498), 1)]))

    assert waypoints[0].place_key == "48.85,2.35"
    assert service.stats.geocode_failures == 1


def cached_service(backend, store, cache) -> PhotoAnalysisService:
    geocoder = CachingGeocoder(FakeGeocoder(), delay=0, retry_delay=0)
    return PhotoAnalysisService(backend, store, geocoder, MediaManager(backend), Granularity.CITY, cache=cache)


def test_pause_then_resume_continues_the_open_run(backend, store, cache) -> None:
    service = cached_service(backend, store, cache)
    photos = [photo("1", PARIS, 1), photo("2", PARIS, 2), photo("3", LYON, 3), photo("4", LYON, 4)]
    stop = store.subscribe(AnalysisProgress, lambda e: service.pause() if e.current == 2 else None)

    paused = asyncio.run(service.analyze(photos))
    stop()

    assert paused == []
    assert service.is_paused and service.stats.paused
    saved = cache.get(CHECKPOINT_KEY)
    assert saved["processed"] == 2
    assert [a["identifier"] for a in saved["run"]] == ["1", "2"]
    assert saved["run_key"] == "Paris"

    # a fresh service, as after a restart
    resumed = cached_service(backend, store, cache)
    waypoints = asyncio.run(resumed.analyze(photos, resume=True))

    assert [(w.place_key, w.photo_count) for w in waypoints] == [("Paris", 2), ("Lyon", 2)]
    assert waypoints[0].city == "Paris" and waypoints[0].area_code == "75004"
    assert not resumed.is_paused
    assert cache.get(CHECKPOINT_KEY) is None


def test_checkpoint_for_other_granularity_is_ignored(backend, store, cache) -> None:
    service = cached_service(backend, store, cache)
    photos = [photo("1", PARIS, 1), photo("2", LYON, 2), photo("3", LYON, 3)]
    stop = store.subscribe(AnalysisProgress, lambda e: service.pause() if e.current == 1 else None)
    asyncio.run(service.analyze(photos))
    stop()
    assert service.has_checkpoint

    waypoints = asyncio.run(service.analyze(photos, Granularity.COUNTRY, resume=True))

    assert [(w.place_key, w.photo_count) for w in waypoints] == [("France", 3)]
    assert not service.has_checkpoint


def test_cancelling_discards_the_checkpoint(backend, store, cache) -> None:
    service = cached_service(backend, store, cache)
    photos = [photo("1", PARIS, 1), photo("2", LYON, 2)]
    stop = store.subscribe(AnalysisProgress, lambda e: service.pause() if e.current == 1 else None)
    asyncio.run(service.analyze(photos))
    stop()

    token = CancellationToken()
    token.cancel()
    asyncio.run(service.analyze(photos, token=token, resume=True))

    assert not service.has_checkpoint


def test_finished_candidates_stay_pending_until_synced(server, backend, store, cache) -> None:
    server.add("POST", "/rest/v1/routes", json=[{"id": ROUTE_ID}], status=201)
    found = asyncio.run(cached_service(backend, store, cache).analyze([photo("1", PARIS, 1), photo("2", LYON, 2)]))

    later = cached_service(backend, store, cache)
    pending = later.load_pending_waypoints()

    assert [w.id for w in pending] == [w.id for w in found]
    assert [w.location_name for w in pending] == [w.location_name for w in found]
    assert pending[1].start_date == found[1].start_date

    asyncio.run(later.sync_to_database({pending[1].id}))

    rows = [body(r) for r in server.calls("POST", "/rest/v1/waypoints")]
    assert [r["city"] for r in rows] == ["Lyon"]
    assert cache.get(PENDING_KEY) is None
    assert later.waypoints == []


def test_cancelled_sync_keeps_pending(server, backend, store, cache) -> None:
    server.add("POST", "/rest/v1/routes", json=[{"id": ROUTE_ID}], status=201)
    service = cached_service(backend, store, cache)
    asyncio.run(service.analyze([photo("1", PARIS, 1)]))
    token = CancellationToken()
    token.cancel()

    asyncio.run(service.sync_to_database(token=token))

    assert len(cache.get(PENDING_KEY)) == 1
