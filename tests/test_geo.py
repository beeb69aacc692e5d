"""Tests for distance, suppression circles and the travel heuristic."""

import pytest

from travelpact.geo import Coordinate, GeofenceCircle, haversine_km, obfuscate, should_suggest_travel


def test_haversine_one_degree_of_latitude() -> None:
    assert haversine_km(Coordinate(0, 0), Coordinate(1, 0)) == pytest.approx(111.19, abs=0.01)


def test_haversine_is_symmetric_and_zero_on_self() -> None:
    paris, berlin = Coordinate(48.8566, 2.3522), Coordinate(52.52, 13.405)
    assert haversine_km(paris, paris) == 0
    assert haversine_km(paris, berlin) == pytest.approx(haversine_km(berlin, paris))
    assert haversine_km(paris, berlin) == pytest.approx(878, abs=2)


def test_suggests_when_far_and_never_suggested() -> None:
    assert should_suggest_travel(Coordinate(1, 0), Coordinate(0, 0), None)


def test_silent_when_already_suggested_here() -> None:
    assert not should_suggest_travel(Coordinate(1, 0), Coordinate(0, 0), Coordinate(1, 0))


def test_silent_when_close_to_known() -> None:
    # ~55 km away
    assert not should_suggest_travel(Coordinate(0.5, 0), Coordinate(0, 0), None)


def test_suggests_again_once_outside_buffer() -> None:
    # last suggestion ~11 km away from the current point
    assert should_suggest_travel(Coordinate(1.1, 0), Coordinate(0, 0), Coordinate(1.0, 0))


def test_geofence_contains() -> None:
    circle = GeofenceCircle(Coordinate(1, 0), 10)
    assert circle.contains(Coordinate(1.05, 0))
    assert not circle.contains(Coordinate(1.2, 0))


@pytest.mark.parametrize(
    "step, expected",
    [
        (0.01, Coordinate(37.77, -122.42)),
        (0.1, Coordinate(37.8, -122.4)),
        (1.0, Coordinate(38.0, -122.0)),
    ],
)
def test_obfuscate_snaps_to_grid(step, expected) -> None:
    assert obfuscate(Coordinate(37.7749, -122.4194), step) == expected
