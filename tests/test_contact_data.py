"""Tests for viewing another user's shared routes."""

import asyncio
from uuid import UUID, uuid4

from conftest import USER_ID, params
from travelpact.contact_data import PRIVATE_HISTORY, ContactDataManager
from travelpact.store import ErrorRaised

FRIEND_ID = UUID("22222222-2222-2222-2222-222222222222")


def waypoint_row(name, order, arrival=None, located=True) -> dict:
    return {
        "id": str(uuid4()),
        "name": name,
        "known_location": {"latitude": 1.0, "longitude": 2.0} if located else None,
        "arrival_time": arrival,
        "departure_time": None,
        "city": name,
        "area_code": None,
        "country": "Somewhere",
        "sequence_order": order,
    }


def route_row(name, waypoints) -> dict:
    return {
        "id": str(uuid4()),
        "name": name,
        "description": None,
        "start_date": "2025-01-01T00:00:00Z",
        "end_date": None,
        "waypoints": waypoints,
    }


SHARED_ROUTES = [
    route_row("Old trip", [
        waypoint_row("Rome", 1, "2024-05-02 09:00:00+00"),
        waypoint_row("Pisa", 0, "2024-05-01T09:00:00Z"),
    ]),
    route_row("Nowhere", [waypoint_row("Lost", 0, located=False)]),
    route_row("Recent trip", [
        waypoint_row("Oslo", 0, "2025-03-01T09:00:00Z"),
        waypoint_row("Bergen", 1),
    ]),
]


def test_connected_user_sees_shared_routes(server, backend, store) -> None:
    server.add("GET", "/rest/v1/connections", json=[{"connection_type": "accepted"}])
    server.add("GET", "/rest/v1/routes", json=SHARED_ROUTES)
    manager = ContactDataManager(backend, store)

    routes = asyncio.run(manager.load_contact_routes(FRIEND_ID))

    assert [r.name for r in routes] == ["Recent trip", "Old trip"]
    assert [w.name for w in routes[1].waypoints] == ["Pisa", "Rome"]
    assert routes[0].latest_arrival.year == 2025
    assert manager.error_message == ""

    check = params(server.calls("GET", "/rest/v1/connections")[0])
    assert check["user_id"] == f"eq.{USER_ID}"
    assert check["connection_user_id"] == f"eq.{FRIEND_ID}"
    assert check["connection_type"] == "eq.accepted"
    fetch = params(server.calls("GET", "/rest/v1/routes")[0])
    assert fetch["privacy_level"] == "in.(friends,public)"
    assert fetch["order"] == "start_date.desc"
    assert fetch["select"].startswith("id,name,description,start_date,end_date,waypoints!inner(")


def test_public_route_grants_access(server, backend, store) -> None:
    server.add("GET", "/rest/v1/routes", json=[{"id": str(uuid4())}])
    server.add("GET", "/rest/v1/routes", json=SHARED_ROUTES[:1])
    manager = ContactDataManager(backend, store)

    routes = asyncio.run(manager.load_contact_routes(FRIEND_ID))

    assert [r.name for r in routes] == ["Old trip"]
    check = params(server.calls("GET", "/rest/v1/routes")[0])
    assert check["privacy_level"] == "eq.public"
    assert check["limit"] == "1"


def test_private_history_is_refused(server, backend, store) -> None:
    errors = []
    store.subscribe(ErrorRaised, errors.append)
    manager = ContactDataManager(backend, store)

    routes = asyncio.run(manager.load_contact_routes(FRIEND_ID))

    assert routes == []
    assert manager.error_message == PRIVATE_HISTORY
    assert errors[0].message == PRIVATE_HISTORY
    # only the public-route check, no fetch
    assert len(server.calls("GET", "/rest/v1/routes")) == 1


def test_backend_failure_is_reported(server, backend, store) -> None:
    server.add("GET", "/rest/v1/connections", status=500)
    manager = ContactDataManager(backend, store)

    assert asyncio.run(manager.load_contact_routes(FRIEND_ID)) == []
    assert manager.error_message.startswith("Failed to load travel data:")
