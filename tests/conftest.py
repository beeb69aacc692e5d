"""Shared fixtures: an in-memory fake of the backend's REST surface."""

import json
from collections import defaultdict
from uuid import UUID

import httpx
import pytest

from travelpact.backend import BackendClient
from travelpact.cache import KeyValueCache
from travelpact.store import StateStore

BASE_URL = "http://backend.test"
USER_ID = UUID("11111111-1111-1111-1111-111111111111")


class FakeServer:
    """Answers requests from queued responses per (method, path).

    The last queued response for a route is sticky. Unrouted GETs return an
    empty list; unrouted writes return 201 with no body.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.routes = defaultdict(list)
        self.user = {"id": str(USER_ID), "email": "me@example.com", "phone": "+15550100"}

    def add(self, method: str, path: str, json=None, status: int = 200, headers=None) -> None:
        self.routes[(method, path)].append(
            lambda request: httpx.Response(status, json=json, headers=headers or {})
        )

    def add_handler(self, method: str, path: str, handler) -> None:
        self.routes[(method, path)].append(handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if queue:
            respond = queue.pop(0) if len(queue) > 1 else queue[0]
            return respond(request)
        if request.url.path == "/auth/v1/user":
            return httpx.Response(200, json=self.user)
        if request.method == "GET":
            return httpx.Response(200, json=[])
        return httpx.Response(201)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]


def body(request: httpx.Request):
    return json.loads(request.content)


def params(request: httpx.Request) -> dict:
    return dict(request.url.params.multi_items())


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def backend(server):
    return BackendClient(
        BASE_URL,
        "anon-key",
        access_token="user-token",
        transport=httpx.MockTransport(server.handler),
    )


@pytest.fixture
def store():
    return StateStore()


@pytest.fixture
def cache(tmp_path):
    return KeyValueCache(tmp_path / "cache.json")
