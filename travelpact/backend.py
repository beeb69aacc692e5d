"""REST client for the hosted backend: tables, auth, storage and change feeds.

The backend speaks the PostgREST dialect for tables (``/rest/v1``), a
GoTrue-style auth API (``/auth/v1``) and an object storage API
(``/storage/v1``). Column names pass through untouched.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Optional
from urllib.parse import quote
from uuid import UUID

import httpx

from . import config
from .errors import BackendError, NotAuthenticatedError

logger = logging.getLogger(__name__)


def _encode_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def _jsonable(value: Any) -> Any:
    """Make UUIDs and enums inside a payload JSON-serializable."""
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    return value


@dataclass
class Session:
    """The signed-in user, as reported by the auth service."""
    user_id: UUID
    access_token: str
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class QueryResult:
    data: Any
    count: Optional[int] = None


class TableQuery:
    """Chainable query against one table; nothing is sent until ``execute``."""

    def __init__(self, client: "BackendClient", table: str):
        self._client = client
        self._table = table
        self._method = "GET"
        self._params: list[tuple[str, str]] = []
        self._prefer: list[str] = []
        self._headers: dict[str, str] = {}
        self._body: Any = None

    # Operations

    def select(self, columns: str = "*", count: bool = False) -> "TableQuery":
        # Embedded resources are written multi-line for readability
        self._params.append(("select", "".join(columns.split())))
        if count:
            self._prefer.append("count=exact")
        return self

    def insert(self, rows, returning: bool = False) -> "TableQuery":
        self._method = "POST"
        self._body = _jsonable(rows)
        self._prefer.append("return=representation" if returning else "return=minimal")
        return self

    def upsert(self, rows, on_conflict: Optional[str] = None) -> "TableQuery":
        self._method = "POST"
        self._body = _jsonable(rows)
        self._prefer.extend(["resolution=merge-duplicates", "return=minimal"])
        if on_conflict:
            self._params.append(("on_conflict", on_conflict))
        return self

    def update(self, values: dict) -> "TableQuery":
        self._method = "PATCH"
        self._body = _jsonable(values)
        self._prefer.append("return=minimal")
        return self

    def delete(self) -> "TableQuery":
        self._method = "DELETE"
        return self

    # Filters and modifiers

    def eq(self, column: str, value: Any) -> "TableQuery":
        self._params.append((column, f"eq.{_encode_value(value)}"))
        return self

    def neq(self, column: str, value: Any) -> "TableQuery":
        self._params.append((column, f"neq.{_encode_value(value)}"))
        return self

    def in_(self, column: str, values: Iterable[Any]) -> "TableQuery":
        joined = ",".join(_encode_value(v) for v in values)
        self._params.append((column, f"in.({joined})"))
        return self

    def ilike(self, column: str, pattern: str) -> "TableQuery":
        self._params.append((column, f"ilike.{pattern}"))
        return self

    def order(self, column: str, ascending: bool = True) -> "TableQuery":
        self._params.append(("order", f"{column}.{'asc' if ascending else 'desc'}"))
        return self

    def limit(self, count: int) -> "TableQuery":
        self._params.append(("limit", str(count)))
        return self

    def single(self) -> "TableQuery":
        self._headers["Accept"] = "application/vnd.pgrst.object+json"
        return self

    async def execute(self) -> QueryResult:
        headers = dict(self._headers)
        if self._prefer:
            headers["Prefer"] = ",".join(self._prefer)
        response = await self._client.request(
            self._method,
            f"/rest/v1/{self._table}",
            params=self._params,
            json=self._body,
            headers=headers,
        )
        data = response.json() if response.content else None
        return QueryResult(data=data, count=_parse_count(response.headers.get("Content-Range")))


def _parse_count(content_range: Optional[str]) -> Optional[int]:
    # "0-24/3573" or "*/0"
    if not content_range or "/" not in content_range:
        return None
    total = content_range.rsplit("/", 1)[1]
    return int(total) if total.isdigit() else None


class BackendClient:
    """One shared connection to the backend, handed to every manager."""

    def __init__(
        self,
        url: str,
        api_key: str,
        access_token: str = "",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = config.request_timeout,
    ):
        self.url = config.validate_backend_url(url)
        self._api_key = api_key
        self._access_token = access_token
        self._session: Optional[Session] = None
        self._http = httpx.AsyncClient(
            base_url=self.url,
            timeout=timeout,
            transport=transport,
            headers={"apikey": api_key},
        )

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send one request with auth headers; map failures to BackendError."""
        headers = kwargs.pop("headers", None) or {}
        headers.setdefault("Authorization", f"Bearer {self._access_token or self._api_key}")
        try:
            response = await self._http.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise BackendError(f"Network error talking to backend: {e}") from e

        if response.status_code == 401:
            raise NotAuthenticatedError()
        if response.is_error:
            raise BackendError(
                f"Backend returned {response.status_code} for {method} {path}",
                status_code=response.status_code,
                body=response.text,
            )
        return response

    def table(self, name: str) -> TableQuery:
        return TableQuery(self, name)

    # Auth

    async def get_session(self) -> Session:
        """Return the current session, asking the auth service once per token."""
        if self._session is not None:
            return self._session
        if not self._access_token:
            raise NotAuthenticatedError()

        response = await self.request("GET", "/auth/v1/user")
        user = response.json()
        self._session = Session(
            user_id=UUID(user["id"]),
            access_token=self._access_token,
            email=user.get("email"),
            phone=user.get("phone"),
        )
        return self._session

    def set_access_token(self, token: str) -> None:
        self._access_token = token
        self._session = None

    async def sign_out(self) -> None:
        try:
            if self._access_token:
                await self.request("POST", "/auth/v1/logout")
        finally:
            self._access_token = ""
            self._session = None

    # Storage

    async def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        await self.request(
            "POST",
            f"/storage/v1/object/{bucket}/{quote(path)}",
            content=data,
            headers={"Content-Type": content_type},
        )
        return path

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.url}/storage/v1/object/public/{bucket}/{quote(path)}"

    async def create_signed_url(self, bucket: str, path: str, expires_in: int = config.signed_url_expiry) -> str:
        response = await self.request(
            "POST",
            f"/storage/v1/object/sign/{bucket}/{quote(path)}",
            json={"expiresIn": expires_in},
        )
        signed = response.json().get("signedURL", "")
        if not signed:
            raise BackendError(f"No signed URL returned for {bucket}/{path}")
        return f"{self.url}/storage/v1{signed}"

    # Change feeds

    def subscribe(
        self,
        table: str,
        column: str,
        value: Any,
        callback: Callable[["Change"], None],
        interval: float = config.change_feed_interval,
    ) -> "ChangeFeed":
        feed = ChangeFeed(self, table, column, value, callback, interval)
        feed.start()
        return feed


class ChangeType(Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass
class Change:
    type: ChangeType
    table: str
    record: Optional[dict] = None
    old_record: Optional[dict] = None


@dataclass
class ChangeFeed:
    """Rows of one table matching ``column = value``, watched for changes.

    Each poll diffs the rows against the previous snapshot by ``id``; the
    first poll only records the baseline.
    """
    client: BackendClient
    table: str
    column: str
    value: Any
    callback: Callable[[Change], None]
    interval: float = config.change_feed_interval
    _snapshot: Optional[dict[str, dict]] = field(default=None, init=False)
    _task: Optional[asyncio.Task] = field(default=None, init=False)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def poll_once(self) -> list[Change]:
        result = await self.client.table(self.table).select().eq(self.column, self.value).execute()
        rows = {str(row["id"]): row for row in result.data or []}
        changes: list[Change] = []

        if self._snapshot is not None:
            for row_id, row in rows.items():
                old = self._snapshot.get(row_id)
                if old is None:
                    changes.append(Change(ChangeType.INSERT, self.table, record=row))
                elif old != row:
                    changes.append(Change(ChangeType.UPDATE, self.table, record=row, old_record=old))
            for row_id, old in self._snapshot.items():
                if row_id not in rows:
                    changes.append(Change(ChangeType.DELETE, self.table, old_record=old))

        self._snapshot = rows
        for change in changes:
            try:
                self.callback(change)
            except Exception:
                # a failing subscriber must not end the feed
                logger.exception("Change feed callback on %s failed", self.table)
        return changes

    async def _run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except (BackendError, NotAuthenticatedError) as e:
                logger.warning("Change feed on %s failed: %s", self.table, e.message)
            await asyncio.sleep(self.interval)
