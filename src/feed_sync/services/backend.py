"""Remote backend client for the hosted relational database.

This module provides the ``RemoteService`` protocol the rest of the client
layer depends on, and ``BackendClient``, its HTTP implementation. It includes:

- Record-oriented reads (``fetch_page``, ``fetch_by_ids``)
- Record writes (``insert``, ``update``, ``delete``)
- A cursor-based change stream exposed as a cancellable subscription
- Mapping of HTTP failures onto the client error taxonomy
- Request metrics for diagnostics

Writes are never retried here; callers decide what a failure means.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Protocol

import httpx
from pydantic import ValidationError

from feed_sync.core.errors import (
    AuthorizationError,
    BackendError,
    BackendValidationError,
    TransportError,
)
from feed_sync.core.settings import settings
from feed_sync.schemas.common import ChangeNotification

# Configure logger for this module
logger = logging.getLogger(__name__)

# HTTP status codes
HTTP_UNAUTHORIZED = 401
HTTP_FORBIDDEN = 403
HTTP_BAD_REQUEST = 400
HTTP_INTERNAL_SERVER_ERROR = 500

WriteOperation = Literal["insert", "update", "delete"]
RecordPredicate = Callable[[Mapping[str, Any]], bool]


@dataclass(frozen=True)
class RecordQuery:
    """Transport-agnostic description of a filtered, ordered record read."""

    equals: Mapping[str, Any] = field(default_factory=dict)
    at_least: Mapping[str, Any] = field(default_factory=dict)
    not_true: tuple[str, ...] = ()
    order_by: str | None = None
    descending: bool = True
    select: str = "*"


class Subscription(Protocol):
    """Cancellable stream of change notifications."""

    def __aiter__(self) -> AsyncIterator[ChangeNotification]: ...

    async def close(self) -> None: ...


class RemoteService(Protocol):
    """Operations the client layer consumes from the hosted backend."""

    async def fetch_page(
        self,
        collection: str,
        query: RecordQuery,
        offset: int,
        limit: int,
    ) -> list[dict[str, Any]]: ...

    async def fetch_by_ids(
        self,
        collection: str,
        ids: Sequence[str],
        *,
        id_field: str = "id",
    ) -> list[dict[str, Any]]: ...

    async def write(
        self,
        collection: str,
        operation: WriteOperation,
        payload: Mapping[str, Any] | None = None,
        *,
        match: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None: ...

    def subscribe(
        self,
        collection: str,
        predicate: RecordPredicate | None = None,
    ) -> Subscription: ...


@dataclass
class BackendMetrics:
    """Metrics collection for backend requests."""

    request_count: int = 0
    error_count: int = 0
    total_response_time: float = 0.0
    error_counts_by_type: dict[str, int] = field(default_factory=lambda: defaultdict(int))

    def record_request(self, response_time: float, error_type: str | None = None) -> None:
        """Record a request metric."""
        self.request_count += 1
        self.total_response_time += response_time
        if error_type:
            self.error_count += 1
            self.error_counts_by_type[error_type] += 1

    def get_average_response_time(self) -> float:
        """Get average response time."""
        return self.total_response_time / self.request_count if self.request_count > 0 else 0.0


@dataclass(frozen=True)
class BackendConfig:
    """Immutable configuration for backend operations."""

    base_url: str
    api_key: str | None
    access_token: str | None
    timeout_seconds: float
    poll_interval_seconds: float


def load_backend_config() -> BackendConfig:
    """Build configuration object from global settings."""

    return BackendConfig(
        base_url=settings.backend_url,
        api_key=settings.backend_api_key,
        access_token=settings.backend_access_token,
        timeout_seconds=float(settings.backend_timeout_seconds),
        poll_interval_seconds=float(settings.realtime_poll_interval_seconds),
    )


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def build_query_params(query: RecordQuery) -> dict[str, str]:
    """Translate a ``RecordQuery`` into REST filter parameters."""
    params: dict[str, str] = {"select": query.select}
    for column, value in query.equals.items():
        params[column] = f"eq.{_format_value(value)}"
    for column, value in query.at_least.items():
        params[column] = f"gte.{_format_value(value)}"
    for column in query.not_true:
        params[column] = "not.is.true"
    if query.order_by:
        direction = "desc" if query.descending else "asc"
        params["order"] = f"{query.order_by}.{direction}"
    return params


def _match_params(match: Mapping[str, Any]) -> dict[str, str]:
    return {column: f"eq.{_format_value(value)}" for column, value in match.items()}


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text.strip() or f"Request rejected ({response.status_code})"
    if isinstance(body, Mapping):
        message = body.get("error") or body.get("message")
        if message:
            return str(message)
    return f"Request rejected ({response.status_code})"


class ChangeStream:
    """Polls the backend change endpoint and yields matching notifications.

    Iterating the stream starts the polling task; ``close()`` stops it and
    ends iteration. Backend failures while polling are logged and backed
    off; any other failure is logged and ends iteration.
    """

    def __init__(
        self,
        client: BackendClient,
        collection: str,
        predicate: RecordPredicate | None = None,
    ) -> None:
        self._client = client
        self.collection = collection
        self._predicate = predicate
        self._queue: asyncio.Queue[ChangeNotification | None] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self._closed = False
        self.cursor: str | None = None

    def __aiter__(self) -> AsyncIterator[ChangeNotification]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ChangeNotification]:
        if self._task is None and not self._closed:
            self._task = asyncio.create_task(self._run())
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item

    async def _run(self) -> None:
        interval = max(0.1, self._client.config.poll_interval_seconds)
        try:
            while not self._closed:
                try:
                    cursor, notifications = await self._client.pull_changes(
                        self.collection, self.cursor
                    )
                except BackendError as e:
                    logger.warning("Change stream for %s failed: %s", self.collection, e)
                    await asyncio.sleep(min(interval * 4, 30.0))
                    continue

                for notification in notifications:
                    if self._predicate is None or self._predicate(notification.record):
                        self._queue.put_nowait(notification)
                if cursor:
                    self.cursor = cursor
                await asyncio.sleep(interval)
        except Exception:
            logger.exception("Change stream for %s stopped", self.collection)
        finally:
            # Wake the consumer so iteration ends instead of waiting forever.
            self._queue.put_nowait(None)

    async def close(self) -> None:
        """Stop polling and end iteration."""
        if self._closed:
            return
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._queue.put_nowait(None)


class BackendClient:
    """HTTP client wrapper for the hosted backend's REST surface."""

    def __init__(
        self,
        config: BackendConfig | None = None,
        *,
        token_provider: Callable[[], str | None] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or load_backend_config()
        self._token_provider = token_provider
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()
        self._metrics = BackendMetrics()

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self.config.base_url,
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                    transport=self._transport,
                )
        return self._client

    def _build_auth_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self.config.api_key:
            headers["apikey"] = self.config.api_key
        token = self._token_provider() if self._token_provider else self.config.access_token
        token = token or self.config.api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, str] | None = None,
        json_data: Any | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> httpx.Response:
        client = await self._ensure_client()
        request_headers = self._build_auth_headers()
        if headers:
            request_headers.update(headers)

        start_time = time.monotonic()
        error_type: str | None = None
        try:
            response = await client.request(
                method,
                path,
                params=params,
                json=json_data,
                headers=request_headers,
            )
        except httpx.TimeoutException as exc:
            error_type = "timeout"
            raise TransportError(f"Backend request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            error_type = "network_error"
            raise TransportError(f"Backend request failed: {exc}") from exc
        finally:
            if error_type is not None:
                self._metrics.record_request(time.monotonic() - start_time, error_type)

        status_code = response.status_code
        if status_code < HTTP_BAD_REQUEST:
            self._metrics.record_request(time.monotonic() - start_time)
            return response

        self._metrics.record_request(time.monotonic() - start_time, f"http_{status_code}")
        message = _error_message(response)
        if status_code in (HTTP_UNAUTHORIZED, HTTP_FORBIDDEN):
            raise AuthorizationError(message, status_code=status_code)
        if status_code >= HTTP_INTERNAL_SERVER_ERROR:
            raise TransportError(
                f"Backend responded with {status_code}: {message}",
                status_code=status_code,
            )
        raise BackendValidationError(message, status_code=status_code)

    @staticmethod
    def _rows(response: httpx.Response) -> list[dict[str, Any]]:
        if not response.content:
            return []
        body = response.json()
        if isinstance(body, Mapping):
            if body.get("error"):
                raise BackendValidationError(str(body["error"]), status_code=response.status_code)
            return [dict(body)]
        return [dict(row) for row in body or []]

    async def fetch_page(
        self,
        collection: str,
        query: RecordQuery,
        offset: int,
        limit: int,
    ) -> list[dict[str, Any]]:
        """Fetch up to ``limit`` rows starting at ``offset``."""
        params = build_query_params(query)
        params["offset"] = str(offset)
        params["limit"] = str(limit)
        response = await self._request("GET", f"/rest/v1/{collection}", params=params)
        return self._rows(response)

    async def fetch_by_ids(
        self,
        collection: str,
        ids: Sequence[str],
        *,
        id_field: str = "id",
    ) -> list[dict[str, Any]]:
        """Fetch the rows whose ``id_field`` is one of ``ids``."""
        if not ids:
            return []
        quoted = ",".join(f'"{value}"' for value in ids)
        params = {"select": "*", id_field: f"in.({quoted})"}
        response = await self._request("GET", f"/rest/v1/{collection}", params=params)
        return self._rows(response)

    async def write(
        self,
        collection: str,
        operation: WriteOperation,
        payload: Mapping[str, Any] | None = None,
        *,
        match: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Insert, update, or delete records.

        Args:
            collection: Target collection name.
            operation: ``insert``, ``update`` or ``delete``.
            payload: Row data for inserts and updates.
            match: Equality filters selecting the rows to update or delete.

        Returns:
            The written row for inserts and updates, None for deletes.

        Raises:
            ValueError: If an update or delete has no ``match`` filter.
            BackendError: If the backend rejects the write or cannot be reached.
        """
        path = f"/rest/v1/{collection}"
        prefer = {"Prefer": "return=representation"}

        if operation == "insert":
            response = await self._request(
                "POST", path, json_data=dict(payload or {}), headers=prefer
            )
        elif operation in ("update", "delete"):
            if not match:
                raise ValueError(f"{operation} on {collection} requires a match filter")
            if operation == "update":
                response = await self._request(
                    "PATCH",
                    path,
                    params=_match_params(match),
                    json_data=dict(payload or {}),
                    headers=prefer,
                )
            else:
                await self._request("DELETE", path, params=_match_params(match))
                return None
        else:
            raise ValueError(f"Unsupported write operation: {operation}")

        rows = self._rows(response)
        return rows[0] if rows else None

    async def pull_changes(
        self,
        collection: str,
        cursor: str | None = None,
    ) -> tuple[str | None, list[ChangeNotification]]:
        """Pull one batch of change notifications for a collection."""
        params: dict[str, str] = {}
        if cursor:
            params["cursor"] = cursor
        response = await self._request(
            "GET",
            f"/realtime/v1/changes/{collection}",
            params=params,
        )
        try:
            payload = response.json() if response.content else {}
        except ValueError as e:
            raise BackendValidationError(f"Malformed change batch: {e}") from e
        if not isinstance(payload, Mapping):
            raise BackendValidationError("Malformed change batch: expected an object")

        notifications: list[ChangeNotification] = []
        for item in payload.get("events") or []:
            try:
                if not isinstance(item, Mapping):
                    raise TypeError(f"expected an object, got {type(item).__name__}")
                notification = ChangeNotification(
                    operation=item.get("operation", "UPDATE"),
                    collection=collection,
                    record=item.get("record") or {},
                    committed_at=item.get("committed_at"),
                )
            except (TypeError, ValidationError) as e:
                logger.warning("Skipping malformed change on %s: %s", collection, e)
                continue
            notifications.append(notification)
        cursor = payload.get("cursor")
        return (str(cursor) if cursor else None), notifications

    def subscribe(
        self,
        collection: str,
        predicate: RecordPredicate | None = None,
    ) -> ChangeStream:
        """Return a cancellable stream of changes to ``collection``."""
        return ChangeStream(self, collection, predicate)

    def get_metrics(self) -> dict[str, Any]:
        """Return request metrics for diagnostics."""
        return {
            "request_count": self._metrics.request_count,
            "error_count": self._metrics.error_count,
            "average_response_time": self._metrics.get_average_response_time(),
            "error_counts_by_type": dict(self._metrics.error_counts_by_type),
        }

    async def close(self) -> None:
        """Clean up underlying HTTP client resources."""

        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None


class _BackendClientSingleton:
    """Singleton wrapper for BackendClient."""

    _instance: BackendClient | None = None

    @classmethod
    def get_instance(cls) -> BackendClient:
        """Get or create the singleton BackendClient instance."""
        if cls._instance is None:
            cls._instance = BackendClient()
        return cls._instance


def get_backend_client() -> BackendClient:
    """Return a singleton backend client instance."""
    return _BackendClientSingleton.get_instance()
