# tests/conftest.py
from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime, timedelta
from itertools import count
from typing import Any

import pytest

from feed_sync.schemas.common import ChangeNotification
from feed_sync.services.backend import RecordPredicate, RecordQuery
from feed_sync.services.blocklist import BlocklistResolver
from feed_sync.services.cache import EntityCache
from feed_sync.services.pipeline import MutationPipeline

NOW = datetime(2026, 5, 1, 12, 0, tzinfo=UTC)

_ROW_COUNTER = count(1)


def post_row(post_id: str, **overrides: Any) -> dict[str, Any]:
    """Return a ``posts_summary_view`` row."""
    row: dict[str, Any] = {
        "post_id": post_id,
        "user_id": "author",
        "content": f"content of {post_id}",
        "post_type": "feed",
        "is_anonymous": False,
        "is_banned": False,
        "created_at": NOW - timedelta(minutes=next(_ROW_COUNTER)),
        "vote_score": 0,
        "comment_count": 0,
        "repost_count": 0,
        "username": "author",
    }
    row.update(overrides)
    return row


def comment_row(comment_id: str, post_id: str = "p1", **overrides: Any) -> dict[str, Any]:
    row: dict[str, Any] = {
        "id": comment_id,
        "post_id": post_id,
        "user_id": "u1",
        "content": f"comment {comment_id}",
        "parent_comment_id": None,
        "is_anonymous": False,
        "is_deleted": False,
        "created_at": NOW + timedelta(seconds=next(_ROW_COUNTER)),
        "score": 0,
    }
    row.update(overrides)
    return row


def vote_row(vote_id: str, user_id: str, vote_type: str, **target: str) -> dict[str, Any]:
    return {"id": vote_id, "user_id": user_id, "vote_type": vote_type, **target}


def notification(collection: str, operation: str = "INSERT", **record: Any) -> ChangeNotification:
    return ChangeNotification(operation=operation, collection=collection, record=record)


class FakeSubscription:
    """Queue-backed change stream; ``close()`` ends iteration."""

    def __init__(self, collection: str, predicate: RecordPredicate | None = None) -> None:
        self.collection = collection
        self.predicate = predicate
        self.queue: asyncio.Queue[ChangeNotification | None] = asyncio.Queue()
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            item = await self.queue.get()
            if item is None:
                return
            yield item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.queue.put_nowait(None)


class FakeRemoteService:
    """In-memory stand-in for the hosted backend.

    Collections are lists of row dicts. ``fail(method, exc)`` makes the next
    calls of ``method`` (optionally for one collection) raise ``exc``;
    ``hold(collection)`` parks reads of a collection until the returned event
    is set.
    """

    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self.calls: list[tuple[Any, ...]] = []
        self.writes: list[tuple[str, str, dict[str, Any] | None, dict[str, Any] | None]] = []
        self.subscriptions: dict[str, list[FakeSubscription]] = defaultdict(list)
        self._failures: dict[tuple[str, str | None], BaseException] = {}
        self._holds: dict[str, asyncio.Event] = {}
        self._ids = count(1)

    # --- Test controls --------------------------------------------------------------
    def seed(self, collection: str, *rows: Mapping[str, Any]) -> None:
        self.tables[collection].extend(dict(row) for row in rows)

    def fail(self, method: str, exc: BaseException, collection: str | None = None) -> None:
        self._failures[(method, collection)] = exc

    def recover(self) -> None:
        self._failures.clear()

    def hold(self, collection: str) -> asyncio.Event:
        event = asyncio.Event()
        self._holds[collection] = event
        return event

    def emit(self, item: ChangeNotification) -> None:
        for subscription in self.subscriptions[item.collection]:
            if subscription.predicate is None or subscription.predicate(item.record):
                subscription.queue.put_nowait(item)

    def calls_to(self, method: str, collection: str | None = None) -> list[tuple[Any, ...]]:
        return [
            call
            for call in self.calls
            if call[0] == method and (collection is None or call[1] == collection)
        ]

    async def _enter(self, method: str, collection: str) -> None:
        exc = self._failures.get((method, collection)) or self._failures.get((method, None))
        if exc is not None:
            raise exc
        event = self._holds.get(collection)
        if event is not None and method != "write":
            await event.wait()

    # --- RemoteService --------------------------------------------------------------
    async def fetch_page(
        self,
        collection: str,
        query: RecordQuery,
        offset: int,
        limit: int,
    ) -> list[dict[str, Any]]:
        self.calls.append(("fetch_page", collection, query, offset, limit))
        await self._enter("fetch_page", collection)
        rows = [row for row in self.tables[collection] if _matches(row, query)]
        if query.order_by:
            rows.sort(key=lambda row: row[query.order_by], reverse=query.descending)
        return [dict(row) for row in rows[offset : offset + limit]]

    async def fetch_by_ids(
        self,
        collection: str,
        ids: Sequence[str],
        *,
        id_field: str = "id",
    ) -> list[dict[str, Any]]:
        self.calls.append(("fetch_by_ids", collection, tuple(ids), id_field))
        await self._enter("fetch_by_ids", collection)
        wanted = set(ids)
        return [dict(row) for row in self.tables[collection] if row.get(id_field) in wanted]

    async def write(
        self,
        collection: str,
        operation: str,
        payload: Mapping[str, Any] | None = None,
        *,
        match: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        payload = dict(payload) if payload is not None else None
        match = dict(match) if match is not None else None
        self.calls.append(("write", collection, operation, payload, match))
        self.writes.append((collection, operation, payload, match))
        await self._enter("write", collection)

        table = self.tables[collection]
        if operation == "insert":
            row = {
                "id": f"{collection}-{next(self._ids)}",
                "created_at": datetime.now(UTC),
                **(payload or {}),
            }
            table.append(row)
            return dict(row)
        matched = [row for row in table if _equals(row, match or {})]
        if operation == "update":
            for row in matched:
                row.update(payload or {})
            return dict(matched[0]) if matched else None
        self.tables[collection] = [row for row in table if row not in matched]
        return None

    def subscribe(
        self,
        collection: str,
        predicate: RecordPredicate | None = None,
    ) -> FakeSubscription:
        subscription = FakeSubscription(collection, predicate)
        self.subscriptions[collection].append(subscription)
        return subscription


def _equals(row: Mapping[str, Any], expected: Mapping[str, Any]) -> bool:
    return all(row.get(key) == value for key, value in expected.items())


def _matches(row: Mapping[str, Any], query: RecordQuery) -> bool:
    if not _equals(row, query.equals):
        return False
    for key, bound in query.at_least.items():
        if row.get(key) is None or row[key] < bound:
            return False
    return all(row.get(key) is not True for key in query.not_true)


@pytest.fixture()
def remote() -> FakeRemoteService:
    return FakeRemoteService()


@pytest.fixture()
def cache() -> EntityCache:
    return EntityCache(retention_seconds=60)


@pytest.fixture()
def resolver(remote: FakeRemoteService, cache: EntityCache) -> BlocklistResolver:
    return BlocklistResolver(remote, cache, fail_mode="open")


@pytest.fixture()
def pipeline(remote: FakeRemoteService, cache: EntityCache) -> MutationPipeline:
    return MutationPipeline(cache, remote)
