"""Keyed entity cache with explicit staleness and invalidation.

The cache is the single owner of every fetched or derived value in the client
layer. It is injected into consumers rather than held as a module global, and
it is only ever touched from the event loop, so no entry is observed
half-updated and no locks are needed. A multi-threaded port would need a lock
per key (or one global lock).

Values are treated as immutable: writers replace a value (``set``) or derive a
new one from the old (``update``); nobody mutates a stored value in place. That
makes snapshots cheap, since restoring the old reference restores the old
state exactly.

Every entry carries a generation counter. A fetch remembers the generation it
started under and its result is discarded if the entry was overwritten,
cancelled, or abandoned by its last observer in the meantime.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Hashable, Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

from feed_sync.core.errors import BackendError
from feed_sync.core.settings import settings

# Configure logger for this module
logger = logging.getLogger(__name__)

CacheKey = tuple[Hashable, ...]
Fetcher = Callable[[], Awaitable[Any]]
RefetchType = Literal["none", "active"]


def key_matches(key: CacheKey, prefix: CacheKey) -> bool:
    """Return True if ``key`` starts with ``prefix`` (an empty prefix matches all)."""
    return key[: len(prefix)] == prefix


@dataclass
class CacheEntry:
    """State held for a single cache key."""

    key: CacheKey
    value: Any = None
    has_value: bool = False
    fetched_at: float | None = None
    updated_at: float = 0.0
    is_stale: bool = False
    pending_invalidation: bool = False
    error: BaseException | None = None
    last_access: float = 0.0
    generation: int = 0


@dataclass(frozen=True)
class QueryState:
    """Point-in-time view of a key handed to readers."""

    data: Any
    is_loading: bool
    is_stale: bool
    error: BaseException | None


@dataclass(frozen=True)
class _SnapshotItem:
    has_value: bool
    value: Any
    is_stale: bool


@dataclass(frozen=True)
class CacheSnapshot:
    """Saved values of a set of keys, restorable verbatim."""

    items: dict[CacheKey, _SnapshotItem] = field(default_factory=dict)

    @property
    def keys(self) -> list[CacheKey]:
        return list(self.items)


class Observer:
    """Registration of a consumer that is currently displaying a key."""

    def __init__(self, cache: EntityCache, key: CacheKey, fetcher: Fetcher) -> None:
        self.cache = cache
        self.key = key
        self.fetcher = fetcher
        self.closed = False

    @property
    def state(self) -> QueryState:
        return self.cache.state(self.key)

    async def refresh(self, *, stale_after: float | None = None) -> QueryState:
        """Read the key through the cache, fetching if needed."""
        return await self.cache.query(self.key, self.fetcher, stale_after=stale_after)

    def close(self) -> None:
        """Unsubscribe; an in-flight fetch nobody else observes is discarded."""
        if not self.closed:
            self.closed = True
            self.cache._release(self)


class EntityCache:
    """Explicit key-value store for fetched and optimistic data."""

    def __init__(
        self,
        *,
        retention_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.retention_seconds = (
            settings.cache_retention_seconds if retention_seconds is None else retention_seconds
        )
        self._clock = clock
        self._entries: OrderedDict[CacheKey, CacheEntry] = OrderedDict()
        self._inflight: dict[CacheKey, asyncio.Task[Any]] = {}
        self._observers: dict[CacheKey, list[Observer]] = {}
        self._fetchers: dict[CacheKey, Fetcher] = {}

    # --- Reads ----------------------------------------------------------------------
    def __contains__(self, key: CacheKey) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.has_value

    def keys(self, prefix: CacheKey = ()) -> list[CacheKey]:
        """Return cached keys starting with ``prefix``."""
        return [key for key in self._entries if key_matches(key, prefix)]

    def get_entry(self, key: CacheKey) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is not None:
            self._touch(entry)
        return entry

    def get(self, key: CacheKey, default: Any = None) -> Any:
        """Return the cached value for ``key`` or ``default``."""
        entry = self.get_entry(key)
        if entry is None or not entry.has_value:
            return default
        return entry.value

    def state(self, key: CacheKey) -> QueryState:
        """Return the current ``QueryState`` for ``key`` without fetching."""
        entry = self._entries.get(key)
        is_loading = key in self._inflight
        if entry is None:
            return QueryState(data=None, is_loading=is_loading, is_stale=False, error=None)
        return QueryState(
            data=entry.value if entry.has_value else None,
            is_loading=is_loading,
            is_stale=entry.is_stale,
            error=entry.error,
        )

    def is_active(self, key: CacheKey) -> bool:
        """Return True if some consumer is currently observing ``key``."""
        return bool(self._observers.get(key))

    def is_fetching(self, key: CacheKey) -> bool:
        return key in self._inflight

    # --- Writes ---------------------------------------------------------------------
    def set(self, key: CacheKey, value: Any) -> Any:
        """Overwrite the value for ``key``.

        Any fetch in flight for the key is superseded: its result will be
        discarded when it resolves.
        """
        entry = self._ensure_entry(key)
        entry.generation += 1
        entry.value = value
        entry.has_value = True
        entry.updated_at = self._clock()
        entry.error = None
        self._touch(entry)
        return value

    def update(self, key: CacheKey, fn: Callable[[Any], Any]) -> Any:
        """Derive a new value from the current one (copy-on-write) and store it."""
        current = self.get(key)
        return self.set(key, fn(current))

    def remove(self, prefix: CacheKey) -> list[CacheKey]:
        """Drop every entry matching ``prefix``."""
        self.cancel(prefix)
        removed = self.keys(prefix)
        for key in removed:
            del self._entries[key]
            if not self.is_active(key):
                self._fetchers.pop(key, None)
        return removed

    def clear(self) -> None:
        """Drop everything, e.g. on sign-out or account deletion."""
        self.cancel(())
        self._entries.clear()
        self._fetchers.clear()

    # --- Fetching -------------------------------------------------------------------
    async def fetch(self, key: CacheKey, fetcher: Fetcher) -> Any:
        """Fetch ``key`` now, joining a fetch already in flight.

        Returns:
            The fetched value, or the cached value if the fetch was superseded.

        Raises:
            BackendError: If the fetch failed.
        """
        self._fetchers[key] = fetcher
        task = self._inflight.get(key) or self._start_fetch(key, fetcher)
        await asyncio.wait({task})
        if task.cancelled():
            return self.get(key)
        exc = task.exception()
        if exc is not None:
            raise exc
        return task.result()

    async def query(
        self,
        key: CacheKey,
        fetcher: Fetcher,
        *,
        stale_after: float | None = None,
    ) -> QueryState:
        """Return the key's state, fetching first unless the value is fresh.

        Fetch failures are reported through ``QueryState.error`` rather than
        raised; previously cached data stays visible alongside the error.
        """
        entry = self.get_entry(key)
        if entry is not None and self._is_fresh(entry, stale_after):
            return self.state(key)
        try:
            await self.fetch(key, fetcher)
        except BackendError as exc:
            logger.warning("Query for %s failed: %s", key, exc)
        return self.state(key)

    def observe(self, key: CacheKey, fetcher: Fetcher) -> Observer:
        """Register a consumer that is displaying ``key``."""
        observer = Observer(self, key, fetcher)
        self._observers.setdefault(key, []).append(observer)
        self._fetchers[key] = fetcher
        return observer

    def _release(self, observer: Observer) -> None:
        observers = self._observers.get(observer.key, [])
        if observer in observers:
            observers.remove(observer)
        if not observers:
            self._observers.pop(observer.key, None)
            if observer.key in self._inflight:
                logger.debug("Last observer left %s, discarding in-flight fetch", observer.key)
                self._cancel_key(observer.key)

    def _start_fetch(self, key: CacheKey, fetcher: Fetcher) -> asyncio.Task[Any]:
        entry = self._ensure_entry(key)
        generation = entry.generation
        task = asyncio.get_running_loop().create_task(self._run_fetch(key, fetcher, generation))
        self._inflight[key] = task
        task.add_done_callback(lambda done: self._finish_fetch(key, done))
        return task

    async def _run_fetch(self, key: CacheKey, fetcher: Fetcher, generation: int) -> Any:
        try:
            value = await fetcher()
        except Exception as exc:
            entry = self._entries.get(key)
            if entry is not None and entry.generation == generation:
                entry.error = exc
            raise

        entry = self._entries.get(key)
        if entry is None or entry.generation != generation:
            logger.debug("Discarding superseded fetch result for %s", key)
            return self.get(key)

        now = self._clock()
        entry.value = value
        entry.has_value = True
        entry.fetched_at = now
        entry.updated_at = now
        entry.error = None
        entry.is_stale = entry.pending_invalidation
        entry.pending_invalidation = False
        self._touch(entry)
        return value

    def _finish_fetch(self, key: CacheKey, task: asyncio.Task[Any]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Fetch for %s failed: %s", key, task.exception())

    # --- Invalidation and cancellation ---------------------------------------------
    def invalidate(self, prefix: CacheKey, *, refetch: RefetchType = "none") -> list[CacheKey]:
        """Mark matching entries stale.

        Stale entries are refetched lazily on their next read. With
        ``refetch="active"`` the keys that currently have observers are
        refetched in the background right away.
        """
        matched = self.keys(prefix)
        for key in matched:
            entry = self._entries[key]
            entry.is_stale = True
            if key in self._inflight:
                entry.pending_invalidation = True
            elif refetch == "active" and self.is_active(key) and key in self._fetchers:
                self._start_fetch(key, self._fetchers[key])
        return matched

    def cancel(self, prefix: CacheKey) -> int:
        """Cancel in-flight fetches for keys matching ``prefix``."""
        cancelled = 0
        for key in [key for key in self._inflight if key_matches(key, prefix)]:
            self._cancel_key(key)
            cancelled += 1
        return cancelled

    def _cancel_key(self, key: CacheKey) -> None:
        entry = self._entries.get(key)
        if entry is not None:
            entry.generation += 1
        task = self._inflight.pop(key, None)
        if task is not None:
            task.cancel()

    async def settle(self) -> None:
        """Wait until no fetch is in flight."""
        while self._inflight:
            await asyncio.wait(set(self._inflight.values()))

    # --- Snapshots ------------------------------------------------------------------
    def snapshot(self, keys: Sequence[CacheKey]) -> CacheSnapshot:
        """Capture the current values of ``keys`` (including absence)."""
        items: dict[CacheKey, _SnapshotItem] = {}
        for key in keys:
            entry = self._entries.get(key)
            if entry is None or not entry.has_value:
                items[key] = _SnapshotItem(has_value=False, value=None, is_stale=False)
            else:
                items[key] = _SnapshotItem(
                    has_value=True, value=entry.value, is_stale=entry.is_stale
                )
        return CacheSnapshot(items)

    def restore(self, snapshot: CacheSnapshot) -> None:
        """Put every key of ``snapshot`` back exactly as it was captured."""
        for key, item in snapshot.items.items():
            if not item.has_value:
                entry = self._entries.get(key)
                if entry is not None:
                    entry.generation += 1
                    entry.value = None
                    entry.has_value = False
                continue
            self.set(key, item.value)
            self._entries[key].is_stale = item.is_stale

    # --- Retention ------------------------------------------------------------------
    def evict_expired(self) -> list[CacheKey]:
        """Drop unobserved entries idle longer than the retention window.

        Entries are visited least recently used first.
        """
        now = self._clock()
        evicted: list[CacheKey] = []
        for key, entry in list(self._entries.items()):
            if now - entry.last_access <= self.retention_seconds:
                break
            if self.is_active(key) or key in self._inflight:
                continue
            del self._entries[key]
            self._fetchers.pop(key, None)
            evicted.append(key)
        if evicted:
            logger.debug("Evicted %d idle cache entries", len(evicted))
        return evicted

    def __iter__(self) -> Iterator[CacheKey]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    # --- Internals ------------------------------------------------------------------
    def _ensure_entry(self, key: CacheKey) -> CacheEntry:
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(key=key, last_access=self._clock())
            self._entries[key] = entry
        return entry

    def _touch(self, entry: CacheEntry) -> None:
        entry.last_access = self._clock()
        self._entries.move_to_end(entry.key)

    def _is_fresh(self, entry: CacheEntry, stale_after: float | None) -> bool:
        if not entry.has_value or entry.is_stale:
            return False
        if stale_after is None:
            return True
        return self._clock() - entry.updated_at < stale_after
