"""Realtime change notifications turned into cache invalidations.

The backend pushes a ``ChangeNotification`` per committed write. Bursts are
collapsed by ``ChangeCoalescer``: every notification in a debounce window
contributes its prefixes to one pending set, and when the window closes each
prefix is invalidated once. Notifications authored by the viewer are dropped
because the optimistic pipeline already placed them.

``RealtimeSync`` owns the subscriptions and pumps them into the coalescer,
with chat inserts going straight into the message pages instead.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from feed_sync.core.settings import settings
from feed_sync.schemas.common import ChangeNotification
from feed_sync.services.backend import RemoteService, Subscription
from feed_sync.services.cache import CacheKey, EntityCache
from feed_sync.services.chat_service import CHAT_MESSAGES_COLLECTION, ChatService
from feed_sync.services.pipeline import Invalidation

# Configure logger for this module
logger = logging.getLogger(__name__)

# A new post should not reorder the feed under the reader, so feed prefixes are
# only marked stale; everything else is refetched if someone is looking at it.
DEFAULT_INVALIDATION_RULES: dict[str, tuple[Invalidation, ...]] = {
    "posts": (
        Invalidation(("posts", "feed")),
        Invalidation(("user-posts",)),
        Invalidation(("post",), "active"),
    ),
    "votes": (Invalidation(("post",), "active"), Invalidation(("comments",), "active")),
    "comments": (Invalidation(("comments",), "active"), Invalidation(("post",), "active")),
    "blocks": (Invalidation(("blocks",), "active"),),
    "profiles": (Invalidation(("profile",), "active"),),
    "poll_votes": (Invalidation(("poll",), "active"),),
}


@dataclass
class CoalescerStats:
    received: int = 0
    dropped_own: int = 0
    flushes: int = 0
    invalidations: int = 0


class ChangeCoalescer:
    """Collapse change notifications into debounced prefix invalidations.

    The window opens with the first notification after a flush and closes
    ``debounce_seconds`` later regardless of further arrivals, so a steady
    stream still flushes at a bounded rate. When two rules name the same
    prefix in one window the stronger refetch mode wins.
    """

    def __init__(
        self,
        cache: EntityCache,
        viewer_id: str | None,
        *,
        debounce_seconds: float | None = None,
        rules: Mapping[str, Sequence[Invalidation]] | None = None,
    ) -> None:
        self.cache = cache
        self.viewer_id = viewer_id
        self.debounce_seconds = (
            settings.realtime_debounce_seconds if debounce_seconds is None else debounce_seconds
        )
        self.rules = dict(DEFAULT_INVALIDATION_RULES if rules is None else rules)
        self.stats = CoalescerStats()
        self._pending: dict[CacheKey, Invalidation] = {}
        self._timer: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> list[Invalidation]:
        return list(self._pending.values())

    def push(self, notification: ChangeNotification) -> bool:
        """Queue the invalidations for ``notification``; returns True if queued."""
        self.stats.received += 1
        if self.viewer_id is not None and notification.author_id == self.viewer_id:
            self.stats.dropped_own += 1
            return False

        rules = self.rules.get(notification.collection)
        if not rules:
            return False

        for invalidation in rules:
            current = self._pending.get(invalidation.prefix)
            if current is None or current.refetch == "none":
                self._pending[invalidation.prefix] = invalidation

        if self._timer is None:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(self.debounce_seconds, self.flush)
        return True

    def flush(self) -> list[Invalidation]:
        """Invalidate every pending prefix once and close the window."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        pending, self._pending = self._pending, {}
        if not pending:
            return []

        self.stats.flushes += 1
        for invalidation in pending.values():
            self.cache.invalidate(invalidation.prefix, refetch=invalidation.refetch)
            self.stats.invalidations += 1
        logger.debug("Flushed %d realtime invalidation(s)", len(pending))
        return list(pending.values())

    def close(self) -> None:
        """Drop pending invalidations without applying them."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending.clear()


@dataclass
class RealtimeState:
    """Subscriptions and pump tasks owned by a running ``RealtimeSync``."""

    subscriptions: list[Subscription] = field(default_factory=list)
    tasks: list[asyncio.Task[None]] = field(default_factory=list)


class RealtimeSync:
    """Feeds backend change streams into the cache for one viewer."""

    def __init__(
        self,
        service: RemoteService,
        coalescer: ChangeCoalescer,
        *,
        chat: ChatService | None = None,
        collections: Sequence[str] | None = None,
    ) -> None:
        """Initialize the sync.

        Args:
            service: Backend providing ``subscribe``.
            coalescer: Receives every non-chat notification.
            chat: If given, chat message inserts are prepended to cached chats.
            collections: Collections to subscribe to. Defaults to the
                coalescer's rule collections, plus chat messages when ``chat``
                is given.
        """
        self.service = service
        self.coalescer = coalescer
        self.chat = chat
        if collections is None:
            collections = list(coalescer.rules)
            if chat is not None:
                collections.append(CHAT_MESSAGES_COLLECTION)
        self.collections = tuple(dict.fromkeys(collections))
        self.state = RealtimeState()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self.state.tasks)

    async def start(self) -> None:
        """Subscribe to every collection and start pumping notifications."""
        if self.running:
            return
        for collection in self.collections:
            subscription = self.service.subscribe(collection)
            self.state.subscriptions.append(subscription)
            self.state.tasks.append(asyncio.create_task(self._pump(collection, subscription)))

    async def close(self) -> None:
        """Stop the subscriptions and discard any pending invalidations."""
        subscriptions, self.state.subscriptions = self.state.subscriptions, []
        tasks, self.state.tasks = self.state.tasks, []
        for subscription in subscriptions:
            await subscription.close()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self.coalescer.close()

    async def _pump(self, collection: str, subscription: Subscription) -> None:
        async for notification in subscription:
            try:
                self.handle(notification)
            except (ValueError, TypeError, KeyError) as e:
                logger.error(
                    "Realtime notification on %s could not be applied: %s",
                    collection,
                    e,
                    exc_info=True,
                )

    def handle(self, notification: ChangeNotification) -> bool:
        """Route one notification; returns True if it affected the cache."""
        if self.chat is not None and notification.collection == CHAT_MESSAGES_COLLECTION:
            return self.chat.receive(notification, self.coalescer.viewer_id)
        return self.coalescer.push(notification)
