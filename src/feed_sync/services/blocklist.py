"""Blocklist resolution and the visibility filters built on it.

Blocking is a directed edge, but visibility is symmetric: a viewer never sees
content from users they blocked nor from users who blocked them.

Fail mode: when the edge queries fail the resolver either shows everything
(``open``, the default: a transient network error should not blank a whole
feed) or hides every identified author (``closed``). The mode is fixed per
resolver, and one resolver serves every surface, so feeds, comments and chat
always agree. Anonymous content stays visible in both modes.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Literal

from feed_sync.core.settings import settings
from feed_sync.schemas.block import BlockEdge
from feed_sync.schemas.chat import ChatMessage
from feed_sync.schemas.post import PostSummary
from feed_sync.schemas.registry import parse_records
from feed_sync.services.backend import RecordQuery, RemoteService
from feed_sync.services.cache import CacheKey, EntityCache

# Configure logger for this module
logger = logging.getLogger(__name__)

BLOCKS_COLLECTION = "blocks"
BLOCKS_FETCH_LIMIT = 1000

FailMode = Literal["open", "closed"]


class Blocklist:
    """Set of user ids hidden from a viewer.

    ``outgoing`` holds the users the viewer blocked; the positional ids are
    everyone else hidden (users who blocked the viewer). Membership covers both.

    ``Blocklist.everyone()`` hides every identified user; it is what a
    fail-closed resolver returns when the edges cannot be loaded.
    """

    __slots__ = ("_user_ids", "_incoming", "_outgoing", "_hide_everyone")

    def __init__(
        self,
        user_ids: Iterable[str] = (),
        *,
        outgoing: Iterable[str] = (),
        hide_everyone: bool = False,
    ) -> None:
        self._incoming = frozenset(user_ids)
        self._outgoing = frozenset(outgoing)
        self._user_ids = self._incoming | self._outgoing
        self._hide_everyone = hide_everyone

    @classmethod
    def everyone(cls) -> Blocklist:
        return cls(hide_everyone=True)

    @property
    def user_ids(self) -> frozenset[str]:
        return self._user_ids

    @property
    def incoming(self) -> frozenset[str]:
        return self._incoming

    @property
    def outgoing(self) -> frozenset[str]:
        """Users the viewer blocked (as opposed to users who blocked the viewer)."""
        return self._outgoing

    @property
    def hides_everyone(self) -> bool:
        return self._hide_everyone

    def __contains__(self, user_id: object) -> bool:
        if user_id is None:
            return False
        return self._hide_everyone or user_id in self._user_ids

    def __len__(self) -> int:
        return len(self._user_ids)

    def __bool__(self) -> bool:
        return self._hide_everyone or bool(self._user_ids)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Blocklist):
            return NotImplemented
        return (self._user_ids, self._hide_everyone) == (other._user_ids, other._hide_everyone)

    def __hash__(self) -> int:
        return hash((self._user_ids, self._hide_everyone))

    def __repr__(self) -> str:
        if self._hide_everyone:
            return "Blocklist.everyone()"
        return f"Blocklist({sorted(self._user_ids)!r})"


def blocks_key(viewer_id: str) -> CacheKey:
    return ("blocks", viewer_id)


def hidden_users(viewer_id: str, edges: Iterable[BlockEdge]) -> Blocklist:
    """Return everyone the viewer blocked plus everyone who blocked the viewer."""
    outgoing: set[str] = set()
    incoming: set[str] = set()
    for edge in edges:
        if edge.blocker_id == viewer_id:
            outgoing.add(edge.blocked_id)
        elif edge.blocked_id == viewer_id:
            incoming.add(edge.blocker_id)
    outgoing.discard(viewer_id)
    incoming.discard(viewer_id)
    return Blocklist(incoming, outgoing=outgoing)


def is_post_visible(post: PostSummary, blocked: Blocklist | Iterable[str]) -> bool:
    """Apply the repost-aware block rule to a single feed item.

    An item is hidden if its author is blocked, unless the item is anonymous.
    A repost is also hidden if the original author is blocked, unless the
    original is anonymous.
    """
    if post.is_anonymous:
        return True
    if post.user_id in blocked:
        return False
    if post.original_user_id and not post.original_is_anonymous:
        return post.original_user_id not in blocked
    return True


def filter_posts(
    posts: Iterable[PostSummary], blocked: Blocklist | Iterable[str]
) -> list[PostSummary]:
    """Return the posts visible under ``blocked``, preserving order."""
    blocked = _as_blocklist(blocked)
    if not blocked:
        return list(posts)
    return [post for post in posts if is_post_visible(post, blocked)]


def filter_messages(
    messages: Iterable[ChatMessage], blocked: Blocklist | Iterable[str]
) -> list[ChatMessage]:
    """Return the chat messages whose sender is not blocked."""
    blocked = _as_blocklist(blocked)
    return [message for message in messages if message.user_id not in blocked]


def _as_blocklist(blocked: Blocklist | Iterable[str]) -> Blocklist:
    return blocked if isinstance(blocked, Blocklist) else Blocklist(blocked)


class BlocklistResolver:
    """Resolve and cache the symmetric hidden set for a viewer."""

    def __init__(
        self,
        service: RemoteService,
        cache: EntityCache,
        *,
        fail_mode: FailMode | None = None,
        stale_after: float | None = None,
    ) -> None:
        self.service = service
        self.cache = cache
        self.fail_mode: FailMode = fail_mode or settings.blocklist_fail_mode
        self.stale_after = settings.blocks_stale_seconds if stale_after is None else stale_after

    async def _fetch_edges(self, viewer_id: str) -> list[BlockEdge]:
        blocked_by_viewer, blocking_viewer = await asyncio.gather(
            self.service.fetch_page(
                BLOCKS_COLLECTION,
                RecordQuery(equals={"blocker_id": viewer_id}, select="blocker_id,blocked_id"),
                0,
                BLOCKS_FETCH_LIMIT,
            ),
            self.service.fetch_page(
                BLOCKS_COLLECTION,
                RecordQuery(equals={"blocked_id": viewer_id}, select="blocker_id,blocked_id"),
                0,
                BLOCKS_FETCH_LIMIT,
            ),
        )
        return parse_records(BLOCKS_COLLECTION, [*blocked_by_viewer, *blocking_viewer])

    async def _load(self, viewer_id: str) -> Blocklist:
        return hidden_users(viewer_id, await self._fetch_edges(viewer_id))

    async def resolve(self, viewer_id: str | None) -> Blocklist:
        """Return the viewer's hidden set, applying the fail mode on errors."""
        if not viewer_id:
            return Blocklist()

        key = blocks_key(viewer_id)
        state = await self.cache.query(
            key, lambda: self._load(viewer_id), stale_after=self.stale_after
        )
        if isinstance(state.data, Blocklist):
            return state.data
        return self._fallback(viewer_id, state.error)

    def _fallback(self, viewer_id: str, error: BaseException | None) -> Blocklist:
        if self.fail_mode == "closed":
            logger.warning(
                "Blocklist unavailable for %s, hiding identified authors: %s", viewer_id, error
            )
            return Blocklist.everyone()
        logger.warning("Blocklist unavailable for %s, showing all content: %s", viewer_id, error)
        return Blocklist()

    def cached(self, viewer_id: str) -> Blocklist:
        """Return the last resolved blocklist without fetching."""
        value = self.cache.get(blocks_key(viewer_id))
        return value if isinstance(value, Blocklist) else Blocklist()

    @staticmethod
    def with_user(blocked: Blocklist, user_id: str) -> Blocklist:
        """Return a copy of ``blocked`` that also hides ``user_id``."""
        return Blocklist(
            blocked.incoming,
            outgoing=[*blocked.outgoing, user_id],
            hide_everyone=blocked.hides_everyone,
        )

    @staticmethod
    def without_outgoing(blocked: Blocklist) -> Blocklist:
        """Return ``blocked`` minus every user the viewer blocked."""
        return Blocklist(blocked.incoming, hide_everyone=blocked.hides_everyone)

