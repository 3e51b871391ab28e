"""Optimistic block and unblock-all mutations."""

from __future__ import annotations

from collections.abc import Sequence

from feed_sync.services.backend import RemoteService
from feed_sync.services.blocklist import (
    BLOCKS_COLLECTION,
    Blocklist,
    BlocklistResolver,
    blocks_key,
)
from feed_sync.services.cache import CacheKey, EntityCache
from feed_sync.services.pipeline import Invalidation, Mutation, MutationContext

# Every surface that filters by the blocklist.
_BLOCK_DEPENDENTS = (
    ("posts",),
    ("post",),
    ("user-posts",),
    ("comments",),
    ("chat-messages",),
    ("chat-summaries",),
    ("global-unread-count",),
)


def _current(cache: EntityCache, viewer_id: str) -> Blocklist | None:
    value = cache.get(blocks_key(viewer_id))
    return value if isinstance(value, Blocklist) else None


class BlockUser(Mutation[str, None]):
    """Hide a user everywhere immediately, then record the block."""

    name = "block_user"

    def __init__(self, viewer_id: str) -> None:
        self.viewer_id = viewer_id

    def keys(self, cache: EntityCache, variables: str) -> Sequence[CacheKey]:
        return (blocks_key(self.viewer_id),)

    def apply(self, cache: EntityCache, variables: str, context: MutationContext) -> None:
        # Without a loaded blocklist there is nothing to edit; a lone entry
        # would read as fresh and drop the edges that were never fetched.
        current = _current(cache, self.viewer_id)
        if current is not None:
            cache.set(blocks_key(self.viewer_id), BlocklistResolver.with_user(current, variables))

    async def dispatch(
        self, service: RemoteService, variables: str, context: MutationContext
    ) -> None:
        if variables == self.viewer_id:
            raise ValueError("You cannot block yourself")
        await service.write(
            BLOCKS_COLLECTION,
            "insert",
            {"blocker_id": self.viewer_id, "blocked_id": variables},
        )

    def invalidations(self, variables: str, result: None) -> Sequence[Invalidation]:
        return (
            Invalidation(blocks_key(self.viewer_id), "active"),
            *(Invalidation(prefix) for prefix in _BLOCK_DEPENDENTS),
        )


class UnblockAll(Mutation[None, None]):
    """Remove every block the viewer created.

    Users who blocked the viewer stay hidden; only outgoing edges are deleted.
    """

    name = "unblock_all"

    def __init__(self, viewer_id: str) -> None:
        self.viewer_id = viewer_id

    def keys(self, cache: EntityCache, variables: None) -> Sequence[CacheKey]:
        return (blocks_key(self.viewer_id),)

    def apply(self, cache: EntityCache, variables: None, context: MutationContext) -> None:
        current = _current(cache, self.viewer_id)
        if current is not None:
            cache.set(blocks_key(self.viewer_id), BlocklistResolver.without_outgoing(current))

    async def dispatch(
        self, service: RemoteService, variables: None, context: MutationContext
    ) -> None:
        await service.write(BLOCKS_COLLECTION, "delete", match={"blocker_id": self.viewer_id})

    def invalidations(self, variables: None, result: None) -> Sequence[Invalidation]:
        return (
            Invalidation(("blocks",), "active"),
            *(Invalidation(prefix) for prefix in _BLOCK_DEPENDENTS),
        )
