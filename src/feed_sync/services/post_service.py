"""Service-level helpers for creating, deleting and bookmarking posts."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import TypeAdapter

from feed_sync.core.errors import BackendValidationError
from feed_sync.schemas.post import PostCreate, PostSummary
from feed_sync.services.backend import RecordQuery, RemoteService
from feed_sync.services.cache import CacheKey, EntityCache
from feed_sync.services.feed import (
    FeedFilter,
    FeedPages,
    cached_post_keys,
    feed_key,
    post_key,
    update_cached_post,
    user_posts_key,
)
from feed_sync.services.pipeline import Invalidation, Mutation, MutationContext
from feed_sync.utils.ids import is_temp_id, new_temp_id
from feed_sync.utils.time import utcnow

POSTS_COLLECTION = "posts"
BOOKMARKS_COLLECTION = "bookmarks"
MIN_POLL_OPTIONS = 2

_DATETIME = TypeAdapter(datetime)


def bookmarks_key(post_id: str, viewer_id: str) -> CacheKey:
    return ("bookmarks", post_id, viewer_id)


def build_post_payload(post: PostCreate) -> dict[str, Any]:
    """Validate a new post and shape the insert payload.

    Raises:
        ValueError: If a non-repost has no content.
    """
    content = post.content.strip()
    if not post.reposted_from_post_id and not content:
        raise ValueError("Content is required")

    payload: dict[str, Any] = {
        "content": content,
        "post_type": post.post_type,
        "image_url": post.image_url,
        "is_anonymous": post.is_anonymous,
    }
    if post.reposted_from_post_id:
        payload["reposted_from_post_id"] = post.reposted_from_post_id
    options = post.poll_options or []
    if post.post_type == "feed" and len(options) >= MIN_POLL_OPTIONS:
        payload["poll_options"] = list(options)
    return payload


def placeholder_post(post: PostCreate, viewer_id: str, temp_id: str) -> PostSummary:
    """Return the summary shown for a post until the backend confirms it."""
    content = post.content.strip()
    return PostSummary(
        post_id=temp_id,
        user_id=viewer_id,
        content=content,
        post_type=post.post_type,
        is_anonymous=post.is_anonymous,
        is_banned=False,
        created_at=utcnow(),
        image_url=post.image_url,
        username="Anonymous" if post.is_anonymous else "You",
        reposted_from_post_id=post.reposted_from_post_id,
        repost_comment=content if post.reposted_from_post_id else None,
    )


class CreatePost(Mutation[PostCreate, PostSummary]):
    """Prepend a placeholder to the ``new`` feed, then swap in the saved post."""

    name = "create_post"

    def __init__(self, viewer_id: str) -> None:
        self.viewer_id = viewer_id

    def keys(self, cache: EntityCache, variables: PostCreate) -> Sequence[CacheKey]:
        if variables.post_type != "feed":
            return ()
        return (feed_key(FeedFilter.NEW),)

    def apply(self, cache: EntityCache, variables: PostCreate, context: MutationContext) -> None:
        if variables.post_type != "feed":
            return
        context.temp_id = new_temp_id()
        placeholder = placeholder_post(variables, self.viewer_id, context.temp_id)
        context.data["placeholder"] = placeholder
        # An unloaded feed is left alone; a page holding only the placeholder
        # would pass for the real first page.
        pages = cache.get(feed_key(FeedFilter.NEW))
        if isinstance(pages, FeedPages):
            cache.set(feed_key(FeedFilter.NEW), pages.prepend(placeholder))

    async def dispatch(
        self, service: RemoteService, variables: PostCreate, context: MutationContext
    ) -> PostSummary:
        payload = build_post_payload(variables)
        row = await service.write(POSTS_COLLECTION, "insert", payload)
        if not row or not row.get("id"):
            raise BackendValidationError("Invalid response from server")

        base = context.data.get("placeholder") or placeholder_post(
            variables, self.viewer_id, str(row["id"])
        )
        created_at = row.get("created_at")
        return base.model_copy(
            update={
                "post_id": str(row["id"]),
                "created_at": (
                    _DATETIME.validate_python(created_at) if created_at else base.created_at
                ),
            }
        )

    def reconcile(
        self,
        cache: EntityCache,
        variables: PostCreate,
        result: PostSummary,
        context: MutationContext,
    ) -> None:
        if context.temp_id is None:
            return
        key = feed_key(FeedFilter.NEW)
        pages = cache.get(key)
        if isinstance(pages, FeedPages) and pages.contains(context.temp_id):
            cache.set(key, pages.replace(context.temp_id, lambda post: result))

    def invalidations(self, variables: PostCreate, result: PostSummary) -> Sequence[Invalidation]:
        return (Invalidation(("posts", "feed")), Invalidation(user_posts_key(self.viewer_id)))


class DeletePost(Mutation[str, None]):
    """Remove a post from every cached feed before the delete is confirmed."""

    name = "delete_post"

    def keys(self, cache: EntityCache, variables: str) -> Sequence[CacheKey]:
        return cached_post_keys(cache, variables)

    def apply(self, cache: EntityCache, variables: str, context: MutationContext) -> None:
        update_cached_post(cache, variables, lambda post: None)

    async def dispatch(
        self, service: RemoteService, variables: str, context: MutationContext
    ) -> None:
        if is_temp_id(variables):
            raise ValueError("Cannot delete a post that has not been saved yet")
        await service.write(POSTS_COLLECTION, "delete", match={"id": variables})

    def invalidations(self, variables: str, result: None) -> Sequence[Invalidation]:
        return (
            Invalidation(("posts",)),
            Invalidation(post_key(variables)),
            Invalidation(("user-posts",)),
            Invalidation(("bookmarks",)),
        )


@dataclass(frozen=True)
class BookmarkToggle:
    post_id: str
    bookmarked: bool


class ToggleBookmark(Mutation[BookmarkToggle, None]):
    name = "toggle_bookmark"

    def __init__(self, viewer_id: str) -> None:
        self.viewer_id = viewer_id

    def keys(self, cache: EntityCache, variables: BookmarkToggle) -> Sequence[CacheKey]:
        return (bookmarks_key(variables.post_id, self.viewer_id),)

    def apply(
        self, cache: EntityCache, variables: BookmarkToggle, context: MutationContext
    ) -> None:
        cache.set(bookmarks_key(variables.post_id, self.viewer_id), variables.bookmarked)

    async def dispatch(
        self, service: RemoteService, variables: BookmarkToggle, context: MutationContext
    ) -> None:
        if variables.bookmarked:
            await service.write(
                BOOKMARKS_COLLECTION,
                "insert",
                {"user_id": self.viewer_id, "post_id": variables.post_id},
            )
        else:
            await service.write(
                BOOKMARKS_COLLECTION,
                "delete",
                match={"user_id": self.viewer_id, "post_id": variables.post_id},
            )

    def invalidations(self, variables: BookmarkToggle, result: None) -> Sequence[Invalidation]:
        return (
            Invalidation(("bookmarks", variables.post_id), "active"),
            Invalidation(("posts", "feed"), "active"),
            Invalidation(user_posts_key(self.viewer_id)),
        )


class BookmarkService:
    """Read whether the viewer bookmarked a post."""

    def __init__(self, service: RemoteService, cache: EntityCache) -> None:
        self.service = service
        self.cache = cache

    async def is_bookmarked(self, post_id: str, viewer_id: str) -> bool:
        async def fetch() -> bool:
            if is_temp_id(post_id):
                return False
            rows = await self.service.fetch_page(
                BOOKMARKS_COLLECTION,
                RecordQuery(equals={"user_id": viewer_id, "post_id": post_id}),
                0,
                1,
            )
            return bool(rows)

        state = await self.cache.query(bookmarks_key(post_id, viewer_id), fetch)
        return bool(state.data)
