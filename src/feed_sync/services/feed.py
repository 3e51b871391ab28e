"""Feed pagination, merge and ranking.

A feed is held in the cache as a ``FeedPages`` value: the raw pages exactly as
the backend returned them, in request order. Everything a reader sees is
derived from that value by ``merge_feed`` on every read, so an optimistic edit
or a late page never has to re-sort anything in place.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from feed_sync.core.settings import settings
from feed_sync.schemas.post import PostSummary
from feed_sync.schemas.registry import parse_records
from feed_sync.services.backend import RecordQuery, RemoteService
from feed_sync.services.blocklist import Blocklist, BlocklistResolver, filter_posts
from feed_sync.services.cache import CacheKey, EntityCache, QueryState
from feed_sync.utils.time import utcnow

# Configure logger for this module
logger = logging.getLogger(__name__)

POSTS_VIEW = "posts_summary_view"


class FeedFilter(str, Enum):
    """Ordering modes of the main feed."""

    NEW = "new"
    TOP = "top"
    HOT = "hot"


def feed_key(feed_filter: FeedFilter) -> CacheKey:
    return ("posts", "feed", FeedFilter(feed_filter).value)


def post_key(post_id: str) -> CacheKey:
    return ("post", post_id)


def original_post_key(post_id: str) -> CacheKey:
    return ("original-post", post_id)


def user_posts_key(user_id: str) -> CacheKey:
    return ("user-posts", user_id)


def page_size(feed_filter: FeedFilter) -> int:
    """Return the page size for a filter; hot pulls a wide candidate set."""
    if feed_filter == FeedFilter.HOT:
        return settings.hot_page_size
    return settings.feed_page_size


@dataclass(frozen=True)
class PageRequest:
    """Offset, limit and predicate for one feed page."""

    offset: int
    limit: int
    query: RecordQuery


def page_request(
    feed_filter: FeedFilter,
    page: int,
    now: datetime | None = None,
) -> PageRequest:
    """Build the backend request for page ``page`` (zero-based) of a feed.

    ``new`` orders by creation time over all history. ``top`` orders by score
    and ``hot`` by creation time, both restricted to the last
    ``FEED_WINDOW_DAYS`` days. Banned posts and non-feed posts are excluded
    for every filter.
    """
    if page < 0:
        raise ValueError("page must be >= 0")
    feed_filter = FeedFilter(feed_filter)
    size = page_size(feed_filter)

    at_least: dict[str, datetime] = {}
    if feed_filter in (FeedFilter.TOP, FeedFilter.HOT):
        now = now or utcnow()
        at_least["created_at"] = now - timedelta(days=settings.feed_window_days)

    return PageRequest(
        offset=page * size,
        limit=size,
        query=RecordQuery(
            equals={"post_type": "feed"},
            at_least=at_least,
            not_true=("is_banned",),
            order_by="vote_score" if feed_filter == FeedFilter.TOP else "created_at",
        ),
    )


def has_next_page(last_page: Sequence[PostSummary], feed_filter: FeedFilter) -> bool:
    """A short page is the last page; a full page may have a successor."""
    return len(last_page) >= page_size(feed_filter)


def engagement(post: PostSummary) -> int:
    return abs(post.vote_score) + post.comment_count + post.repost_count


def dedupe_posts(posts: Iterable[PostSummary]) -> list[PostSummary]:
    """Drop repeated post ids, keeping the latest record at the earliest position."""
    by_id: dict[str, PostSummary] = {}
    for post in posts:
        by_id[post.post_id] = post
    return list(by_id.values())


def merge_feed(
    pages: Iterable[Iterable[PostSummary]],
    feed_filter: FeedFilter,
    blocked: Blocklist | Iterable[str] = (),
) -> list[PostSummary]:
    """Produce the displayed feed from its raw pages.

    Pages are concatenated in order and de-duplicated by post id, then the
    repost-aware block filter is applied. For ``hot`` the result is re-ranked
    by engagement; the sort is stable, so ties keep their recency order.
    """
    posts = dedupe_posts(post for page in pages for post in page)
    posts = filter_posts(posts, blocked)
    if FeedFilter(feed_filter) == FeedFilter.HOT:
        posts = sorted(posts, key=engagement, reverse=True)
    return posts


@dataclass(frozen=True)
class FeedPages:
    """Immutable sequence of raw feed pages.

    Every editing method returns a new value; the receiver is never changed.
    """

    pages: tuple[tuple[PostSummary, ...], ...] = ()

    def __len__(self) -> int:
        return len(self.pages)

    @property
    def posts(self) -> list[PostSummary]:
        return [post for page in self.pages for post in page]

    def append(self, page: Iterable[PostSummary]) -> FeedPages:
        return FeedPages((*self.pages, tuple(page)))

    def prepend(self, post: PostSummary) -> FeedPages:
        """Insert ``post`` at the head of page 0."""
        if not self.pages:
            return FeedPages(((post,),))
        return FeedPages(((post, *self.pages[0]), *self.pages[1:]))

    def map_posts(self, fn: Callable[[PostSummary], PostSummary | None]) -> FeedPages:
        """Replace every post with ``fn(post)``; a None result drops the post."""
        pages = []
        for page in self.pages:
            mapped = (fn(post) for post in page)
            pages.append(tuple(post for post in mapped if post is not None))
        return FeedPages(tuple(pages))

    def replace(self, post_id: str, fn: Callable[[PostSummary], PostSummary | None]) -> FeedPages:
        """Apply ``fn`` to the posts whose id is ``post_id``."""
        return self.map_posts(lambda post: fn(post) if post.post_id == post_id else post)

    def without(self, post_id: str) -> FeedPages:
        return self.replace(post_id, lambda post: None)

    def contains(self, post_id: str) -> bool:
        return any(post.post_id == post_id for post in self.posts)


@dataclass(frozen=True)
class FeedView:
    """What a feed screen renders."""

    posts: list[PostSummary] = field(default_factory=list)
    has_next_page: bool = False
    is_loading: bool = False
    is_stale: bool = False
    error: BaseException | None = None


class FeedService:
    """Loads, pages and renders the main feeds through the entity cache."""

    def __init__(
        self,
        service: RemoteService,
        cache: EntityCache,
        blocklist: BlocklistResolver,
        *,
        stale_after: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.service = service
        self.cache = cache
        self.blocklist = blocklist
        self.stale_after = settings.feed_stale_seconds if stale_after is None else stale_after
        self._clock = clock or utcnow

    async def fetch_page(self, feed_filter: FeedFilter, page: int) -> list[PostSummary]:
        """Fetch one raw page from the backend."""
        request = page_request(feed_filter, page, self._clock())
        rows = await self.service.fetch_page(
            POSTS_VIEW, request.query, request.offset, request.limit
        )
        return parse_records(POSTS_VIEW, rows)

    async def _fetch_pages(self, feed_filter: FeedFilter, count: int) -> FeedPages:
        pages = FeedPages()
        for page in range(max(1, count)):
            posts = await self.fetch_page(feed_filter, page)
            pages = pages.append(posts)
            if not has_next_page(posts, feed_filter):
                break
        return pages

    def _fetcher(self, feed_filter: FeedFilter):
        key = feed_key(feed_filter)

        async def fetch() -> FeedPages:
            # A refetch reloads as many pages as are already on screen.
            current = self.cache.get(key)
            count = len(current) if isinstance(current, FeedPages) else 1
            return await self._fetch_pages(feed_filter, count)

        return fetch

    async def load(self, feed_filter: FeedFilter) -> QueryState:
        """Return the feed's cache state, fetching page 0 if it is missing or stale."""
        return await self.cache.query(
            feed_key(feed_filter), self._fetcher(feed_filter), stale_after=self.stale_after
        )

    def observe(self, feed_filter: FeedFilter):
        """Register a visible feed so active invalidations refetch it."""
        return self.cache.observe(feed_key(feed_filter), self._fetcher(feed_filter))

    async def fetch_next_page(self, feed_filter: FeedFilter) -> FeedPages:
        """Append the next page to the cached feed.

        If the feed was replaced (refresh, optimistic edit rollback) while the
        page was in flight, the page is dropped rather than appended to a
        value it was not requested against.
        """
        key = feed_key(feed_filter)
        current = self.cache.get(key)
        if not isinstance(current, FeedPages) or not current.pages:
            await self.load(feed_filter)
            return self.cache.get(key, FeedPages())
        if not has_next_page(current.pages[-1], feed_filter):
            return current

        posts = await self.fetch_page(feed_filter, len(current))
        if self.cache.get(key) is not current:
            logger.debug("Feed %s changed while paging, dropping page %d", key, len(current))
            return self.cache.get(key, FeedPages())
        return self.cache.set(key, current.append(posts))

    async def refresh(self, feed_filter: FeedFilter) -> QueryState:
        """Force a refetch of the feed's loaded pages."""
        self.cache.invalidate(feed_key(feed_filter))
        return await self.load(feed_filter)

    async def view(self, viewer_id: str | None, feed_filter: FeedFilter) -> FeedView:
        """Return the merged, filtered feed for a viewer."""
        blocked = await self.blocklist.resolve(viewer_id)
        state = await self.load(feed_filter)
        pages = state.data if isinstance(state.data, FeedPages) else FeedPages()
        return FeedView(
            posts=merge_feed(pages.pages, feed_filter, blocked),
            has_next_page=bool(pages.pages) and has_next_page(pages.pages[-1], feed_filter),
            is_loading=state.is_loading,
            is_stale=state.is_stale,
            error=state.error,
        )

    async def original_post(self, post_id: str) -> PostSummary | None:
        """Return the original post of a repost, or None if gone or banned."""

        async def fetch() -> PostSummary | None:
            rows = await self.service.fetch_by_ids(POSTS_VIEW, [post_id], id_field="post_id")
            posts = [post for post in parse_records(POSTS_VIEW, rows) if not post.is_banned]
            return posts[0] if posts else None

        state = await self.cache.query(original_post_key(post_id), fetch)
        return state.data

    async def user_posts(self, user_id: str, viewer_id: str | None = None) -> list[PostSummary]:
        """Return a user's own non-anonymous posts, newest first."""

        async def fetch() -> tuple[PostSummary, ...]:
            rows = await self.service.fetch_page(
                POSTS_VIEW,
                RecordQuery(
                    equals={"user_id": user_id, "is_anonymous": False},
                    not_true=("is_banned",),
                    order_by="created_at",
                ),
                0,
                settings.hot_page_size,
            )
            return tuple(parse_records(POSTS_VIEW, rows))

        state = await self.cache.query(user_posts_key(user_id), fetch, stale_after=self.stale_after)
        blocked = await self.blocklist.resolve(viewer_id)
        return filter_posts(state.data or (), blocked)

    async def post(self, post_id: str) -> PostSummary | None:
        """Return a single post for its detail screen."""
        state = await self.cache.query(
            post_key(post_id), self._post_fetcher(post_id), stale_after=self.stale_after
        )
        return state.data

    def observe_post(self, post_id: str):
        return self.cache.observe(post_key(post_id), self._post_fetcher(post_id))

    def _post_fetcher(self, post_id: str):
        async def fetch() -> PostSummary | None:
            rows = await self.service.fetch_by_ids(POSTS_VIEW, [post_id], id_field="post_id")
            posts = parse_records(POSTS_VIEW, rows)
            return posts[0] if posts else None

        return fetch


def cached_post_keys(cache: EntityCache, post_id: str) -> list[CacheKey]:
    """Return every cached key whose value currently holds ``post_id``."""
    keys: list[CacheKey] = []
    for key in [*cache.keys(("posts", "feed")), *cache.keys(("user-posts",))]:
        value = cache.get(key)
        if isinstance(value, FeedPages) and value.contains(post_id):
            keys.append(key)
        elif isinstance(value, tuple) and any(post.post_id == post_id for post in value):
            keys.append(key)
    if post_key(post_id) in cache:
        keys.append(post_key(post_id))
    return keys


def update_cached_post(
    cache: EntityCache,
    post_id: str,
    fn: Callable[[PostSummary], PostSummary | None],
) -> None:
    """Rewrite ``post_id`` everywhere it is cached; a None result removes it."""
    for key in cached_post_keys(cache, post_id):
        value = cache.get(key)
        if isinstance(value, FeedPages):
            cache.set(key, value.replace(post_id, fn))
        elif isinstance(value, tuple):
            mapped = (fn(post) if post.post_id == post_id else post for post in value)
            cache.set(key, tuple(post for post in mapped if post is not None))
        elif isinstance(value, PostSummary):
            cache.set(key, fn(value))


def find_cached_post(cache: EntityCache, post_id: str) -> PostSummary | None:
    """Return the first cached copy of ``post_id``, the single-post key first."""
    single = cache.get(post_key(post_id))
    if isinstance(single, PostSummary):
        return single
    for key in cached_post_keys(cache, post_id):
        value = cache.get(key)
        posts = value.posts if isinstance(value, FeedPages) else value
        if isinstance(posts, (list, tuple)):
            for post in posts:
                if isinstance(post, PostSummary) and post.post_id == post_id:
                    return post
    return None
