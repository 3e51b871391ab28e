# tests/services/test_post_service.py
"""Tests for creating, deleting and bookmarking posts."""

import asyncio

import pytest

from feed_sync.core.errors import ErrorKind, MutationError, TransportError
from feed_sync.schemas.post import PostCreate, PostSummary
from feed_sync.services.blocklist import BlocklistResolver
from feed_sync.services.cache import EntityCache
from feed_sync.services.feed import (
    FeedFilter,
    FeedPages,
    FeedService,
    feed_key,
    post_key,
    user_posts_key,
)
from feed_sync.services.pipeline import MutationPipeline
from feed_sync.services.post_service import (
    BookmarkService,
    BookmarkToggle,
    CreatePost,
    DeletePost,
    ToggleBookmark,
    bookmarks_key,
    build_post_payload,
)
from feed_sync.utils.ids import is_temp_id
from tests.conftest import NOW, FakeRemoteService, post_row


def _feed(*post_ids: str) -> FeedPages:
    return FeedPages().append(PostSummary.model_validate(post_row(pid)) for pid in post_ids)


def test_payload_requires_content_unless_repost() -> None:
    with pytest.raises(ValueError):
        build_post_payload(PostCreate(content="   "))
    payload = build_post_payload(PostCreate(content="", reposted_from_post_id="p0"))
    assert payload["reposted_from_post_id"] == "p0"


def test_payload_keeps_poll_options_only_for_feed_posts() -> None:
    options = ["yes", "no"]
    feed_post = build_post_payload(PostCreate(content="q?", poll_options=options))
    lost_found = build_post_payload(
        PostCreate(content="lost cat", post_type="lost_found", poll_options=options)
    )
    single = build_post_payload(PostCreate(content="q?", poll_options=["only"]))
    assert feed_post["poll_options"] == options
    assert "poll_options" not in lost_found
    assert "poll_options" not in single


@pytest.mark.asyncio
async def test_create_post_swaps_placeholder_for_saved_post(
    pipeline: MutationPipeline, cache: EntityCache, remote: FakeRemoteService
) -> None:
    cache.set(feed_key(FeedFilter.NEW), _feed("old"))
    mutation = CreatePost("me")

    original_apply = mutation.apply
    seen: list[PostSummary] = []

    def spy_apply(cache, variables, context):
        original_apply(cache, variables, context)
        seen.extend(cache.get(feed_key(FeedFilter.NEW)).posts)

    mutation.apply = spy_apply
    saved = await pipeline.run(mutation, PostCreate(content="hello"))

    assert is_temp_id(seen[0].post_id)
    assert seen[0].username == "You"
    posts = cache.get(feed_key(FeedFilter.NEW)).posts
    assert [p.post_id for p in posts] == [saved.post_id, "old"]
    assert not is_temp_id(saved.post_id)
    assert cache.state(feed_key(FeedFilter.NEW)).is_stale


@pytest.mark.asyncio
async def test_create_post_rolls_back_on_failure(
    pipeline: MutationPipeline, cache: EntityCache, remote: FakeRemoteService
) -> None:
    before = _feed("old")
    cache.set(feed_key(FeedFilter.NEW), before)
    remote.fail("write", TransportError("offline"))

    with pytest.raises(MutationError):
        await pipeline.run(CreatePost("me"), PostCreate(content="hello"))
    assert cache.get(feed_key(FeedFilter.NEW)) is before


@pytest.mark.asyncio
async def test_empty_post_is_rejected_before_sending(
    pipeline: MutationPipeline, cache: EntityCache, remote: FakeRemoteService
) -> None:
    with pytest.raises(MutationError) as excinfo:
        await pipeline.run(CreatePost("me"), PostCreate(content=""))
    assert excinfo.value.kind == ErrorKind.VALIDATION
    assert remote.writes == []
    assert feed_key(FeedFilter.NEW) not in cache


@pytest.mark.asyncio
async def test_lost_found_posts_skip_the_feed(
    pipeline: MutationPipeline, cache: EntityCache, remote: FakeRemoteService
) -> None:
    await pipeline.run(CreatePost("me"), PostCreate(content="keys", post_type="lost_found"))
    assert feed_key(FeedFilter.NEW) not in cache
    assert remote.writes[0][2]["post_type"] == "lost_found"


@pytest.mark.asyncio
async def test_create_post_leaves_unloaded_feed_to_the_server(
    pipeline: MutationPipeline,
    cache: EntityCache,
    remote: FakeRemoteService,
    resolver: BlocklistResolver,
    mocker,
) -> None:
    remote.seed("posts_summary_view", *(post_row(f"s{i}") for i in range(10)))
    gate = asyncio.Event()
    original_write = remote.write

    async def slow_write(*args, **kwargs):
        await gate.wait()
        return await original_write(*args, **kwargs)

    mocker.patch.object(remote, "write", side_effect=slow_write)
    task = asyncio.create_task(pipeline.run(CreatePost("me"), PostCreate(content="hello")))
    await asyncio.sleep(0)

    assert feed_key(FeedFilter.NEW) not in cache
    feed = FeedService(remote, cache, resolver, clock=lambda: NOW)
    view = await feed.view("me", FeedFilter.NEW)
    assert len(view.posts) == 10
    assert not any(is_temp_id(p.post_id) for p in view.posts)
    assert view.has_next_page

    gate.set()
    saved = await task
    assert not is_temp_id(saved.post_id)
    assert cache.state(feed_key(FeedFilter.NEW)).is_stale


@pytest.mark.asyncio
async def test_delete_post_removes_every_cached_copy(
    pipeline: MutationPipeline, cache: EntityCache, remote: FakeRemoteService
) -> None:
    cache.set(feed_key(FeedFilter.NEW), _feed("a", "b"))
    cache.set(feed_key(FeedFilter.TOP), _feed("b"))
    cache.set(user_posts_key("author"), tuple(_feed("a").posts))

    await pipeline.run(DeletePost(), "a")

    assert [p.post_id for p in cache.get(feed_key(FeedFilter.NEW)).posts] == ["b"]
    assert cache.get(user_posts_key("author")) == ()
    assert remote.writes == [("posts", "delete", None, {"id": "a"})]


@pytest.mark.asyncio
async def test_delete_post_failure_restores_feeds(
    pipeline: MutationPipeline, cache: EntityCache, remote: FakeRemoteService
) -> None:
    before = _feed("a", "b")
    cache.set(feed_key(FeedFilter.NEW), before)
    cache.set(post_key("a"), before.posts[0])
    remote.fail("write", TransportError("offline"))

    with pytest.raises(MutationError):
        await pipeline.run(DeletePost(), "a")
    assert cache.get(feed_key(FeedFilter.NEW)) is before
    assert cache.get(post_key("a")) is before.posts[0]


@pytest.mark.asyncio
async def test_toggle_bookmark(
    pipeline: MutationPipeline, cache: EntityCache, remote: FakeRemoteService
) -> None:
    bookmarks = BookmarkService(remote, cache)
    assert not await bookmarks.is_bookmarked("p1", "me")

    await pipeline.run(ToggleBookmark("me"), BookmarkToggle("p1", True))
    assert cache.get(bookmarks_key("p1", "me")) is True
    assert remote.tables["bookmarks"][0]["post_id"] == "p1"

    await pipeline.run(ToggleBookmark("me"), BookmarkToggle("p1", False))
    assert cache.get(bookmarks_key("p1", "me")) is False
    assert remote.tables["bookmarks"] == []
    assert not await bookmarks.is_bookmarked("p1", "me")
