# tests/services/test_vote_service.py
"""Tests for optimistic post and comment voting."""

import asyncio

import pytest

from feed_sync.core.errors import MutationError, TransportError
from feed_sync.schemas.comment import Comment
from feed_sync.schemas.post import PostSummary
from feed_sync.schemas.vote import VoteType
from feed_sync.services.cache import EntityCache
from feed_sync.services.comment_service import comments_key
from feed_sync.services.feed import FeedFilter, FeedPages, feed_key, post_key
from feed_sync.services.pipeline import MutationPipeline
from feed_sync.services.vote_service import (
    CastVote,
    VoteRequest,
    score_key,
    user_vote_key,
)
from feed_sync.services.votes import VoteAction
from feed_sync.utils.ids import new_temp_id
from tests.conftest import FakeRemoteService, comment_row, post_row, vote_row


def _cache_post(cache: EntityCache, **overrides) -> PostSummary:
    post = PostSummary.model_validate(post_row("p1", **overrides))
    cache.set(feed_key(FeedFilter.NEW), FeedPages().append([post]))
    cache.set(post_key("p1"), post)
    return post


def _feed_post(cache: EntityCache) -> PostSummary:
    return cache.get(feed_key(FeedFilter.NEW)).posts[0]


@pytest.mark.asyncio
async def test_upvote_inserts_and_updates_every_copy(
    pipeline: MutationPipeline, cache: EntityCache, remote: FakeRemoteService
) -> None:
    _cache_post(cache, vote_score=3)
    outcome = await pipeline.run(CastVote("me"), VoteRequest("post", "p1", VoteType.UP))

    assert outcome.plan.action == VoteAction.INSERT
    assert _feed_post(cache).vote_score == 4
    assert _feed_post(cache).user_vote is VoteType.UP
    assert cache.get(post_key("p1")).vote_score == 4
    assert cache.get(user_vote_key("me", "post", "p1")) is VoteType.UP
    assert remote.tables["votes"][0]["post_id"] == "p1"


@pytest.mark.asyncio
async def test_same_vote_again_toggles_off(
    pipeline: MutationPipeline, cache: EntityCache, remote: FakeRemoteService
) -> None:
    remote.seed("votes", vote_row("v1", "me", "upvote", post_id="p1"))
    _cache_post(cache, vote_score=4, user_vote="upvote")

    outcome = await pipeline.run(CastVote("me"), VoteRequest("post", "p1", VoteType.UP))

    assert outcome.plan.action == VoteAction.DELETE
    assert _feed_post(cache).vote_score == 3
    assert _feed_post(cache).user_vote is None
    assert remote.tables["votes"] == []


@pytest.mark.asyncio
async def test_opposite_vote_updates_in_one_write(
    pipeline: MutationPipeline, cache: EntityCache, remote: FakeRemoteService
) -> None:
    remote.seed("votes", vote_row("v1", "me", "upvote", post_id="p1"))
    _cache_post(cache, vote_score=4, user_vote="upvote")

    await pipeline.run(CastVote("me"), VoteRequest("post", "p1", VoteType.DOWN))

    assert _feed_post(cache).vote_score == 2
    writes = [w for w in remote.writes if w[0] == "votes"]
    assert writes == [("votes", "update", {"vote_type": "downvote"}, {"id": "v1"})]


@pytest.mark.asyncio
async def test_dispatch_plans_against_server_vote(
    pipeline: MutationPipeline, cache: EntityCache, remote: FakeRemoteService
) -> None:
    # The cache thinks there is no vote, the server already has one.
    remote.seed("votes", vote_row("v1", "me", "downvote", post_id="p1"))
    _cache_post(cache)

    outcome = await pipeline.run(CastVote("me"), VoteRequest("post", "p1", VoteType.UP))
    assert outcome.plan.action == VoteAction.UPDATE
    assert remote.tables["votes"][0]["vote_type"] == "upvote"
    assert _feed_post(cache).user_vote is VoteType.UP
    assert _feed_post(cache).vote_score == 2


@pytest.mark.asyncio
async def test_failed_vote_restores_score_and_user_vote(
    pipeline: MutationPipeline, cache: EntityCache, remote: FakeRemoteService
) -> None:
    post = _cache_post(cache, vote_score=3)
    cache.set(score_key("post", "p1"), 3)
    remote.fail("write", TransportError("offline"))

    with pytest.raises(MutationError):
        await pipeline.run(CastVote("me"), VoteRequest("post", "p1", VoteType.UP))

    assert _feed_post(cache) is post
    assert cache.get(score_key("post", "p1")) == 3
    assert user_vote_key("me", "post", "p1") not in cache


@pytest.mark.asyncio
async def test_comment_vote_rescores_cached_thread(
    pipeline: MutationPipeline, cache: EntityCache, remote: FakeRemoteService
) -> None:
    key = comments_key("p1", "me")
    cache.set(
        key,
        tuple(Comment.model_validate(comment_row(cid, score=1)) for cid in ("c1", "c2")),
    )

    await pipeline.run(
        CastVote("me"), VoteRequest("comment", "c2", VoteType.DOWN, post_id="p1")
    )

    assert [c.score for c in cache.get(key)] == [1, 0]
    assert remote.tables["votes"][0]["comment_id"] == "c2"
    assert cache.state(key).is_stale


@pytest.mark.asyncio
async def test_vote_on_unsaved_item_is_rejected(
    pipeline: MutationPipeline, cache: EntityCache, remote: FakeRemoteService
) -> None:
    temp_id = new_temp_id()
    with pytest.raises(MutationError):
        await pipeline.run(CastVote("me"), VoteRequest("comment", temp_id, VoteType.UP))
    assert remote.calls == []
    assert user_vote_key("me", "comment", temp_id) not in cache


def _cache_feed_only(cache: EntityCache, **overrides) -> None:
    post = PostSummary.model_validate(post_row("p1", **overrides))
    cache.set(feed_key(FeedFilter.NEW), FeedPages().append([post]))


@pytest.mark.asyncio
async def test_feed_only_post_toggles_off_existing_vote(
    pipeline: MutationPipeline, cache: EntityCache, remote: FakeRemoteService
) -> None:
    remote.seed("votes", vote_row("v1", "me", "upvote", post_id="p1"))
    _cache_feed_only(cache, vote_score=5, user_vote="upvote")
    gate = remote.hold("votes")

    task = asyncio.create_task(
        pipeline.run(CastVote("me"), VoteRequest("post", "p1", VoteType.UP))
    )
    await asyncio.sleep(0)
    assert (_feed_post(cache).vote_score, _feed_post(cache).user_vote) == (4, None)

    gate.set()
    outcome = await task
    assert outcome.plan.action == VoteAction.DELETE
    assert (_feed_post(cache).vote_score, _feed_post(cache).user_vote) == (4, None)
    assert remote.tables["votes"] == []


@pytest.mark.asyncio
async def test_reconcile_corrects_copies_when_server_vote_differs(
    pipeline: MutationPipeline, cache: EntityCache, remote: FakeRemoteService
) -> None:
    # The cached copy missed the viewer's upvote, which its score already counts.
    remote.seed("votes", vote_row("v1", "me", "upvote", post_id="p1"))
    _cache_feed_only(cache, vote_score=3)
    cache.set(score_key("post", "p1"), 3)

    outcome = await pipeline.run(CastVote("me"), VoteRequest("post", "p1", VoteType.UP))

    assert outcome.plan.action == VoteAction.DELETE
    assert _feed_post(cache).vote_score == 2
    assert _feed_post(cache).user_vote is None
    assert cache.get(score_key("post", "p1")) == 2
    assert cache.get(user_vote_key("me", "post", "p1")) is None
