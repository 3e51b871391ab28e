# tests/services/test_blocklist.py
"""Tests for blocklist resolution and visibility filters."""

import pytest

from feed_sync.core.errors import TransportError
from feed_sync.schemas.block import BlockEdge
from feed_sync.schemas.chat import ChatMessage
from feed_sync.schemas.post import PostSummary
from feed_sync.services.blocklist import (
    Blocklist,
    BlocklistResolver,
    blocks_key,
    filter_messages,
    filter_posts,
    hidden_users,
    is_post_visible,
)
from feed_sync.services.cache import EntityCache
from tests.conftest import NOW, FakeRemoteService, post_row


def _post(post_id: str, **overrides) -> PostSummary:
    return PostSummary.model_validate(post_row(post_id, **overrides))


def test_hidden_users_is_symmetric() -> None:
    edges = [
        BlockEdge(blocker_id="me", blocked_id="troll"),
        BlockEdge(blocker_id="critic", blocked_id="me"),
        BlockEdge(blocker_id="x", blocked_id="y"),
    ]
    blocked = hidden_users("me", edges)
    assert blocked.user_ids == {"troll", "critic"}
    assert blocked.outgoing == {"troll"}
    assert blocked.incoming == {"critic"}


def test_hidden_users_never_contains_viewer() -> None:
    blocked = hidden_users("me", [BlockEdge(blocker_id="me", blocked_id="me")])
    assert "me" not in blocked


def test_anonymous_posts_survive_blocking() -> None:
    blocked = Blocklist(["troll"])
    assert is_post_visible(_post("p1", user_id="troll", is_anonymous=True), blocked)
    assert not is_post_visible(_post("p2", user_id="troll"), blocked)


def test_repost_hidden_when_original_author_blocked() -> None:
    blocked = Blocklist(["troll"])
    repost = _post(
        "p1",
        user_id="friend",
        reposted_from_post_id="p0",
        original_user_id="troll",
        original_is_anonymous=False,
    )
    anonymous_original = repost.model_copy(update={"original_is_anonymous": True})
    assert not is_post_visible(repost, blocked)
    assert is_post_visible(anonymous_original, blocked)


def test_filter_posts_preserves_order() -> None:
    posts = [_post("p1", user_id="a"), _post("p2", user_id="troll"), _post("p3", user_id="b")]
    assert [p.post_id for p in filter_posts(posts, {"troll"})] == ["p1", "p3"]


def test_everyone_hides_identified_authors_only() -> None:
    blocked = Blocklist.everyone()
    posts = [_post("p1", user_id="a"), _post("p2", user_id="b", is_anonymous=True)]
    assert [p.post_id for p in filter_posts(posts, blocked)] == ["p2"]
    assert None not in blocked


def test_filter_messages_drops_blocked_senders() -> None:
    messages = [
        ChatMessage(id="m1", chat_id="c1", user_id="friend", created_at=NOW),
        ChatMessage(id="m2", chat_id="c1", user_id="troll", created_at=NOW),
    ]
    assert [m.id for m in filter_messages(messages, Blocklist(["troll"]))] == ["m1"]


def test_with_user_and_without_outgoing() -> None:
    blocked = Blocklist(["critic"], outgoing=["troll"])
    more = BlocklistResolver.with_user(blocked, "spammer")
    assert more.outgoing == {"troll", "spammer"}
    assert blocked.outgoing == {"troll"}

    cleared = BlocklistResolver.without_outgoing(more)
    assert cleared.user_ids == {"critic"}


@pytest.mark.asyncio
async def test_resolve_reads_both_edge_directions(
    remote: FakeRemoteService, resolver: BlocklistResolver, cache: EntityCache
) -> None:
    remote.seed(
        "blocks",
        {"id": "b1", "blocker_id": "me", "blocked_id": "troll"},
        {"id": "b2", "blocker_id": "critic", "blocked_id": "me"},
    )
    blocked = await resolver.resolve("me")
    assert blocked.user_ids == {"troll", "critic"}
    assert cache.get(blocks_key("me")) == blocked

    await resolver.resolve("me")
    assert len(remote.calls_to("fetch_page", "blocks")) == 2


@pytest.mark.asyncio
async def test_resolve_without_viewer_is_empty(
    remote: FakeRemoteService, resolver: BlocklistResolver
) -> None:
    assert await resolver.resolve(None) == Blocklist()
    assert remote.calls == []


@pytest.mark.asyncio
async def test_fail_open_shows_everything_and_retries(
    remote: FakeRemoteService, resolver: BlocklistResolver
) -> None:
    remote.fail("fetch_page", TransportError("offline"), "blocks")
    assert await resolver.resolve("me") == Blocklist()

    remote.recover()
    remote.seed("blocks", {"blocker_id": "me", "blocked_id": "troll"})
    assert "troll" in await resolver.resolve("me")


@pytest.mark.asyncio
async def test_fail_closed_hides_identified_authors(
    remote: FakeRemoteService, cache: EntityCache
) -> None:
    resolver = BlocklistResolver(remote, cache, fail_mode="closed")
    remote.fail("fetch_page", TransportError("offline"), "blocks")
    blocked = await resolver.resolve("me")
    assert blocked.hides_everyone
    assert "anyone" in blocked
