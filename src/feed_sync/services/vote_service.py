"""Optimistic voting on posts and comments."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal

from feed_sync.schemas.comment import Comment
from feed_sync.schemas.registry import parse_records
from feed_sync.schemas.vote import Vote, VoteType
from feed_sync.services.backend import RemoteService
from feed_sync.services.cache import CacheKey, EntityCache
from feed_sync.services.comment_service import comments_key
from feed_sync.services.feed import (
    cached_post_keys,
    find_cached_post,
    post_key,
    update_cached_post,
)
from feed_sync.services.pipeline import Invalidation, Mutation, MutationContext
from feed_sync.services.votes import (
    VOTES_COLLECTION,
    VoteAction,
    VoteAggregator,
    VotePlan,
    apply_vote_delta,
    plan_vote,
)
from feed_sync.utils.ids import is_temp_id

TargetKind = Literal["post", "comment"]


def user_vote_key(viewer_id: str, target_kind: str, target_id: str) -> CacheKey:
    return ("user-vote", viewer_id, target_kind, target_id)


def score_key(target_kind: str, target_id: str) -> CacheKey:
    return ("score", target_kind, target_id)


@dataclass(frozen=True)
class VoteRequest:
    """A vote click.

    ``post_id`` is the post a voted comment belongs to; it locates the cached
    comment list and is ignored for post votes.
    """

    target_kind: TargetKind
    target_id: str
    vote_type: VoteType
    post_id: str | None = None


@dataclass(frozen=True)
class VoteOutcome:
    plan: VotePlan
    vote: Vote | None


class CastVote(Mutation[VoteRequest, VoteOutcome]):
    """Three-way vote toggle with optimistic score and user-vote updates."""

    name = "cast_vote"

    def __init__(self, viewer_id: str) -> None:
        self.viewer_id = viewer_id

    def keys(self, cache: EntityCache, variables: VoteRequest) -> Sequence[CacheKey]:
        keys = [
            user_vote_key(self.viewer_id, variables.target_kind, variables.target_id),
            score_key(variables.target_kind, variables.target_id),
        ]
        if variables.target_kind == "post":
            keys.extend(cached_post_keys(cache, variables.target_id))
        elif variables.post_id:
            keys.append(comments_key(variables.post_id, self.viewer_id))
        return keys

    def _previous(self, cache: EntityCache, variables: VoteRequest) -> VoteType | None:
        key = user_vote_key(self.viewer_id, variables.target_kind, variables.target_id)
        if key in cache:
            return cache.get(key)
        if variables.target_kind == "post":
            post = find_cached_post(cache, variables.target_id)
            if post is not None:
                return post.user_vote
        return None

    def _shift(
        self,
        cache: EntityCache,
        variables: VoteRequest,
        delta: int,
        current: VoteType | None,
    ) -> None:
        """Move every cached score of the target by ``delta`` and record ``current``."""
        vkey = user_vote_key(self.viewer_id, variables.target_kind, variables.target_id)
        cache.set(vkey, current)
        skey = score_key(variables.target_kind, variables.target_id)
        if skey in cache:
            cache.update(skey, lambda score: score + delta)

        if variables.target_kind == "post":
            update_cached_post(
                cache,
                variables.target_id,
                lambda post: post.model_copy(
                    update={"user_vote": current, "vote_score": post.vote_score + delta}
                ),
            )
        elif variables.post_id:
            ckey = comments_key(variables.post_id, self.viewer_id)
            if ckey in cache:
                cache.update(ckey, lambda comments: _rescore(comments, variables.target_id, delta))

    def apply(self, cache: EntityCache, variables: VoteRequest, context: MutationContext) -> None:
        plan = plan_vote(self._previous(cache, variables), variables.vote_type)
        context.data["plan"] = plan
        self._shift(cache, variables, _delta(plan), plan.current)

    async def dispatch(
        self, service: RemoteService, variables: VoteRequest, context: MutationContext
    ) -> VoteOutcome:
        if is_temp_id(variables.target_id):
            raise ValueError("Cannot vote on an item that has not been saved yet")

        # Plan against the server's view of the user's vote; the cached
        # direction may be stale and the write needs the vote id.
        existing = await VoteAggregator(service).load_user_vote(
            variables.target_kind, variables.target_id, self.viewer_id
        )
        plan = plan_vote(existing, variables.vote_type)

        if plan.action == VoteAction.INSERT:
            row = await service.write(
                VOTES_COLLECTION,
                "insert",
                {
                    "user_id": self.viewer_id,
                    "vote_type": variables.vote_type.value,
                    f"{variables.target_kind}_id": variables.target_id,
                },
            )
        elif plan.action == VoteAction.DELETE:
            await service.write(VOTES_COLLECTION, "delete", match={"id": plan.vote_id})
            row = None
        else:
            row = await service.write(
                VOTES_COLLECTION,
                "update",
                {"vote_type": variables.vote_type.value},
                match={"id": plan.vote_id},
            )

        votes = parse_records(VOTES_COLLECTION, [row]) if row else []
        return VoteOutcome(plan=plan, vote=votes[0] if votes else None)

    def reconcile(
        self,
        cache: EntityCache,
        variables: VoteRequest,
        result: VoteOutcome,
        context: MutationContext,
    ) -> None:
        optimistic: VotePlan | None = context.data.get("plan")
        server = result.plan
        if optimistic is None:
            cache.set(
                user_vote_key(self.viewer_id, variables.target_kind, variables.target_id),
                server.current,
            )
            return
        if (optimistic.previous, optimistic.current) != (server.previous, server.current):
            # The cache guessed a different starting vote than the server had.
            self._shift(cache, variables, _delta(server) - _delta(optimistic), server.current)

    def invalidations(self, variables: VoteRequest, result: VoteOutcome) -> Sequence[Invalidation]:
        if variables.target_kind == "post":
            return (
                Invalidation(post_key(variables.target_id), "active"),
                Invalidation(("posts", "feed")),
            )
        return (Invalidation(("comments",)),)


def _delta(plan: VotePlan) -> int:
    return apply_vote_delta(0, plan.previous, plan.current)


def _rescore(comments: tuple[Comment, ...] | None, comment_id: str, delta: int):
    if comments is None:
        return None
    return tuple(
        comment.model_copy(update={"score": comment.score + delta})
        if comment.id == comment_id
        else comment
        for comment in comments
    )
