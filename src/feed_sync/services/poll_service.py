"""Single-choice polls attached to posts."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

from feed_sync.schemas.poll import Poll, PollOption, PollVote
from feed_sync.schemas.registry import parse_records
from feed_sync.services.backend import RecordQuery, RemoteService
from feed_sync.services.cache import CacheKey, EntityCache
from feed_sync.services.pipeline import Invalidation, Mutation, MutationContext
from feed_sync.utils.ids import is_temp_id, new_temp_id
from feed_sync.utils.time import utcnow

POLLS_COLLECTION = "polls"
POLL_VOTES_COLLECTION = "poll_votes"
POLL_SELECT = (
    "id,post_id,expires_at,"
    "poll_options(id,option_text,position),"
    "poll_votes(id,option_id,user_id)"
)


def poll_key(post_id: str, viewer_id: str | None) -> CacheKey:
    return ("poll", post_id, viewer_id)


@dataclass(frozen=True)
class OptionTally:
    option: PollOption
    votes: int
    percent: int
    selected: bool


@dataclass(frozen=True)
class PollTally:
    """Per-option counts of a poll as seen by one viewer."""

    options: list[OptionTally]
    total_votes: int
    selected_option_id: str | None
    is_closed: bool


def is_poll_closed(poll: Poll, now: datetime | None = None) -> bool:
    if poll.expires_at is None:
        return False
    expires_at = poll.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=UTC)
    return expires_at < (now or utcnow())


def tally_poll(poll: Poll, viewer_id: str | None, now: datetime | None = None) -> PollTally:
    """Count votes per option, ordered by option position."""
    counts: dict[str, int] = {}
    selected: str | None = None
    for vote in poll.votes:
        counts[vote.option_id] = counts.get(vote.option_id, 0) + 1
        if viewer_id is not None and vote.user_id == viewer_id:
            selected = vote.option_id

    total = len(poll.votes)
    options = [
        OptionTally(
            option=option,
            votes=counts.get(option.id, 0),
            percent=round(counts.get(option.id, 0) * 100 / total) if total else 0,
            selected=option.id == selected,
        )
        for option in sorted(poll.options, key=lambda option: option.position)
    ]
    return PollTally(options, total, selected, is_poll_closed(poll, now))


def toggle_poll_vote(poll: Poll, option_id: str, viewer_id: str, vote_id: str) -> Poll:
    """Return ``poll`` after the viewer clicks ``option_id``.

    Clicking the selected option clears the vote; clicking another option
    moves the viewer's single vote there.
    """
    own = [vote for vote in poll.votes if vote.user_id == viewer_id]
    if any(vote.option_id == option_id for vote in own):
        votes = [
            vote
            for vote in poll.votes
            if not (vote.user_id == viewer_id and vote.option_id == option_id)
        ]
    else:
        votes = [vote for vote in poll.votes if vote.user_id != viewer_id]
        votes.append(PollVote(id=vote_id, option_id=option_id, user_id=viewer_id, poll_id=poll.id))
    return poll.model_copy(update={"votes": votes})


class PollService:
    def __init__(self, service: RemoteService, cache: EntityCache) -> None:
        self.service = service
        self.cache = cache

    async def fetch_poll(self, post_id: str) -> Poll | None:
        if is_temp_id(post_id):
            return None
        rows = await self.service.fetch_page(
            POLLS_COLLECTION,
            RecordQuery(equals={"post_id": post_id}, select=POLL_SELECT),
            0,
            1,
        )
        polls = parse_records(POLLS_COLLECTION, rows)
        return polls[0] if polls else None

    async def poll(self, post_id: str, viewer_id: str | None) -> Poll | None:
        state = await self.cache.query(
            poll_key(post_id, viewer_id), lambda: self.fetch_poll(post_id)
        )
        return state.data

    async def tally(self, post_id: str, viewer_id: str | None) -> PollTally | None:
        poll = await self.poll(post_id, viewer_id)
        return tally_poll(poll, viewer_id) if poll else None


@dataclass(frozen=True)
class PollChoice:
    post_id: str
    option_id: str


class CastPollVote(Mutation[PollChoice, None]):
    """Single-choice poll toggle."""

    name = "cast_poll_vote"

    def __init__(self, viewer_id: str) -> None:
        self.viewer_id = viewer_id

    def keys(self, cache: EntityCache, variables: PollChoice) -> Sequence[CacheKey]:
        return (poll_key(variables.post_id, self.viewer_id),)

    def apply(self, cache: EntityCache, variables: PollChoice, context: MutationContext) -> None:
        key = poll_key(variables.post_id, self.viewer_id)
        poll = cache.get(key)
        if not isinstance(poll, Poll):
            raise ValueError("Poll is not loaded")
        if is_poll_closed(poll):
            raise ValueError("Poll closed")
        context.data["poll"] = poll
        context.temp_id = new_temp_id()
        cache.set(key, toggle_poll_vote(poll, variables.option_id, self.viewer_id, context.temp_id))

    async def dispatch(
        self, service: RemoteService, variables: PollChoice, context: MutationContext
    ) -> None:
        poll: Poll = context.data["poll"]
        own = [vote for vote in poll.votes if vote.user_id == self.viewer_id]
        selected = [vote for vote in own if vote.option_id == variables.option_id]

        to_delete = selected if selected else own
        for vote in to_delete:
            if not is_temp_id(vote.id):
                await service.write(POLL_VOTES_COLLECTION, "delete", match={"id": vote.id})
        if not selected:
            await service.write(
                POLL_VOTES_COLLECTION,
                "insert",
                {"poll_id": poll.id, "option_id": variables.option_id, "user_id": self.viewer_id},
            )

    def invalidations(self, variables: PollChoice, result: None) -> Sequence[Invalidation]:
        return (Invalidation(poll_key(variables.post_id, self.viewer_id), "active"),)
