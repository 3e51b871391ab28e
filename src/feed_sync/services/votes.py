"""Vote aggregation and the per-user vote toggle state machine."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from feed_sync.core.errors import BackendError
from feed_sync.schemas.registry import parse_records
from feed_sync.schemas.vote import Vote, VoteType
from feed_sync.services.backend import RecordQuery, RemoteService
from feed_sync.utils.ids import is_temp_id

# Configure logger for this module
logger = logging.getLogger(__name__)

VOTES_COLLECTION = "votes"
VOTE_DETAIL_LIMIT = 10_000

_DELTAS = {VoteType.UP: 1, VoteType.DOWN: -1}


def vote_value(vote_type: VoteType | None) -> int:
    """Return +1, -1 or 0 for a vote direction."""
    return _DELTAS.get(vote_type, 0) if vote_type is not None else 0


def calculate_score(votes: Iterable[Vote]) -> int:
    """Return upvotes minus downvotes."""
    return sum(vote_value(vote.vote_type) for vote in votes)


def score_for(target_id: str, votes: Iterable[Vote]) -> int:
    """Return the score of ``target_id`` counting only votes on that target."""
    return calculate_score(vote for vote in votes if vote.target_id == target_id)


def scores_by_target(votes: Iterable[Vote]) -> dict[str, int]:
    """Return the score of every target appearing in ``votes``."""
    scores: dict[str, int] = {}
    for vote in votes:
        scores[vote.target_id] = scores.get(vote.target_id, 0) + vote_value(vote.vote_type)
    return scores


def resolve_score(
    target_id: str,
    votes: Iterable[Vote] | None,
    fallback: int | None = None,
) -> int:
    """Return a target's score from vote detail, or the precomputed score.

    Screens that skip fetching per-vote detail pass ``votes=None`` and get the
    aggregate record's ``vote_score`` instead.
    """
    if votes is not None:
        return score_for(target_id, votes)
    return fallback or 0


def apply_vote_delta(score: int, previous: VoteType | None, current: VoteType | None) -> int:
    """Return ``score`` after a user's vote moves from ``previous`` to ``current``."""
    return score - vote_value(previous) + vote_value(current)


class VoteAction(str, Enum):
    """Write needed to move a user's vote to the requested state."""

    INSERT = "insert"
    DELETE = "delete"
    UPDATE = "update"


@dataclass(frozen=True)
class VotePlan:
    """Outcome of a vote click.

    Attributes:
        action: The single write to send.
        previous: The user's vote before the click.
        current: The user's vote after the click (None when toggled off).
        vote_id: Id of the existing vote for deletes and updates.
    """

    action: VoteAction
    previous: VoteType | None
    current: VoteType | None
    vote_id: str | None = None


def plan_vote(existing: Vote | VoteType | None, requested: VoteType) -> VotePlan:
    """Resolve a vote click against the user's existing vote.

    ``existing`` may be the vote record or just its direction when only the
    direction is known (e.g. from a cached ``user_vote`` field).

    - no vote, vote X -> insert X
    - vote X, vote X again -> delete (toggle off)
    - vote X, vote Y -> update to Y in a single write
    """
    if existing is None:
        return VotePlan(VoteAction.INSERT, None, requested)
    if isinstance(existing, Vote):
        previous, vote_id = existing.vote_type, existing.id
    else:
        previous, vote_id = VoteType(existing), None
    if previous == requested:
        return VotePlan(VoteAction.DELETE, previous, None, vote_id)
    return VotePlan(VoteAction.UPDATE, previous, requested, vote_id)


def _target_column(target_kind: str) -> str:
    if target_kind not in ("post", "comment"):
        raise ValueError(f"Unknown vote target kind: {target_kind}")
    return f"{target_kind}_id"


class VoteAggregator:
    """Load scores and the viewer's own vote, degrading instead of failing."""

    def __init__(self, service: RemoteService) -> None:
        self.service = service

    async def fetch_votes(self, target_kind: str, target_id: str) -> list[Vote]:
        rows = await self.service.fetch_page(
            VOTES_COLLECTION,
            RecordQuery(equals={_target_column(target_kind): target_id}),
            0,
            VOTE_DETAIL_LIMIT,
        )
        return parse_records(VOTES_COLLECTION, rows)

    async def load_score(
        self, target_kind: str, target_id: str, fallback: int | None = None
    ) -> int:
        """Return the target's score from vote detail, or ``fallback`` on error."""
        if is_temp_id(target_id):
            return 0
        try:
            votes = await self.fetch_votes(target_kind, target_id)
        except BackendError as exc:
            logger.warning("Vote detail for %s %s unavailable: %s", target_kind, target_id, exc)
            return resolve_score(target_id, None, fallback)
        return resolve_score(target_id, votes, fallback)

    async def load_user_vote(self, target_kind: str, target_id: str, user_id: str) -> Vote | None:
        """Return the user's vote on the target, or None."""
        if is_temp_id(target_id):
            return None
        rows = await self.service.fetch_page(
            VOTES_COLLECTION,
            RecordQuery(equals={_target_column(target_kind): target_id, "user_id": user_id}),
            0,
            1,
        )
        votes = parse_records(VOTES_COLLECTION, rows)
        return votes[0] if votes else None
