# src/feed_sync/schemas/vote.py
"""Vote-related Pydantic schemas."""

from enum import Enum

from pydantic import model_validator

from feed_sync.schemas.common import Record


class VoteType(str, Enum):
    """Direction of a vote."""

    UP = "upvote"
    DOWN = "downvote"


class Vote(Record):
    """A single user's vote on a post or a comment.

    Exactly one of ``post_id`` and ``comment_id`` is set.
    """

    id: str
    user_id: str
    vote_type: VoteType
    post_id: str | None = None
    comment_id: str | None = None

    @model_validator(mode="after")
    def _check_single_target(self) -> "Vote":
        if (self.post_id is None) == (self.comment_id is None):
            raise ValueError("Vote must target exactly one of post_id or comment_id")
        return self

    @property
    def target_id(self) -> str:
        return self.post_id or self.comment_id or ""
