# src/feed_sync/schemas/poll.py
"""Poll-related Pydantic schemas."""
from __future__ import annotations

from datetime import datetime

from pydantic import Field

from feed_sync.schemas.common import Record


class PollOption(Record):
    id: str
    label: str = Field(alias="option_text")
    position: int = 0


class PollVote(Record):
    id: str
    option_id: str
    user_id: str
    poll_id: str | None = None


class Poll(Record):
    """Poll attached to a post, with its options and raw votes.

    The backend embeds the children as ``poll_options`` and ``poll_votes``.
    """

    id: str
    post_id: str | None = None
    expires_at: datetime | None = None
    options: list[PollOption] = Field(default_factory=list, alias="poll_options")
    votes: list[PollVote] = Field(default_factory=list, alias="poll_votes")
