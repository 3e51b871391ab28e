# src/feed_sync/schemas/post.py
"""Post-related Pydantic schemas."""

from datetime import datetime
from typing import Literal

from pydantic import Field

from feed_sync.schemas.common import Record
from feed_sync.schemas.vote import VoteType


class PostSummary(Record):
    """Aggregate view of a post as rendered in feeds.

    Mirrors the backend's summary view: the post itself, its author, the
    aggregate counters, and (for reposts) the original post's author fields.
    """

    post_id: str
    user_id: str | None = None
    content: str = ""
    post_type: Literal["feed", "lost_found"] = "feed"
    is_anonymous: bool = False
    is_banned: bool | None = None
    is_deleted: bool = False
    created_at: datetime
    image_url: str | None = None
    username: str | None = None
    avatar_url: str | None = None
    is_verified: bool = False
    vote_score: int = 0
    comment_count: int = 0
    repost_count: int = 0
    user_vote: VoteType | None = None
    reposted_from_post_id: str | None = None
    repost_comment: str | None = None
    original_user_id: str | None = None
    original_is_anonymous: bool | None = None
    original_content: str | None = None
    original_author_username: str | None = None
    original_created_at: datetime | None = None

    @property
    def id(self) -> str:
        return self.post_id

    @property
    def is_repost(self) -> bool:
        return self.reposted_from_post_id is not None


class PostCreate(Record):
    """Payload submitted when creating a post."""

    content: str = Field("", max_length=5000)
    post_type: Literal["feed", "lost_found"] = "feed"
    is_anonymous: bool = False
    image_url: str | None = None
    reposted_from_post_id: str | None = None
    poll_options: list[str] | None = None
