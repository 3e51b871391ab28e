# src/feed_sync/schemas/comment.py
"""Comment-related Pydantic schemas."""
from __future__ import annotations

from datetime import datetime

from pydantic import Field

from feed_sync.schemas.common import Record


class Comment(Record):
    """Flat comment record.

    ``user_id`` may be null on rows whose author was removed; such comments
    are never shown.
    """

    id: str
    post_id: str
    user_id: str | None = None
    content: str = ""
    parent_comment_id: str | None = None
    is_anonymous: bool = False
    is_deleted: bool = False
    created_at: datetime
    score: int = 0
    username: str | None = None
    post_specific_anon_id: int | None = None


class CommentNode(Comment):
    """Comment with its direct replies resolved."""

    replies: list[CommentNode] = Field(default_factory=list)
