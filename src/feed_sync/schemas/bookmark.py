# src/feed_sync/schemas/bookmark.py
"""Bookmark schema."""

from feed_sync.schemas.common import Record


class Bookmark(Record):
    id: str | None = None
    user_id: str
    post_id: str
