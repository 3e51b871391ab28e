# src/feed_sync/schemas/registry.py
"""Validation of raw backend rows at the fetch boundary."""
from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import ValidationError

from feed_sync.schemas.block import BlockEdge
from feed_sync.schemas.bookmark import Bookmark
from feed_sync.schemas.chat import ChatMessage, ChatSummary
from feed_sync.schemas.comment import Comment
from feed_sync.schemas.common import Record
from feed_sync.schemas.poll import Poll, PollVote
from feed_sync.schemas.post import PostSummary
from feed_sync.schemas.profile import Profile
from feed_sync.schemas.vote import Vote

logger = logging.getLogger(__name__)

COLLECTION_MODELS: dict[str, type[Record]] = {
    "posts_summary_view": PostSummary,
    "comments": Comment,
    "votes": Vote,
    "blocks": BlockEdge,
    "bookmarks": Bookmark,
    "polls": Poll,
    "poll_votes": PollVote,
    "chat_messages": ChatMessage,
    "user_chats_summary": ChatSummary,
    "profiles": Profile,
}


def parse_records(collection: str, rows: Iterable[Mapping[str, Any]]) -> list[Any]:
    """Validate raw rows into the record type registered for ``collection``.

    Rows that fail validation are logged and skipped; malformed rows are an
    expected consequence of an eventually-consistent backend, not a failure.

    Raises:
        KeyError: If no record type is registered for the collection.
    """
    model = COLLECTION_MODELS[collection]
    records: list[Any] = []
    for row in rows:
        try:
            records.append(model.model_validate(row))
        except ValidationError as exc:
            logger.warning(
                "Skipping malformed %s row %s: %s",
                collection,
                row.get("id") or row.get("post_id"),
                exc.error_count(),
            )
    return records
