# src/feed_sync/schemas/chat.py
"""Chat message and chat list schemas."""

from datetime import datetime
from typing import Literal

from feed_sync.schemas.common import Record


class ChatMessage(Record):
    """A message in a one-to-one chat.

    ``send_status`` is client-only: ``"sending"`` while an optimistic message
    awaits confirmation, ``"failed"`` if the send was rejected.
    """

    id: str
    chat_id: str
    user_id: str | None = None
    content: str = ""
    image_url: str | None = None
    created_at: datetime
    is_read: bool = False
    deleted_by_sender: bool | None = None
    deleted_by_receiver: bool | None = None
    send_status: Literal["sending", "failed"] | None = None


class ChatSummary(Record):
    """One row of the viewer's chat list.

    The backend keeps a separate unread counter per participant; use
    ``unread_for`` rather than picking a column by hand.
    """

    chat_id: str
    participant_1_id: str
    participant_2_id: str
    post_id: str | None = None
    created_at: datetime | None = None
    last_message_at: datetime | None = None
    last_message_content: str | None = None
    last_message_has_image: bool | None = False
    unread_count_p1: int = 0
    unread_count_p2: int = 0

    @property
    def id(self) -> str:
        return self.chat_id

    def other_participant(self, viewer_id: str) -> str:
        if self.participant_1_id == viewer_id:
            return self.participant_2_id
        return self.participant_1_id

    def unread_for(self, viewer_id: str) -> int:
        if self.participant_1_id == viewer_id:
            return self.unread_count_p1
        return self.unread_count_p2

    def with_unread(self, viewer_id: str, count: int) -> "ChatSummary":
        field = "unread_count_p1" if self.participant_1_id == viewer_id else "unread_count_p2"
        return self.model_copy(update={field: max(0, count)})
