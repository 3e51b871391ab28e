"""Chat message pages, optimistic sends and realtime arrivals.

Messages are paged newest first: page 0 holds the most recent messages and
new messages (sent or received) are prepended to it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Container, Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

from feed_sync.core.errors import BackendValidationError, TransportError
from feed_sync.core.settings import settings
from feed_sync.schemas.chat import ChatMessage, ChatSummary
from feed_sync.schemas.common import ChangeNotification
from feed_sync.schemas.registry import parse_records
from feed_sync.services.backend import RecordQuery, RemoteService
from feed_sync.services.blocklist import BlocklistResolver, filter_messages
from feed_sync.services.cache import CacheKey, EntityCache, QueryState
from feed_sync.services.pipeline import (
    Invalidation,
    Mutation,
    MutationContext,
    MutationPipeline,
)
from feed_sync.utils.ids import new_temp_id
from feed_sync.utils.time import utcnow

# Configure logger for this module
logger = logging.getLogger(__name__)

CHAT_MESSAGES_COLLECTION = "chat_messages"
CHAT_SUMMARIES_VIEW = "user_chats_summary"

_EPOCH = datetime.min.replace(tzinfo=UTC)


def chat_messages_key(chat_id: str) -> CacheKey:
    return ("chat-messages", chat_id)


@dataclass(frozen=True)
class MessagePages:
    """Immutable pages of a chat, newest page first."""

    pages: tuple[tuple[ChatMessage, ...], ...] = ()

    def __len__(self) -> int:
        return len(self.pages)

    @property
    def messages(self) -> list[ChatMessage]:
        return [message for page in self.pages for message in page]

    def contains(self, message_id: str) -> bool:
        return any(message.id == message_id for message in self.messages)

    def append(self, page: Iterable[ChatMessage]) -> MessagePages:
        return MessagePages((*self.pages, tuple(page)))

    def prepend(self, message: ChatMessage) -> MessagePages:
        if not self.pages:
            return MessagePages(((message,),))
        return MessagePages(((message, *self.pages[0]), *self.pages[1:]))

    def map(self, fn: Callable[[ChatMessage], ChatMessage | None]) -> MessagePages:
        pages = []
        for page in self.pages:
            mapped = (fn(message) for message in page)
            pages.append(tuple(message for message in mapped if message is not None))
        return MessagePages(tuple(pages))


def prepend_incoming(pages: MessagePages | None, message: ChatMessage) -> MessagePages:
    """Prepend ``message`` unless a message with its id is already present."""
    pages = pages or MessagePages()
    if pages.contains(message.id):
        return pages
    return pages.prepend(message)


def replace_message(
    pages: MessagePages | None, message_id: str, message: ChatMessage
) -> MessagePages:
    pages = pages or MessagePages()
    return pages.map(lambda current: message if current.id == message_id else current)


def mark_message_failed(pages: MessagePages | None, message_id: str) -> MessagePages:
    pages = pages or MessagePages()
    return pages.map(
        lambda current: (
            current.model_copy(update={"send_status": "failed"})
            if current.id == message_id
            else current
        )
    )


def remove_message(pages: MessagePages | None, message_id: str) -> MessagePages:
    pages = pages or MessagePages()
    return pages.map(lambda current: None if current.id == message_id else current)


@dataclass(frozen=True)
class OutgoingMessage:
    chat_id: str
    content: str
    image_url: str | None = None


class SendChatMessage(Mutation[OutgoingMessage, ChatMessage]):
    """Show a message as sending, then confirm it or mark it failed.

    A transport failure leaves the placeholder in place marked ``failed`` so
    the user can retry it; any other failure removes it.
    """

    name = "send_chat_message"

    def __init__(self, viewer_id: str) -> None:
        self.viewer_id = viewer_id

    def keys(self, cache: EntityCache, variables: OutgoingMessage) -> Sequence[CacheKey]:
        return (chat_messages_key(variables.chat_id),)

    def apply(
        self, cache: EntityCache, variables: OutgoingMessage, context: MutationContext
    ) -> None:
        context.temp_id = new_temp_id()
        placeholder = ChatMessage(
            id=context.temp_id,
            chat_id=variables.chat_id,
            user_id=self.viewer_id,
            content=variables.content.strip(),
            image_url=variables.image_url,
            created_at=utcnow(),
            send_status="sending",
        )
        context.data["placeholder"] = placeholder
        cache.update(
            chat_messages_key(variables.chat_id),
            lambda pages: (pages or MessagePages()).prepend(placeholder),
        )

    async def dispatch(
        self, service: RemoteService, variables: OutgoingMessage, context: MutationContext
    ) -> ChatMessage:
        content = variables.content.strip()
        if not content and not variables.image_url:
            raise ValueError("Message cannot be empty")

        payload = {
            "chat_id": variables.chat_id,
            "user_id": self.viewer_id,
            "content": content,
            "is_read": False,
        }
        if variables.image_url:
            payload["image_url"] = variables.image_url
        row = await service.write(CHAT_MESSAGES_COLLECTION, "insert", payload)
        if not row or not row.get("id"):
            raise BackendValidationError("Invalid response from server")
        return ChatMessage.model_validate(row)

    def reconcile(
        self,
        cache: EntityCache,
        variables: OutgoingMessage,
        result: ChatMessage,
        context: MutationContext,
    ) -> None:
        confirmed = result.model_copy(update={"send_status": None})
        key = chat_messages_key(variables.chat_id)

        def swap(pages: MessagePages | None) -> MessagePages:
            pages = pages or MessagePages()
            if context.temp_id and pages.contains(context.temp_id):
                if pages.contains(confirmed.id):
                    # The realtime echo arrived first.
                    return remove_message(pages, context.temp_id)
                return replace_message(pages, context.temp_id, confirmed)
            return prepend_incoming(pages, confirmed)

        cache.update(key, swap)

    def rolled_back(
        self,
        cache: EntityCache,
        variables: OutgoingMessage,
        context: MutationContext,
        error: Exception,
    ) -> None:
        placeholder = context.data.get("placeholder")
        if isinstance(error, TransportError) and placeholder is not None:
            logger.info("Message %s could not be confirmed, marking failed", placeholder.id)
            cache.update(
                chat_messages_key(variables.chat_id),
                lambda pages: mark_message_failed(
                    prepend_incoming(pages, placeholder), placeholder.id
                ),
            )


# --- Chat list and unread counts ------------------------------------------------------
def chat_summaries_key(viewer_id: str) -> CacheKey:
    return ("chat-summaries", viewer_id)


def unread_count_key(viewer_id: str) -> CacheKey:
    return ("global-unread-count", viewer_id)


def sort_summaries(summaries: Iterable[ChatSummary]) -> tuple[ChatSummary, ...]:
    """Order chats by latest message, newest first; chats without one go last."""
    return tuple(
        sorted(summaries, key=lambda summary: summary.last_message_at or _EPOCH, reverse=True)
    )


def visible_summaries(
    summaries: Iterable[ChatSummary], viewer_id: str, blocked: Container[str]
) -> list[ChatSummary]:
    """Drop chats without messages and chats with a blocked participant."""
    return [
        summary
        for summary in summaries
        if summary.last_message_at is not None
        and summary.other_participant(viewer_id) not in blocked
    ]


def total_unread(
    summaries: Iterable[ChatSummary], viewer_id: str, blocked: Container[str]
) -> int:
    return sum(
        summary.unread_for(viewer_id)
        for summary in summaries
        if summary.other_participant(viewer_id) not in blocked
    )


def bump_summary(summary: ChatSummary, message: ChatMessage, viewer_id: str) -> ChatSummary:
    """Return ``summary`` after ``message`` arrived from the other participant."""
    updated = summary.model_copy(
        update={
            "last_message_at": message.created_at,
            "last_message_content": message.content or None,
            "last_message_has_image": bool(message.image_url and message.image_url.strip()),
        }
    )
    return updated.with_unread(viewer_id, summary.unread_for(viewer_id) + 1)


@dataclass(frozen=True)
class ChatRead:
    chat_id: str
    sender_id: str


class MarkChatRead(Mutation[ChatRead, None]):
    """Clear a chat's unread badge, then mark the other side's messages read."""

    name = "mark_chat_read"

    def __init__(self, viewer_id: str) -> None:
        self.viewer_id = viewer_id

    def keys(self, cache: EntityCache, variables: ChatRead) -> Sequence[CacheKey]:
        return (
            chat_summaries_key(self.viewer_id),
            unread_count_key(self.viewer_id),
            chat_messages_key(variables.chat_id),
        )

    def apply(self, cache: EntityCache, variables: ChatRead, context: MutationContext) -> None:
        cleared: int | None = None
        summaries = cache.get(chat_summaries_key(self.viewer_id))
        if isinstance(summaries, tuple):
            updated = []
            for summary in summaries:
                if summary.chat_id == variables.chat_id:
                    cleared = summary.unread_for(self.viewer_id)
                    summary = summary.with_unread(self.viewer_id, 0)
                updated.append(summary)
            cache.set(chat_summaries_key(self.viewer_id), tuple(updated))

        key = chat_messages_key(variables.chat_id)
        pages = cache.get(key)
        if isinstance(pages, MessagePages):
            unread = [
                m for m in pages.messages if m.user_id == variables.sender_id and not m.is_read
            ]
            if cleared is None:
                cleared = len(unread)
            if unread:
                cache.set(
                    key,
                    pages.map(
                        lambda m: (
                            m.model_copy(update={"is_read": True})
                            if m.user_id == variables.sender_id
                            else m
                        )
                    ),
                )

        total = cache.get(unread_count_key(self.viewer_id))
        if isinstance(total, int) and cleared:
            cache.set(unread_count_key(self.viewer_id), max(0, total - cleared))
        context.data["cleared"] = cleared or 0

    async def dispatch(
        self, service: RemoteService, variables: ChatRead, context: MutationContext
    ) -> None:
        await service.write(
            CHAT_MESSAGES_COLLECTION,
            "update",
            {"is_read": True},
            match={"chat_id": variables.chat_id, "user_id": variables.sender_id, "is_read": False},
        )

    def invalidations(self, variables: ChatRead, result: None) -> Sequence[Invalidation]:
        return (Invalidation(unread_count_key(self.viewer_id)),)


class ChatService:
    """Reads and writes of one viewer's chats."""

    def __init__(
        self,
        service: RemoteService,
        cache: EntityCache,
        blocklist: BlocklistResolver,
        pipeline: MutationPipeline,
    ) -> None:
        self.service = service
        self.cache = cache
        self.blocklist = blocklist
        self.pipeline = pipeline

    async def fetch_page(self, chat_id: str, page: int) -> list[ChatMessage]:
        size = settings.chat_page_size
        rows = await self.service.fetch_page(
            CHAT_MESSAGES_COLLECTION,
            RecordQuery(equals={"chat_id": chat_id}, order_by="created_at"),
            page * size,
            size,
        )
        return parse_records(CHAT_MESSAGES_COLLECTION, rows)

    def _fetcher(self, chat_id: str):
        async def fetch() -> MessagePages:
            return MessagePages().append(await self.fetch_page(chat_id, 0))

        return fetch

    def observe(self, chat_id: str):
        return self.cache.observe(chat_messages_key(chat_id), self._fetcher(chat_id))

    async def load(self, chat_id: str) -> QueryState:
        return await self.cache.query(chat_messages_key(chat_id), self._fetcher(chat_id))

    async def fetch_older(self, chat_id: str) -> MessagePages:
        """Append the next page of older messages."""
        key = chat_messages_key(chat_id)
        current = self.cache.get(key)
        if not isinstance(current, MessagePages) or not current.pages:
            await self.load(chat_id)
            return self.cache.get(key, MessagePages())
        if len(current.pages[-1]) < settings.chat_page_size:
            return current

        older = await self.fetch_page(chat_id, len(current))
        if self.cache.get(key) is not current:
            # New messages arrived meanwhile; keep the page rather than drop it.
            return self.cache.update(key, lambda pages: _append_unique(pages, older))
        return self.cache.set(key, current.append(older))

    async def messages(self, chat_id: str, viewer_id: str | None) -> list[ChatMessage]:
        """Return the chat's visible messages, newest first."""
        blocked = await self.blocklist.resolve(viewer_id)
        state = await self.load(chat_id)
        pages = state.data if isinstance(state.data, MessagePages) else MessagePages()
        return filter_messages(pages.messages, blocked)

    async def send(
        self, viewer_id: str, chat_id: str, content: str, image_url: str | None = None
    ) -> ChatMessage:
        return await self.pipeline.run(
            SendChatMessage(viewer_id), OutgoingMessage(chat_id, content, image_url)
        )

    async def retry(self, viewer_id: str, chat_id: str, message_id: str) -> ChatMessage | None:
        """Resend a message that was marked failed."""
        key = chat_messages_key(chat_id)
        pages = self.cache.get(key)
        if not isinstance(pages, MessagePages):
            return None
        failed = next(
            (m for m in pages.messages if m.id == message_id and m.send_status == "failed"),
            None,
        )
        if failed is None:
            return None
        self.cache.update(key, lambda current: remove_message(current, message_id))
        return await self.send(viewer_id, chat_id, failed.content, failed.image_url)

    async def fetch_summaries(self, viewer_id: str) -> tuple[ChatSummary, ...]:
        """Fetch every chat the viewer takes part in, newest activity first."""
        rows: list[dict] = []
        for column in ("participant_1_id", "participant_2_id"):
            rows += await self.service.fetch_page(
                CHAT_SUMMARIES_VIEW,
                RecordQuery(equals={column: viewer_id}),
                0,
                settings.chat_list_size,
            )
        by_id = {summary.chat_id: summary for summary in parse_records(CHAT_SUMMARIES_VIEW, rows)}
        return sort_summaries(by_id.values())

    async def summaries(self, viewer_id: str) -> list[ChatSummary]:
        """Return the viewer's chat list without empty or blocked chats."""
        blocked = await self.blocklist.resolve(viewer_id)
        state = await self.cache.query(
            chat_summaries_key(viewer_id), lambda: self.fetch_summaries(viewer_id)
        )
        return visible_summaries(state.data or (), viewer_id, blocked)

    async def unread_total(self, viewer_id: str) -> int:
        """Return the viewer's unread message count across unblocked chats."""

        async def fetch() -> int:
            blocked = await self.blocklist.resolve(viewer_id)
            return total_unread(await self.fetch_summaries(viewer_id), viewer_id, blocked)

        state = await self.cache.query(unread_count_key(viewer_id), fetch)
        return state.data if isinstance(state.data, int) else 0

    async def mark_read(self, viewer_id: str, chat_id: str) -> bool:
        """Mark the other participant's messages read; False if nothing was unread."""
        await self.summaries(viewer_id)
        cached = self.cache.get(chat_summaries_key(viewer_id)) or ()
        summary = next((s for s in cached if s.chat_id == chat_id), None)
        if summary is None:
            logger.warning("Chat %s is not in %s's chat list", chat_id, viewer_id)
            return False

        sender_id = summary.other_participant(viewer_id)
        pages = self.cache.get(chat_messages_key(chat_id))
        unread_messages = isinstance(pages, MessagePages) and any(
            m.user_id == sender_id and not m.is_read for m in pages.messages
        )
        if not summary.unread_for(viewer_id) and not unread_messages:
            return False
        await self.pipeline.run(MarkChatRead(viewer_id), ChatRead(chat_id, sender_id))
        return True

    def receive(self, notification: ChangeNotification, viewer_id: str | None) -> bool:
        """Apply a pushed chat message change; returns True if the cache changed.

        Inserts are prepended to the cached chat and raise the viewer's unread
        counts; an update that marks a message read lowers them. The viewer's
        own messages are ignored: the send pipeline already placed them.
        """
        if notification.collection != CHAT_MESSAGES_COLLECTION:
            return False
        messages = parse_records(CHAT_MESSAGES_COLLECTION, [notification.record])
        if not messages or messages[0].user_id == viewer_id:
            return False

        message = messages[0]
        if notification.operation == "INSERT":
            return self._receive_insert(message, viewer_id)
        if notification.operation == "UPDATE" and message.is_read:
            return self._receive_read(message, viewer_id)
        return False

    def _receive_insert(self, message: ChatMessage, viewer_id: str | None) -> bool:
        key = chat_messages_key(message.chat_id)
        changed = False
        if key in self.cache:
            before = self.cache.get(key)
            if isinstance(before, MessagePages) and before.contains(message.id):
                return False
            after = self.cache.update(key, lambda pages: prepend_incoming(pages, message))
            changed = after is not before
        return self._shift_unread(message, viewer_id, 1) or changed

    def _receive_read(self, message: ChatMessage, viewer_id: str | None) -> bool:
        key = chat_messages_key(message.chat_id)
        pages = self.cache.get(key)
        changed = False
        if isinstance(pages, MessagePages):
            current = next((m for m in pages.messages if m.id == message.id), None)
            if current is not None:
                if current.is_read:
                    return False
                read = current.model_copy(update={"is_read": True})
                self.cache.set(key, replace_message(pages, message.id, read))
                changed = True
        return self._shift_unread(message, viewer_id, -1) or changed

    def _shift_unread(self, message: ChatMessage, viewer_id: str | None, delta: int) -> bool:
        if viewer_id is None or message.user_id in self.blocklist.cached(viewer_id):
            return False

        changed = False
        key = chat_summaries_key(viewer_id)
        summaries = self.cache.get(key)
        if isinstance(summaries, tuple):
            summary = next((s for s in summaries if s.chat_id == message.chat_id), None)
            if summary is None:
                # A chat we have not listed yet; fetch it on the next read.
                self.cache.invalidate(key)
            elif delta < 0 and not summary.unread_for(viewer_id):
                # Already cleared by a local mark-read.
                return False
            else:
                if delta > 0:
                    updated = bump_summary(summary, message, viewer_id)
                else:
                    updated = summary.with_unread(viewer_id, summary.unread_for(viewer_id) + delta)
                self.cache.set(
                    key,
                    sort_summaries(updated if s is summary else s for s in summaries),
                )
                changed = True

        total = self.cache.get(unread_count_key(viewer_id))
        if isinstance(total, int):
            self.cache.set(unread_count_key(viewer_id), max(0, total + delta))
            changed = True
        return changed


def _append_unique(pages: MessagePages | None, older: Iterable[ChatMessage]) -> MessagePages:
    pages = pages or MessagePages()
    return pages.append(message for message in older if not pages.contains(message.id))
