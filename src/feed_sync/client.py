"""Session facade wiring the consistency services for one viewer."""

from __future__ import annotations

import asyncio
import logging

from feed_sync.core.settings import settings
from feed_sync.core.errors import AuthorizationError
from feed_sync.schemas.chat import ChatMessage, ChatSummary
from feed_sync.schemas.comment import Comment
from feed_sync.schemas.post import PostCreate, PostSummary
from feed_sync.schemas.profile import Profile, ProfileUpdate
from feed_sync.schemas.vote import VoteType
from feed_sync.services.backend import BackendClient, RemoteService, get_backend_client
from feed_sync.services.block_service import BlockUser, UnblockAll
from feed_sync.services.blocklist import BlocklistResolver
from feed_sync.services.cache import EntityCache
from feed_sync.services.chat_service import ChatService
from feed_sync.services.comment_service import (
    CommentRef,
    CommentService,
    CreateComment,
    DeleteComment,
    NewComment,
)
from feed_sync.services.feed import FeedService
from feed_sync.services.pipeline import MutationPipeline
from feed_sync.services.poll_service import CastPollVote, PollChoice, PollService
from feed_sync.services.post_service import (
    BookmarkService,
    BookmarkToggle,
    CreatePost,
    DeletePost,
    ToggleBookmark,
)
from feed_sync.services.profile_service import ProfileService, UpdateProfile
from feed_sync.services.realtime import ChangeCoalescer, RealtimeSync
from feed_sync.services.vote_service import CastVote, TargetKind, VoteOutcome, VoteRequest
from feed_sync.services.votes import VoteAggregator

# Configure logger for this module
logger = logging.getLogger(__name__)


class FeedSyncClient:
    """All reads and writes of one signed-in (or anonymous) viewer.

    Every service shares one ``EntityCache`` and one ``BlocklistResolver``, so
    a block or a vote applied through any surface is seen by all of them.
    """

    def __init__(
        self,
        service: RemoteService | None = None,
        *,
        viewer_id: str | None = None,
        cache: EntityCache | None = None,
    ) -> None:
        self._owns_service = service is None
        self.service = service or get_backend_client()
        self.viewer_id = viewer_id
        self.cache = cache or EntityCache()
        self.pipeline = MutationPipeline(self.cache, self.service)
        self.blocklist = BlocklistResolver(self.service, self.cache)
        self.feed = FeedService(self.service, self.cache, self.blocklist)
        self.comments = CommentService(self.service, self.cache, self.blocklist)
        self.votes = VoteAggregator(self.service)
        self.polls = PollService(self.service, self.cache)
        self.bookmarks = BookmarkService(self.service, self.cache)
        self.profiles = ProfileService(self.service, self.cache)
        self.chat = ChatService(self.service, self.cache, self.blocklist, self.pipeline)
        self.realtime: RealtimeSync | None = None
        self._eviction_task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> FeedSyncClient:
        self.start_eviction()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _viewer(self) -> str:
        if self.viewer_id is None:
            raise AuthorizationError("Sign in to do that")
        return self.viewer_id

    # --- Posts ----------------------------------------------------------------------
    async def create_post(self, post: PostCreate) -> PostSummary:
        return await self.pipeline.run(CreatePost(self._viewer()), post)

    async def delete_post(self, post_id: str) -> None:
        self._viewer()
        await self.pipeline.run(DeletePost(), post_id)

    async def set_bookmark(self, post_id: str, bookmarked: bool) -> None:
        await self.pipeline.run(
            ToggleBookmark(self._viewer()), BookmarkToggle(post_id, bookmarked)
        )

    async def vote(
        self,
        target_kind: TargetKind,
        target_id: str,
        vote_type: VoteType,
        *,
        post_id: str | None = None,
    ) -> VoteOutcome:
        request = VoteRequest(target_kind, target_id, vote_type, post_id)
        return await self.pipeline.run(CastVote(self._viewer()), request)

    # --- Comments -------------------------------------------------------------------
    async def comment(
        self,
        post_id: str,
        content: str,
        *,
        parent_id: str | None = None,
        is_anonymous: bool = False,
    ) -> Comment:
        return await self.pipeline.run(
            CreateComment(self._viewer()),
            NewComment(post_id, content, parent_id, is_anonymous),
        )

    async def delete_comment(self, post_id: str, comment_id: str) -> None:
        await self.pipeline.run(DeleteComment(self._viewer()), CommentRef(post_id, comment_id))

    # --- Moderation -----------------------------------------------------------------
    async def block_user(self, user_id: str) -> None:
        await self.pipeline.run(BlockUser(self._viewer()), user_id)

    async def unblock_all(self) -> None:
        await self.pipeline.run(UnblockAll(self._viewer()), None)

    # --- Polls, chat and profile ----------------------------------------------------
    async def vote_poll(self, post_id: str, option_id: str) -> None:
        await self.pipeline.run(CastPollVote(self._viewer()), PollChoice(post_id, option_id))

    async def send_message(
        self, chat_id: str, content: str, image_url: str | None = None
    ) -> ChatMessage:
        return await self.chat.send(self._viewer(), chat_id, content, image_url)

    async def chat_summaries(self) -> list[ChatSummary]:
        return await self.chat.summaries(self._viewer())

    async def unread_total(self) -> int:
        return await self.chat.unread_total(self._viewer())

    async def mark_chat_read(self, chat_id: str) -> bool:
        return await self.chat.mark_read(self._viewer(), chat_id)

    async def update_profile(self, update: ProfileUpdate) -> Profile | None:
        return await self.pipeline.run(UpdateProfile(self._viewer()), update)

    # --- Lifecycle ------------------------------------------------------------------
    async def start_realtime(self, *, debounce_seconds: float | None = None) -> RealtimeSync:
        """Subscribe to change notifications until ``close()``."""
        if self.realtime is None:
            coalescer = ChangeCoalescer(
                self.cache, self.viewer_id, debounce_seconds=debounce_seconds
            )
            self.realtime = RealtimeSync(self.service, coalescer, chat=self.chat)
        await self.realtime.start()
        return self.realtime

    def start_eviction(self, interval_seconds: float | None = None) -> None:
        """Periodically drop idle cache entries until ``close()``."""
        if self._eviction_task is not None and not self._eviction_task.done():
            return
        interval = (
            settings.cache_eviction_interval_seconds
            if interval_seconds is None
            else interval_seconds
        )
        self._eviction_task = asyncio.create_task(self._evict_loop(interval))

    async def _evict_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.cache.evict_expired()

    async def sign_out(self) -> None:
        """Stop realtime updates and forget everything cached for the viewer."""
        await self._stop_realtime()
        self.cache.clear()
        self.viewer_id = None
        logger.info("Cache cleared on sign-out")

    async def close(self) -> None:
        await self._stop_realtime()
        await self._stop_eviction()
        self.cache.cancel(())
        if self._owns_service and isinstance(self.service, BackendClient):
            await self.service.close()

    async def _stop_eviction(self) -> None:
        if self._eviction_task is not None:
            self._eviction_task.cancel()
            await asyncio.gather(self._eviction_task, return_exceptions=True)
            self._eviction_task = None

    async def _stop_realtime(self) -> None:
        if self.realtime is not None:
            await self.realtime.close()
            self.realtime = None
