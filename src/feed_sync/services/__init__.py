# src/feed_sync/services/__init__.py
"""Consistency services built on the entity cache."""

from .blocklist import Blocklist, BlocklistResolver
from .cache import EntityCache
from .chat_service import ChatService
from .comment_service import CommentService
from .feed import FeedFilter, FeedService
from .pipeline import Mutation, MutationPipeline
from .poll_service import PollService
from .post_service import BookmarkService
from .profile_service import ProfileService
from .realtime import ChangeCoalescer, RealtimeSync
from .votes import VoteAggregator

__all__ = [
    "Blocklist",
    "BlocklistResolver",
    "BookmarkService",
    "ChangeCoalescer",
    "ChatService",
    "CommentService",
    "EntityCache",
    "FeedFilter",
    "FeedService",
    "Mutation",
    "MutationPipeline",
    "PollService",
    "ProfileService",
    "RealtimeSync",
    "VoteAggregator",
]
