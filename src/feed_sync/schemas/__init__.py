# src/feed_sync/schemas/__init__.py
"""Tagged record types exchanged with the hosted backend."""

from .block import BlockEdge
from .bookmark import Bookmark
from .chat import ChatMessage
from .comment import Comment, CommentNode
from .common import ChangeNotification, Record
from .poll import Poll, PollOption, PollVote
from .post import PostCreate, PostSummary
from .profile import Profile, ProfileUpdate
from .registry import COLLECTION_MODELS, parse_records
from .vote import Vote, VoteType

__all__ = [
    "BlockEdge",
    "Bookmark",
    "COLLECTION_MODELS",
    "ChangeNotification",
    "ChatMessage",
    "Comment",
    "CommentNode",
    "Poll",
    "PollOption",
    "PollVote",
    "PostCreate",
    "PostSummary",
    "Profile",
    "ProfileUpdate",
    "Record",
    "Vote",
    "VoteType",
    "parse_records",
]
