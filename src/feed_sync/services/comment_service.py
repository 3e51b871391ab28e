"""Comment threads: loading with scores, and optimistic create/delete."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from feed_sync.core.errors import BackendError, BackendValidationError
from feed_sync.schemas.comment import Comment, CommentNode
from feed_sync.schemas.profile import Profile
from feed_sync.schemas.registry import parse_records
from feed_sync.services.backend import RecordQuery, RemoteService
from feed_sync.services.blocklist import BlocklistResolver
from feed_sync.services.cache import CacheKey, EntityCache
from feed_sync.services.comment_tree import build_comment_tree, count_comments
from feed_sync.services.feed import post_key, user_posts_key
from feed_sync.services.pipeline import Invalidation, Mutation, MutationContext
from feed_sync.services.votes import scores_by_target
from feed_sync.utils.anon import anon_display_name
from feed_sync.utils.ids import is_temp_id, new_temp_id
from feed_sync.utils.time import utcnow

# Configure logger for this module
logger = logging.getLogger(__name__)

COMMENTS_COLLECTION = "comments"
COMMENTS_FETCH_LIMIT = 1000


def comments_key(post_id: str, viewer_id: str | None) -> CacheKey:
    return ("comments", post_id, viewer_id)


def comment_author_label(comment: Comment, username: str | None = None) -> str:
    """Return the name shown on a comment.

    Anonymous comments never expose the author's username.
    """
    if comment.is_anonymous:
        if comment.post_specific_anon_id:
            return f"User {comment.post_specific_anon_id}"
        return anon_display_name(comment.post_id, comment.user_id)
    return username or comment.username or "Unknown"


@dataclass(frozen=True)
class CommentThread:
    """A post's comment forest as a screen renders it."""

    roots: list[CommentNode] = field(default_factory=list)
    count: int = 0
    is_loading: bool = False
    is_stale: bool = False
    error: BaseException | None = None


class CommentService:
    """Load a post's comments with live scores and build the visible tree."""

    def __init__(
        self,
        service: RemoteService,
        cache: EntityCache,
        blocklist: BlocklistResolver,
    ) -> None:
        self.service = service
        self.cache = cache
        self.blocklist = blocklist

    async def fetch_comments(self, post_id: str) -> tuple[Comment, ...]:
        """Fetch a post's live comments, oldest first, with scores and names.

        Scores are recomputed from vote detail; if the votes cannot be loaded
        each comment keeps the score stored on its row. Author names are
        best-effort in the same way.
        """
        if is_temp_id(post_id):
            return ()
        rows = await self.service.fetch_page(
            COMMENTS_COLLECTION,
            RecordQuery(
                equals={"post_id": post_id, "is_deleted": False},
                order_by="created_at",
                descending=False,
            ),
            0,
            COMMENTS_FETCH_LIMIT,
        )
        comments = parse_records(COMMENTS_COLLECTION, rows)
        if not comments:
            return ()

        ids = [comment.id for comment in comments]
        try:
            vote_rows = await self.service.fetch_by_ids("votes", ids, id_field="comment_id")
            scores = scores_by_target(parse_records("votes", vote_rows))
        except BackendError as e:
            logger.warning("Comment scores for post %s unavailable: %s", post_id, e)
            scores = {comment.id: comment.score for comment in comments}

        user_ids = sorted({c.user_id for c in comments if c.user_id and not c.is_anonymous})
        usernames: dict[str, str | None] = {}
        if user_ids:
            try:
                profiles: list[Profile] = parse_records(
                    "profiles", await self.service.fetch_by_ids("profiles", user_ids)
                )
                usernames = {profile.id: profile.username for profile in profiles}
            except BackendError as e:
                logger.warning("Comment authors for post %s unavailable: %s", post_id, e)

        return tuple(
            comment.model_copy(
                update={
                    "score": scores.get(comment.id, 0),
                    "username": comment_author_label(
                        comment, usernames.get(comment.user_id or "")
                    ),
                }
            )
            for comment in comments
        )

    def _fetcher(self, post_id: str):
        async def fetch() -> tuple[Comment, ...]:
            return await self.fetch_comments(post_id)

        return fetch

    def observe(self, post_id: str, viewer_id: str | None):
        return self.cache.observe(comments_key(post_id, viewer_id), self._fetcher(post_id))

    async def thread(self, post_id: str, viewer_id: str | None) -> CommentThread:
        """Return the visible comment tree of a post for a viewer."""
        blocked = await self.blocklist.resolve(viewer_id)
        state = await self.cache.query(comments_key(post_id, viewer_id), self._fetcher(post_id))
        roots = build_comment_tree(state.data or (), blocked)
        return CommentThread(
            roots=roots,
            count=count_comments(roots),
            is_loading=state.is_loading,
            is_stale=state.is_stale,
            error=state.error,
        )


@dataclass(frozen=True)
class NewComment:
    post_id: str
    content: str
    parent_id: str | None = None
    is_anonymous: bool = False


class CreateComment(Mutation[NewComment, Comment]):
    """Append a placeholder comment, then swap in the server's record."""

    name = "create_comment"

    def __init__(self, viewer_id: str) -> None:
        self.viewer_id = viewer_id

    def keys(self, cache: EntityCache, variables: NewComment) -> Sequence[CacheKey]:
        return (comments_key(variables.post_id, self.viewer_id),)

    def apply(self, cache: EntityCache, variables: NewComment, context: MutationContext) -> None:
        context.temp_id = new_temp_id()
        placeholder = Comment(
            id=context.temp_id,
            post_id=variables.post_id,
            user_id=self.viewer_id,
            content=variables.content.strip(),
            # Kept locally so a reply to a pending comment nests under it.
            parent_comment_id=variables.parent_id,
            is_anonymous=variables.is_anonymous,
            created_at=utcnow(),
            score=0,
        )
        label = comment_author_label(placeholder) if variables.is_anonymous else "You"
        placeholder = placeholder.model_copy(update={"username": label})
        cache.update(
            comments_key(variables.post_id, self.viewer_id),
            lambda comments: (*(comments or ()), placeholder),
        )

    async def dispatch(
        self, service: RemoteService, variables: NewComment, context: MutationContext
    ) -> Comment:
        content = variables.content.strip()
        if not content:
            raise ValueError("Comment cannot be empty")
        parent_id = None if is_temp_id(variables.parent_id) else variables.parent_id
        row = await service.write(
            COMMENTS_COLLECTION,
            "insert",
            {
                "content": content,
                "post_id": variables.post_id,
                "parent_comment_id": parent_id,
                "is_anonymous": variables.is_anonymous,
            },
        )
        if not row or not row.get("id"):
            raise BackendValidationError("Invalid response from server")
        return Comment.model_validate(row)

    def reconcile(
        self,
        cache: EntityCache,
        variables: NewComment,
        result: Comment,
        context: MutationContext,
    ) -> None:
        key = comments_key(variables.post_id, self.viewer_id)

        def swap(comments: tuple[Comment, ...] | None) -> tuple[Comment, ...]:
            comments = comments or ()
            placeholder = next((c for c in comments if c.id == context.temp_id), None)
            confirmed = result.model_copy(
                update={
                    "score": 0,
                    "username": (
                        placeholder.username if placeholder else comment_author_label(result)
                    ),
                }
            )
            if placeholder is None:
                if any(c.id == result.id for c in comments):
                    return comments
                return (*comments, confirmed)
            return tuple(confirmed if c.id == context.temp_id else c for c in comments)

        cache.update(key, swap)

    def invalidations(self, variables: NewComment, result: Comment) -> Sequence[Invalidation]:
        return (
            Invalidation(post_key(variables.post_id), "active"),
            Invalidation(("posts", "feed")),
            Invalidation(user_posts_key(self.viewer_id)),
            Invalidation(comments_key(variables.post_id, self.viewer_id), "active"),
        )


@dataclass(frozen=True)
class CommentRef:
    post_id: str
    comment_id: str


class DeleteComment(Mutation[CommentRef, None]):
    """Remove a comment from the cached thread before the delete is confirmed."""

    name = "delete_comment"

    def __init__(self, viewer_id: str) -> None:
        self.viewer_id = viewer_id

    def keys(self, cache: EntityCache, variables: CommentRef) -> Sequence[CacheKey]:
        return (comments_key(variables.post_id, self.viewer_id),)

    def apply(self, cache: EntityCache, variables: CommentRef, context: MutationContext) -> None:
        key = comments_key(variables.post_id, self.viewer_id)
        if key in cache:
            cache.update(
                key,
                lambda comments: tuple(c for c in comments or () if c.id != variables.comment_id),
            )

    async def dispatch(
        self, service: RemoteService, variables: CommentRef, context: MutationContext
    ) -> None:
        if is_temp_id(variables.comment_id):
            raise ValueError("Cannot delete a comment that has not been saved yet")
        await service.write(COMMENTS_COLLECTION, "delete", match={"id": variables.comment_id})

    def invalidations(self, variables: CommentRef, result: None) -> Sequence[Invalidation]:
        return (
            Invalidation(("comments",)),
            Invalidation(comments_key(variables.post_id, self.viewer_id), "active"),
            Invalidation(post_key(variables.post_id), "active"),
            Invalidation(("posts", "feed")),
            Invalidation(("user-posts",)),
        )
