"""Reconstruct comment threads from flat, possibly inconsistent records."""

from __future__ import annotations

from collections.abc import Container, Iterable, Iterator, Sequence

from feed_sync.core.settings import settings
from feed_sync.schemas.comment import Comment, CommentNode


def build_comment_tree(
    comments: Sequence[Comment],
    blocked: Container[str] = (),
    *,
    max_depth: int | None = None,
) -> list[CommentNode]:
    """Build the reply forest for a post.

    Args:
        comments: Flat comment records in display order.
        blocked: User ids whose comments must be hidden.
        max_depth: Deepest nesting allowed before a reply is promoted to a
            root. Defaults to ``COMMENT_MAX_DEPTH``.

    Returns:
        Root nodes in input order, each with replies in input order.

    Notes:
        - Comments with no author or a blocked author are dropped.
        - A comment whose parent is absent, including a parent dropped by
          the block filter, becomes a root (orphan promotion).
        - Duplicate ids keep the last record, placed at the first occurrence.
        - A reply that would close a parent cycle or exceed ``max_depth`` is
          promoted to a root, so the result is always a finite forest.
    """
    limit = settings.comment_max_depth if max_depth is None else max_depth
    visible = [c for c in comments if c.user_id is not None and c.user_id not in blocked]

    nodes: dict[str, CommentNode] = {}
    for comment in visible:
        nodes[comment.id] = CommentNode.model_validate({**comment.model_dump(), "replies": []})

    order: list[str] = []
    placed: set[str] = set()
    parent_of: dict[str, str] = {}
    for comment in visible:
        if comment.id in placed:
            continue
        placed.add(comment.id)
        order.append(comment.id)
        parent_id = nodes[comment.id].parent_comment_id
        if parent_id is not None and parent_id in nodes and not _closes_cycle(
            comment.id, parent_id, parent_of
        ):
            parent_of[comment.id] = parent_id

    # Depth is only known once every edge is in place; input order may list
    # a reply before its ancestors.
    children: dict[str, list[str]] = {}
    for comment_id in order:
        if comment_id in parent_of:
            children.setdefault(parent_of[comment_id], []).append(comment_id)
    level = [(comment_id, 0) for comment_id in order if comment_id not in parent_of]
    while level:
        next_level: list[tuple[str, int]] = []
        for comment_id, depth in level:
            if depth > limit:
                del parent_of[comment_id]
                depth = 0
            next_level.extend((child, depth + 1) for child in children.get(comment_id, ()))
        level = next_level

    roots: list[CommentNode] = []
    for comment_id in order:
        node = nodes[comment_id]
        if comment_id in parent_of:
            nodes[parent_of[comment_id]].replies.append(node)
        else:
            roots.append(node)
    return roots


def _closes_cycle(child_id: str, parent_id: str, parent_of: dict[str, str]) -> bool:
    current: str | None = parent_id
    while current is not None:
        if current == child_id:
            return True
        current = parent_of.get(current)
    return False


def iter_comment_tree(roots: Iterable[CommentNode]) -> Iterator[CommentNode]:
    """Yield every node depth-first, parents before their replies."""
    stack = list(reversed(list(roots)))
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(node.replies))


def flatten_comment_tree(roots: Iterable[CommentNode]) -> list[Comment]:
    """Return the tree's comments as flat records in pre-order."""
    return [
        Comment.model_validate(node.model_dump(exclude={"replies"}))
        for node in iter_comment_tree(roots)
    ]


def count_comments(roots: Iterable[CommentNode]) -> int:
    return sum(1 for _ in iter_comment_tree(roots))
