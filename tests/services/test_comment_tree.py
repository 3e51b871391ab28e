# tests/services/test_comment_tree.py
"""Tests for rebuilding comment threads from flat records."""

from feed_sync.schemas.comment import Comment
from feed_sync.services.comment_tree import (
    build_comment_tree,
    count_comments,
    flatten_comment_tree,
)
from tests.conftest import comment_row


def _comments(*rows: dict) -> list[Comment]:
    return [Comment.model_validate(row) for row in rows]


def _shape(roots) -> list:
    return [(node.id, _shape(node.replies)) for node in roots]


def test_replies_nest_under_parents_in_input_order() -> None:
    comments = _comments(
        comment_row("a"),
        comment_row("b", parent_comment_id="a"),
        comment_row("c"),
        comment_row("d", parent_comment_id="a"),
        comment_row("e", parent_comment_id="b"),
    )
    roots = build_comment_tree(comments)
    assert _shape(roots) == [("a", [("b", [("e", [])]), ("d", [])]), ("c", [])]


def test_orphans_are_promoted_to_roots() -> None:
    comments = _comments(comment_row("a"), comment_row("b", parent_comment_id="missing"))
    assert _shape(build_comment_tree(comments)) == [("a", []), ("b", [])]


def test_blocked_parent_promotes_its_replies() -> None:
    comments = _comments(
        comment_row("a", user_id="troll"),
        comment_row("b", parent_comment_id="a"),
        comment_row("c", parent_comment_id="b"),
    )
    roots = build_comment_tree(comments, {"troll"})
    assert _shape(roots) == [("b", [("c", [])])]


def test_comments_without_author_are_dropped() -> None:
    comments = _comments(comment_row("a", user_id=None), comment_row("b"))
    assert _shape(build_comment_tree(comments)) == [("b", [])]


def test_duplicate_ids_keep_last_record_at_first_position() -> None:
    comments = _comments(
        comment_row("a", content="first"),
        comment_row("b"),
        comment_row("a", content="second"),
    )
    roots = build_comment_tree(comments)
    assert [node.id for node in roots] == ["a", "b"]
    assert roots[0].content == "second"


def test_parent_cycles_terminate() -> None:
    comments = _comments(
        comment_row("a", parent_comment_id="b"),
        comment_row("b", parent_comment_id="a"),
    )
    roots = build_comment_tree(comments)
    assert count_comments(roots) == 2
    assert _shape(roots) == [("b", [("a", [])])]


def test_self_parent_becomes_root() -> None:
    comments = _comments(comment_row("a", parent_comment_id="a"))
    assert _shape(build_comment_tree(comments)) == [("a", [])]


def test_depth_limit_promotes_deep_replies() -> None:
    rows = [comment_row("c0")]
    rows += [comment_row(f"c{i}", parent_comment_id=f"c{i - 1}") for i in range(1, 5)]
    roots = build_comment_tree(_comments(*rows), max_depth=2)
    assert _shape(roots) == [("c0", [("c1", [("c2", [])])]), ("c3", [("c4", [])])]


def test_flatten_is_pre_order_and_counts_every_node() -> None:
    comments = _comments(
        comment_row("a"),
        comment_row("b"),
        comment_row("c", parent_comment_id="a"),
    )
    roots = build_comment_tree(comments)
    assert [c.id for c in flatten_comment_tree(roots)] == ["a", "c", "b"]
    assert count_comments(roots) == 3


def test_input_is_not_mutated() -> None:
    comments = _comments(comment_row("a"), comment_row("b", parent_comment_id="a"))
    build_comment_tree(comments)
    build_comment_tree(comments)
    assert [c.id for c in comments] == ["a", "b"]
    assert not hasattr(comments[0], "replies")


def test_depth_limit_holds_when_replies_come_before_parents() -> None:
    rows = [comment_row(f"c{i}", parent_comment_id=f"c{i - 1}") for i in range(4, 0, -1)]
    rows.append(comment_row("c0"))
    roots = build_comment_tree(_comments(*rows), max_depth=2)
    assert _shape(roots) == [("c3", [("c4", [])]), ("c0", [("c1", [("c2", [])])])]


def test_rebuilding_gives_the_same_tree() -> None:
    comments = _comments(
        comment_row("b", parent_comment_id="a"),
        comment_row("a"),
        comment_row("x", parent_comment_id="y"),
        comment_row("y", parent_comment_id="x"),
        comment_row("c", parent_comment_id="missing"),
        comment_row("d", parent_comment_id="b"),
    )
    first = build_comment_tree(comments, max_depth=1)
    second = build_comment_tree(comments, max_depth=1)
    assert _shape(first) == _shape(second)
    assert first == second
