# src/feed_sync/utils/anon.py
"""Deterministic display numbers for anonymous authors."""

from __future__ import annotations

from blake3 import blake3

ANON_NUMBER_MIN = 1000
ANON_NUMBER_SPAN = 9000


def anon_display_number(seed: str) -> int:
    """Return a stable four-digit number for ``seed``.

    The same seed (usually ``f"{post_id}:{user_id}"``) always maps to the same
    number, so an anonymous author keeps one label within a thread without the
    label revealing who they are.
    """
    digest = blake3(seed.encode("utf-8")).digest()
    return ANON_NUMBER_MIN + int.from_bytes(digest[:8], "big") % ANON_NUMBER_SPAN


def anon_display_name(post_id: str, user_id: str | None) -> str:
    """Return the label shown in place of an anonymous author's username."""
    if not user_id:
        return "Anonymous"
    return f"Anonymous User #{anon_display_number(f'{post_id}:{user_id}')}"
