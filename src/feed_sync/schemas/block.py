# src/feed_sync/schemas/block.py
"""Block relation schema."""

from feed_sync.schemas.common import Record


class BlockEdge(Record):
    """Directed edge ``blocker_id -> blocked_id``."""

    id: str | None = None
    blocker_id: str
    blocked_id: str
