# src/feed_sync/schemas/common.py
"""Shared Pydantic building blocks for backend records."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class Record(BaseModel):
    """Base class for every server-identified record.

    Records are frozen: optimistic updates produce new instances through
    ``model_copy(update=...)`` so a value already handed to a reader never
    changes underneath it.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)


class ChangeNotification(BaseModel):
    """Server-pushed notice that a record in a collection changed."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    operation: Literal["INSERT", "UPDATE", "DELETE"]
    collection: str
    record: dict[str, Any] = Field(default_factory=dict)
    committed_at: datetime | None = None

    @property
    def author_id(self) -> str | None:
        """Return the id of the user who authored the changed record, if any."""
        for field_name in ("user_id", "blocker_id", "sender_id"):
            value = self.record.get(field_name)
            if value:
                return str(value)
        return None
