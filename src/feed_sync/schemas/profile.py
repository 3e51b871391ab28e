# src/feed_sync/schemas/profile.py
"""Profile schemas."""

from pydantic import Field

from feed_sync.schemas.common import Record


class Profile(Record):
    id: str
    username: str | None = None
    avatar_url: str | None = None
    bio: str | None = None
    is_verified: bool = False


class ProfileUpdate(Record):
    """Fields a user may change on their own profile."""

    username: str | None = Field(None, min_length=1, max_length=50)
    bio: str | None = Field(None, max_length=500)
    avatar_url: str | None = None
