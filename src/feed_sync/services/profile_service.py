"""Profile reads and the optimistic profile update."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from feed_sync.schemas.profile import Profile, ProfileUpdate
from feed_sync.schemas.registry import parse_records
from feed_sync.services.backend import RemoteService
from feed_sync.services.cache import CacheKey, EntityCache
from feed_sync.services.pipeline import Invalidation, Mutation, MutationContext

PROFILES_COLLECTION = "profiles"


def profile_key(user_id: str) -> CacheKey:
    return ("profile", user_id)


class ProfileService:
    def __init__(self, service: RemoteService, cache: EntityCache) -> None:
        self.service = service
        self.cache = cache

    async def profile(self, user_id: str) -> Profile | None:
        async def fetch() -> Profile | None:
            profiles = parse_records(
                PROFILES_COLLECTION, await self.service.fetch_by_ids(PROFILES_COLLECTION, [user_id])
            )
            return profiles[0] if profiles else None

        state = await self.cache.query(profile_key(user_id), fetch)
        return state.data


class UpdateProfile(Mutation[ProfileUpdate, Profile | None]):
    """Overwrite the viewer's cached profile fields before the write lands."""

    name = "update_profile"

    def __init__(self, viewer_id: str) -> None:
        self.viewer_id = viewer_id

    @staticmethod
    def _changes(variables: ProfileUpdate) -> dict[str, Any]:
        return variables.model_dump(exclude_none=True)

    def keys(self, cache: EntityCache, variables: ProfileUpdate) -> Sequence[CacheKey]:
        return (profile_key(self.viewer_id),)

    def apply(
        self, cache: EntityCache, variables: ProfileUpdate, context: MutationContext
    ) -> None:
        key = profile_key(self.viewer_id)
        current = cache.get(key)
        if isinstance(current, Profile):
            cache.set(key, current.model_copy(update=self._changes(variables)))

    async def dispatch(
        self, service: RemoteService, variables: ProfileUpdate, context: MutationContext
    ) -> Profile | None:
        changes = self._changes(variables)
        if not changes:
            raise ValueError("Nothing to update")
        row = await service.write(
            PROFILES_COLLECTION, "update", changes, match={"id": self.viewer_id}
        )
        profiles = parse_records(PROFILES_COLLECTION, [row]) if row else []
        return profiles[0] if profiles else None

    def reconcile(
        self,
        cache: EntityCache,
        variables: ProfileUpdate,
        result: Profile | None,
        context: MutationContext,
    ) -> None:
        if result is not None:
            cache.set(profile_key(self.viewer_id), result)

    def invalidations(
        self, variables: ProfileUpdate, result: Profile | None
    ) -> Sequence[Invalidation]:
        return (
            Invalidation(profile_key(self.viewer_id), "active"),
            Invalidation(("posts",)),
            Invalidation(("user-posts",)),
        )
