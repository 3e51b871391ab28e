# tests/services/test_profile_service.py
"""Tests for profile reads and optimistic profile updates."""

import pytest

from feed_sync.core.errors import ErrorKind, MutationError, TransportError
from feed_sync.schemas.profile import Profile, ProfileUpdate
from feed_sync.services.cache import EntityCache
from feed_sync.services.pipeline import MutationPipeline
from feed_sync.services.profile_service import ProfileService, UpdateProfile, profile_key
from tests.conftest import FakeRemoteService


@pytest.mark.asyncio
async def test_profile_is_fetched_once(remote: FakeRemoteService, cache: EntityCache) -> None:
    remote.seed("profiles", {"id": "me", "username": "alice"})
    profiles = ProfileService(remote, cache)

    assert (await profiles.profile("me")).username == "alice"
    assert (await profiles.profile("me")).username == "alice"
    assert len(remote.calls_to("fetch_by_ids", "profiles")) == 1


@pytest.mark.asyncio
async def test_missing_profile_is_none(remote: FakeRemoteService, cache: EntityCache) -> None:
    assert await ProfileService(remote, cache).profile("ghost") is None


@pytest.mark.asyncio
async def test_update_applies_then_reconciles(
    pipeline: MutationPipeline, cache: EntityCache, remote: FakeRemoteService
) -> None:
    remote.seed("profiles", {"id": "me", "username": "alice", "bio": "old"})
    cache.set(profile_key("me"), Profile(id="me", username="alice", bio="old"))
    seen: list[Profile] = []
    mutation = UpdateProfile("me")
    original_apply = mutation.apply

    def spy_apply(cache, variables, context):
        original_apply(cache, variables, context)
        seen.append(cache.get(profile_key("me")))

    mutation.apply = spy_apply
    saved = await pipeline.run(mutation, ProfileUpdate(bio="new"))

    assert seen[0].bio == "new"
    assert seen[0].username == "alice"
    assert saved.bio == "new"
    assert cache.get(profile_key("me")) == saved
    assert remote.writes == [("profiles", "update", {"bio": "new"}, {"id": "me"})]
    assert cache.state(profile_key("me")).is_stale


@pytest.mark.asyncio
async def test_update_without_cached_profile_still_writes(
    pipeline: MutationPipeline, cache: EntityCache, remote: FakeRemoteService
) -> None:
    remote.seed("profiles", {"id": "me", "username": "alice"})
    saved = await pipeline.run(UpdateProfile("me"), ProfileUpdate(username="bob"))
    assert saved.username == "bob"
    assert cache.get(profile_key("me")).username == "bob"


@pytest.mark.asyncio
async def test_failed_update_restores_profile(
    pipeline: MutationPipeline, cache: EntityCache, remote: FakeRemoteService
) -> None:
    before = cache.set(profile_key("me"), Profile(id="me", username="alice"))
    remote.fail("write", TransportError("offline"))

    with pytest.raises(MutationError) as excinfo:
        await pipeline.run(UpdateProfile("me"), ProfileUpdate(username="bob"))
    assert excinfo.value.kind == ErrorKind.TRANSPORT
    assert cache.get(profile_key("me")) is before


@pytest.mark.asyncio
async def test_empty_update_is_rejected(
    pipeline: MutationPipeline, remote: FakeRemoteService
) -> None:
    with pytest.raises(MutationError) as excinfo:
        await pipeline.run(UpdateProfile("me"), ProfileUpdate())
    assert excinfo.value.kind == ErrorKind.VALIDATION
    assert remote.writes == []
