"""Optimistic mutation pipeline.

Every user-initiated write goes through ``MutationPipeline.run``:

1. cancel in-flight fetches for the keys the mutation touches, so a late read
   cannot overwrite the optimistic value;
2. snapshot those keys;
3. apply the optimistic change to the cache;
4. dispatch the write to the backend;
5. on success, reconcile the cache with the server's answer and mark
   dependent keys stale; on any failure, restore the snapshot verbatim and
   raise ``MutationError``. A mutation may leave a failure marker through
   ``rolled_back``.

Writes are never retried. Mutations on disjoint keys run concurrently; for
overlapping keys the last reconciliation to arrive wins.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from feed_sync.core.errors import MutationError, describe_error
from feed_sync.services.backend import RemoteService
from feed_sync.services.cache import CacheKey, CacheSnapshot, EntityCache, RefetchType

# Configure logger for this module
logger = logging.getLogger(__name__)

V = TypeVar("V")
R = TypeVar("R")


@dataclass(frozen=True)
class Invalidation:
    """A key prefix to mark stale after a successful write."""

    prefix: CacheKey
    refetch: RefetchType = "none"


@dataclass
class MutationContext:
    """Per-run state shared between the stages of one mutation.

    Attributes:
        snapshot: Values of the mutation's keys before the optimistic apply.
        temp_id: Placeholder id assigned by ``apply``, used by ``reconcile``
            to find the optimistic record it must replace.
        data: Anything else a mutation needs to carry from apply to reconcile.
    """

    snapshot: CacheSnapshot = field(default_factory=CacheSnapshot)
    temp_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


class Mutation(Generic[V, R]):
    """Base class for a write with an optimistic cache effect.

    Subclasses override ``dispatch`` and usually ``keys`` and ``apply``.
    """

    name = "mutation"

    def keys(self, cache: EntityCache, variables: V) -> Sequence[CacheKey]:
        """Return every cache key ``apply`` or ``reconcile`` will write."""
        return ()

    def apply(self, cache: EntityCache, variables: V, context: MutationContext) -> None:
        """Write the optimistic value(s) into the cache."""

    async def dispatch(self, service: RemoteService, variables: V, context: MutationContext) -> R:
        raise NotImplementedError

    def reconcile(
        self, cache: EntityCache, variables: V, result: R, context: MutationContext
    ) -> None:
        """Replace optimistic values with the server's answer."""

    def invalidations(self, variables: V, result: R) -> Sequence[Invalidation]:
        return ()

    def rolled_back(
        self, cache: EntityCache, variables: V, context: MutationContext, error: Exception
    ) -> None:
        """Called after the snapshot was restored following ``error``."""


class MutationPipeline:
    """Runs mutations against one cache and one backend."""

    def __init__(self, cache: EntityCache, service: RemoteService) -> None:
        self.cache = cache
        self.service = service

    async def run(self, mutation: Mutation[V, R], variables: V) -> R:
        """Run ``mutation`` with ``variables`` through the optimistic pipeline.

        Returns:
            The backend's result for the write.

        Raises:
            MutationError: If the write failed; the cache has been restored to
                its pre-mutation values.
        """
        keys = list(dict.fromkeys(mutation.keys(self.cache, variables)))
        for key in keys:
            self.cache.cancel(key)

        context = MutationContext(snapshot=self.cache.snapshot(keys))
        try:
            mutation.apply(self.cache, variables, context)
            result = await mutation.dispatch(self.service, variables, context)
        except asyncio.CancelledError:
            self.cache.restore(context.snapshot)
            raise
        except Exception as e:
            self.cache.restore(context.snapshot)
            mutation.rolled_back(self.cache, variables, context, e)
            error = describe_error(e)
            logger.error(
                "Mutation %s rolled back (%s): %s",
                mutation.name,
                error.kind.value,
                error.raw_message,
                exc_info=True,
            )
            raise MutationError(mutation.name, error.kind, error.message) from e

        mutation.reconcile(self.cache, variables, result, context)
        for invalidation in mutation.invalidations(variables, result):
            self.cache.invalidate(invalidation.prefix, refetch=invalidation.refetch)
        return result
