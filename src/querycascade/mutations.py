"""MutationCoordinator - runs writes and cascades invalidation.

A mutation moves through IDLE -> RUNNING -> SUCCESS | FAILURE. Only a
confirmed success invalidates anything, and the whole invalidation map is
applied before run() returns. A failure rolls back optimistic values.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from querycascade.errors import MutationError, MutationRejected
from querycascade.fanout import FanOut
from querycascade.inflight import InFlightRegistry, InFlightRequest
from querycascade.keys import KeyLike, as_key, canonical_parts, canonicalize
from querycascade.scheduler import Scheduler
from querycascade.store import CacheStore
from querycascade.types import CacheEntry, Key, Query, QueryPolicy, QueryState

logger = logging.getLogger(__name__)

I = TypeVar("I")  # noqa: E741
R = TypeVar("R")


class MutationState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"


class ConcurrencyPolicy(str, enum.Enum):
    """What happens when a mutation is run while already running."""

    ALLOW = "allow"
    QUEUE = "queue"
    REJECT = "reject"


@dataclass(frozen=True, slots=True)
class Invalidation:
    """A key prefix affected by a write.

    evict=False marks matching entries stale and keeps their values on
    display; evict=True clears them so the next read blocks on a fetch.
    """

    prefix: Key
    evict: bool = False


@dataclass(frozen=True, slots=True)
class OptimisticUpdate:
    """A provisional value shown while a write is pending."""

    key: Key
    updater: Callable[[Any], Any]  # current value (or None) -> provisional


InvalidationTarget = Invalidation | KeyLike
PrefixResolver = Callable[[Any, Any], Iterable[InvalidationTarget]]


@dataclass(frozen=True)
class MutationDescriptor(Generic[I, R]):
    """Declares a write and the cached reads it can change."""

    name: str
    fn: Callable[[I], Awaitable[R]]
    invalidates: Sequence[InvalidationTarget] | PrefixResolver = ()
    optimistic: Callable[[I], Iterable[OptimisticUpdate]] | None = None
    is_success: Callable[[R], bool] | None = None
    concurrency: ConcurrencyPolicy = ConcurrencyPolicy.ALLOW
    await_refetch: bool = True

    def resolve(self, input: I, result: R) -> list[Invalidation]:
        """Resolve the invalidation map for one successful run."""
        targets = (
            self.invalidates(input, result)
            if callable(self.invalidates)
            else self.invalidates
        )
        return [_as_invalidation(target) for target in targets]


@dataclass(frozen=True, slots=True)
class MutationOutcome(Generic[R]):
    """Settled result of one mutation run."""

    state: MutationState
    data: R | None = None
    error: MutationError | None = None
    invalidated: tuple[Key, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.state is MutationState.SUCCESS


def _as_invalidation(target: InvalidationTarget) -> Invalidation:
    if isinstance(target, Invalidation):
        return Invalidation(as_key(target.prefix), target.evict)
    return Invalidation(as_key(target))


def _failure_message(result: Any) -> str | None:
    if isinstance(result, Mapping):
        error = result.get("error")
    else:
        error = getattr(result, "error", None)
    return str(error) if error else None


class MutationCoordinator:
    """Applies write outcomes to the cache."""

    def __init__(
        self,
        store: CacheStore,
        registry: InFlightRegistry,
        fanout: FanOut,
        scheduler: Scheduler,
        *,
        resolve_query: Callable[[Key], Query[Any] | None],
        default_policy: QueryPolicy,
    ) -> None:
        self._store = store
        self._registry = registry
        self._fanout = fanout
        self._scheduler = scheduler
        self._resolve_query = resolve_query
        self._default_policy = default_policy

    async def run(self, descriptor: MutationDescriptor[I, R], input: I) -> MutationOutcome[R]:
        """Execute the write and settle the cache accordingly."""
        snapshots = self._apply_optimistic(descriptor, input)

        try:
            result = await descriptor.fn(input)
        except Exception as exc:
            error = MutationError(descriptor.name, exc)
            error.__cause__ = exc
            logger.warning("Mutation %s failed: %s", descriptor.name, exc)
            self._rollback(snapshots)
            return MutationOutcome(MutationState.FAILURE, error=error)

        if descriptor.is_success is not None and not descriptor.is_success(result):
            error = MutationError(descriptor.name, message=_failure_message(result))
            logger.warning("Mutation %s reported failure: %s", descriptor.name, error)
            self._rollback(snapshots)
            return MutationOutcome(MutationState.FAILURE, data=result, error=error)

        for key, _ in snapshots:
            self._store.commit_optimistic(key)

        targets = descriptor.resolve(input, result)
        affected = self.invalidate(targets)
        # Provisional values must be replaced by server data
        seen = {canonicalize(key) for key in affected}
        affected += [key for key, _ in snapshots if canonicalize(key) not in seen]

        requests = self.refetch(affected)
        if descriptor.await_refetch and requests:
            await asyncio.gather(*requests, return_exceptions=True)

        logger.debug(
            "Mutation %s succeeded, %d cached reads affected", descriptor.name, len(affected)
        )
        return MutationOutcome(MutationState.SUCCESS, data=result, invalidated=tuple(affected))

    def invalidate(self, targets: Iterable[InvalidationTarget]) -> list[Key]:
        """Apply an invalidation map and return the keys that changed.

        Runs synchronously: when it returns, no affected entry is fresh and
        no fetch started before it can overwrite the cache. Keys with a
        fetch in flight are always affected, even when their entry was
        already invalidated, so they get a fetch started after this write.
        """
        resolved = [_as_invalidation(target) for target in targets]
        for target in resolved:
            canonical_parts(target.prefix)

        affected: dict[str, Key] = {}
        for target in resolved:
            if target.evict:
                changed = self._store.invalidate(target.prefix)
            else:
                changed = self._store.mark_stale(target.prefix)

            for request in self._registry.matching(target.prefix):
                # First fetches in flight have no entry to mark yet
                self._store.tombstone(request.key)
                self._registry.supersede(request.key)
                changed.append(request.key)

            for key in changed:
                affected[canonicalize(key)] = key

        for key in affected.values():
            entry = self._store.peek(key)
            if entry is not None:
                self._fanout.notify(key, QueryState.from_entry(entry))
        return list(affected.values())

    def refetch(self, keys: Iterable[Key]) -> list[InFlightRequest]:
        """Refetch the keys that currently have subscribers.

        Keys nobody observes are left stale until their next read.
        """
        requests: list[InFlightRequest] = []
        for key in keys:
            subscriptions = self._fanout.subscriptions(key)
            if not subscriptions:
                continue
            query = self._resolve_query(key)
            if query is None or not query.enabled:
                continue
            requests.append(
                self._scheduler.refresh(query, waiters=[s.id for s in subscriptions])
            )
        return requests

    # -------------------------------------------------------------------------
    # Optimistic updates
    # -------------------------------------------------------------------------

    def _apply_optimistic(
        self, descriptor: MutationDescriptor[Any, Any], input: Any
    ) -> list[tuple[Key, CacheEntry[Any] | None]]:
        if descriptor.optimistic is None:
            return []

        policy = self._default_policy
        snapshots: list[tuple[Key, CacheEntry[Any] | None]] = []
        for update in descriptor.optimistic(input):
            key = as_key(update.key)
            # A pending read would overwrite the provisional value
            self._registry.supersede(key)
            current = self._store.peek(key)
            value = update.updater(current.value if current is not None else None)
            snapshot = self._store.apply_optimistic(
                key, value, policy.stale_window, policy.retention_window
            )
            snapshots.append((key, snapshot))
            entry = self._store.peek(key)
            assert entry is not None
            self._fanout.notify(key, QueryState.from_entry(entry))
        return snapshots

    def _rollback(self, snapshots: list[tuple[Key, CacheEntry[Any] | None]]) -> None:
        for key, snapshot in reversed(snapshots):
            restored = self._store.rollback(key, snapshot)
            if restored is not None:
                state: QueryState[Any] = QueryState.from_entry(restored)
            else:
                state = QueryState.empty(key)
            self._fanout.notify(key, state)


class Mutation(Generic[I, R]):
    """A runnable mutation bound to one engine.

    Usage:
        create = client.mutation(descriptor)
        outcome = await create.run({"postId": "p1", "body": "hi"})
        if outcome.succeeded:
            ...
    """

    def __init__(
        self,
        descriptor: MutationDescriptor[I, R],
        coordinator: MutationCoordinator,
    ) -> None:
        self.descriptor = descriptor
        self._coordinator = coordinator
        self._lock = asyncio.Lock()
        self._running = 0
        self.state = MutationState.IDLE
        self.data: R | None = None
        self.error: MutationError | None = None

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def running(self) -> bool:
        return self._running > 0

    async def run(self, input: I) -> MutationOutcome[R]:
        """Run the write; failures come back in the outcome, not raised.

        Raises MutationRejected when the reject policy refuses a concurrent
        call.
        """
        policy = self.descriptor.concurrency
        if policy is ConcurrencyPolicy.REJECT and self.running:
            raise MutationRejected(self.name)
        if policy is ConcurrencyPolicy.QUEUE:
            async with self._lock:
                return await self._run(input)
        return await self._run(input)

    async def execute(self, input: I) -> R:
        """Run the write and return its data, raising MutationError on failure."""
        outcome = await self.run(input)
        if outcome.error is not None:
            raise outcome.error
        return outcome.data  # type: ignore[return-value]

    def reset(self) -> None:
        if not self.running:
            self.state = MutationState.IDLE
            self.data = None
            self.error = None

    async def _run(self, input: I) -> MutationOutcome[R]:
        self._running += 1
        self.state = MutationState.RUNNING
        try:
            outcome = await self._coordinator.run(self.descriptor, input)
        except BaseException:
            self.state = MutationState.FAILURE
            raise
        finally:
            self._running -= 1
        self.state = outcome.state
        self.data = outcome.data
        self.error = outcome.error
        return outcome


__all__ = [
    "ConcurrencyPolicy",
    "Invalidation",
    "Mutation",
    "MutationCoordinator",
    "MutationDescriptor",
    "MutationOutcome",
    "MutationState",
    "OptimisticUpdate",
    "PrefixResolver",
]
