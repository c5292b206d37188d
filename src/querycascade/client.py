"""QueryClient - one cache engine per client session.

Provides:
- query(): build a read registration (key, fetch function, windows)
- subscribe(): observe a key; serves cached data and fetches as needed
- fetch() / prefetch(): direct reads through the scheduler
- mutation(): bind a MutationDescriptor to this engine
- invalidate(), set_query_data(), remove(), clear(): manual cache control
- start() / close(): lifecycle of the background eviction sweep
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from querycascade.duration import parse_duration
from querycascade.fanout import FanOut, Observer, Subscription
from querycascade.inflight import InFlightRegistry, InFlightRequest
from querycascade.keys import KeyLike, as_key, canonical_parts, canonicalize
from querycascade.mutations import (
    Invalidation,
    InvalidationTarget,
    Mutation,
    MutationCoordinator,
    MutationDescriptor,
)
from querycascade.scheduler import Decision, Scheduler
from querycascade.store import CacheStore, now_ms
from querycascade.types import (
    CacheEntry,
    Clock,
    Duration,
    FetchMode,
    Key,
    Query,
    QueryPolicy,
    QueryState,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
I = TypeVar("I")  # noqa: E741
R = TypeVar("R")


class QueryClient:
    """Cache engine shared by every reader and writer of one session.

    Usage:
        async with create_client(default_stale="30s") as client:
            comments = client.query(("comments", post_id, 1, 20), fetch_comments)
            sub = client.subscribe(comments, on_change)
            create = client.mutation(create_comment_descriptor)
            await create.run({"postId": post_id, "body": "hi"})
    """

    def __init__(
        self,
        *,
        default_stale: Duration = "0ms",
        default_retention: Duration = "5m",
        default_mode: FetchMode = FetchMode.STALE_WHILE_REVALIDATE,
        gc_interval: Duration = "1m",
        clock: Clock | None = None,
    ) -> None:
        self._clock = clock or now_ms
        self._default_policy = QueryPolicy(
            stale_window=parse_duration(default_stale),
            retention_window=parse_duration(default_retention),
            mode=FetchMode(default_mode),
        )
        self._gc_interval = parse_duration(gc_interval)
        if self._gc_interval <= 0:
            raise ValueError("gc_interval must be positive")

        sequence = itertools.count(1)
        self._store = CacheStore(clock=self._clock, sequence=sequence)
        self._registry = InFlightRegistry(clock=self._clock, sequence=sequence)
        self._fanout = FanOut(on_unsubscribe=self._on_unsubscribe)
        self._scheduler = Scheduler(self._store, self._registry, self._fanout, clock=self._clock)
        self._queries: dict[str, Query[Any]] = {}
        self._coordinator = MutationCoordinator(
            self._store,
            self._registry,
            self._fanout,
            self._scheduler,
            resolve_query=self._query_for,
            default_policy=self._default_policy,
        )
        self._sweeper: asyncio.Task[None] | None = None

    # -------------------------------------------------------------------------
    # Components
    # -------------------------------------------------------------------------

    @property
    def store(self) -> CacheStore:
        return self._store

    @property
    def registry(self) -> InFlightRegistry:
        return self._registry

    @property
    def fanout(self) -> FanOut:
        return self._fanout

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def coordinator(self) -> MutationCoordinator:
        return self._coordinator

    @property
    def default_policy(self) -> QueryPolicy:
        return self._default_policy

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def query(
        self,
        key: KeyLike,
        fn: Callable[[], Awaitable[T]],
        *,
        stale: Duration | None = None,
        retention: Duration | None = None,
        mode: FetchMode | None = None,
        enabled: bool = True,
    ) -> Query[T]:
        """Build a read registration with this client's defaults."""
        key = as_key(key)
        canonical_parts(key)
        defaults = self._default_policy
        policy = QueryPolicy(
            stale_window=parse_duration(stale) if stale is not None else defaults.stale_window,
            retention_window=(
                parse_duration(retention) if retention is not None else defaults.retention_window
            ),
            mode=FetchMode(mode) if mode is not None else defaults.mode,
        )
        return Query(key=key, fn=fn, policy=policy, enabled=enabled)

    def subscribe(self, query: Query[Any], observer: Observer | None = None) -> Subscription:
        """Observe a query's key until the subscription is closed.

        Cached data is delivered right away; a fetch or background refresh
        starts when the entry is missing or stale. Must be called from the
        event loop that owns this client.
        """
        subscription = self._fanout.subscribe(query.key, observer)
        self._queries[subscription.canonical] = query
        self._store.retain(query.key)

        decision, entry = self._scheduler.decide(query)
        if entry is not None and decision is not Decision.FETCH:
            subscription.deliver(QueryState.from_entry(entry))

        if query.enabled and decision is not Decision.SERVE:
            self._scheduler.refresh(query, waiters=[subscription.id])
        return subscription

    async def fetch(self, query: Query[T]) -> T:
        """Read through the cache, waiting for a fetch if needed."""
        return await self._scheduler.fetch(query)

    def prefetch(self, query: Query[Any]) -> InFlightRequest | None:
        """Start a background fetch unless the cached value is fresh."""
        decision, _ = self._scheduler.decide(query)
        if decision is Decision.SERVE:
            return None
        return self._scheduler.refresh(query)

    def get_query_data(self, key: KeyLike) -> Any | None:
        entry = self._store.get(key)
        return entry.value if entry is not None else None

    def get_query_state(self, key: KeyLike) -> QueryState[Any]:
        entry = self._store.peek(key)
        if entry is None:
            return QueryState.empty(as_key(key))
        return QueryState.from_entry(entry)

    def set_query_data(
        self,
        key: KeyLike,
        value: Any,
        *,
        stale: Duration | None = None,
        retention: Duration | None = None,
    ) -> CacheEntry[Any]:
        """Write a value directly into the cache and notify observers.

        A callable value is treated as an updater of the current value.
        Pending fetches for the key will not overwrite it.
        """
        key = as_key(key)
        query = self._query_for(key)
        policy = query.policy if query is not None else self._default_policy
        if callable(value):
            value = value(self.get_query_data(key))

        entry = self._store.set(
            key,
            value,
            parse_duration(stale) if stale is not None else policy.stale_window,
            parse_duration(retention) if retention is not None else policy.retention_window,
        )
        self._fanout.notify(key, QueryState.from_entry(entry))
        return entry

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def mutation(self, descriptor: MutationDescriptor[I, R]) -> Mutation[I, R]:
        return Mutation(descriptor, self._coordinator)

    async def invalidate(
        self,
        *prefixes: KeyLike,
        evict: bool = False,
        refetch: bool = True,
    ) -> list[Key]:
        """Manually invalidate every cached read under the given prefixes.

        Usage:
            await client.invalidate(("comments", "post-1"))
            await client.invalidate(("posts",), evict=True)
        """
        targets: list[InvalidationTarget] = [
            Invalidation(as_key(prefix), evict) for prefix in prefixes
        ]
        affected = self._coordinator.invalidate(targets)
        if refetch:
            requests = self._coordinator.refetch(affected)
            if requests:
                await asyncio.gather(*requests, return_exceptions=True)
        return affected

    def remove(self, prefix: KeyLike) -> list[Key]:
        """Drop entries under prefix; pending fetches are discarded."""
        for request in self._registry.matching(prefix):
            self._registry.supersede(request.key)
        removed = self._store.remove(prefix)
        for key in removed:
            self._fanout.notify(key, QueryState.empty(key))
        return removed

    def clear(self) -> None:
        """Drop every entry; pending fetches are discarded.

        Subscriptions stay open and see an empty state.
        """
        for request in self._registry.pending():
            self._registry.supersede(request.key)
        self._store.clear()
        for key in self._fanout.subscribed_keys():
            self._fanout.notify(key, QueryState.empty(key))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def sweep(self, now: int | None = None) -> list[Key]:
        """Evict unobserved entries past their retention deadline."""
        return self._store.evict_expired(now)

    def start(self) -> None:
        """Start the periodic eviction sweep on the running loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_forever(), name="querycascade-gc")

    async def close(self) -> None:
        """Stop the sweep and wait for pending fetches to settle."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        await self._registry.wait_idle()

    async def wait_idle(self) -> None:
        await self._registry.wait_idle()

    async def __aenter__(self) -> QueryClient:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self._gc_interval / 1000)
            self.sweep()

    def _query_for(self, key: Key) -> Query[Any] | None:
        return self._queries.get(canonicalize(key))

    def _on_unsubscribe(self, subscription: Subscription) -> None:
        self._store.release(subscription.key)
        request = self._registry.get(subscription.key)
        if request is not None:
            self._registry.remove_waiter(request, subscription.id)
        if not self._fanout.subscriptions(subscription.key):
            self._queries.pop(subscription.canonical, None)


def create_client(
    *,
    default_stale: Duration = "0ms",
    default_retention: Duration = "5m",
    default_mode: FetchMode = FetchMode.STALE_WHILE_REVALIDATE,
    gc_interval: Duration = "1m",
    clock: Clock | None = None,
) -> QueryClient:
    """Create a cache engine instance.

    Args:
        default_stale: How long fetched data counts as fresh
        default_retention: How long unobserved data is kept
        default_mode: Serve stale data while refetching, or block
        gc_interval: Period of the eviction sweep
        clock: Millisecond clock, for tests

    Returns:
        QueryClient with query, subscribe, fetch, mutation, invalidate
    """
    return QueryClient(
        default_stale=default_stale,
        default_retention=default_retention,
        default_mode=default_mode,
        gc_interval=gc_interval,
        clock=clock,
    )


__all__ = ["QueryClient", "create_client"]
