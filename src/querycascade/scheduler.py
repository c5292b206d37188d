"""Scheduler - decides whether to serve, refresh or block for a query.

Decision table for a requested key:
- fresh entry: serve the cached value, no fetch
- stale entry: serve it and refresh in the background
  (blocking mode: fetch and wait instead)
- invalidated, empty or absent: fetch and wait

Every fetch goes through the InFlightRegistry, so concurrent requests for
one key share a single call of the query's fetch function.
"""

from __future__ import annotations

import enum
import functools
import logging
from collections.abc import Hashable, Iterable
from typing import Any, TypeVar, cast

from querycascade.errors import FetchError, StaleWriteDiscarded
from querycascade.fanout import FanOut
from querycascade.inflight import InFlightRegistry, InFlightRequest
from querycascade.store import CacheStore, now_ms
from querycascade.types import CacheEntry, Clock, FetchMode, Query, QueryPolicy, QueryState

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Decision(str, enum.Enum):
    SERVE = "serve"
    SERVE_AND_REFRESH = "serve-and-refresh"
    FETCH = "fetch"


def decide(entry: CacheEntry[Any] | None, policy: QueryPolicy, now: int) -> Decision:
    """Pick how to answer a read from the entry's state."""
    if entry is None or not entry.has_value:
        return Decision.FETCH
    if not entry.is_stale_at(now):
        return Decision.SERVE
    if policy.mode is FetchMode.BLOCKING:
        return Decision.FETCH
    return Decision.SERVE_AND_REFRESH


class Scheduler:
    """Serves reads from the store and starts deduplicated fetches."""

    def __init__(
        self,
        store: CacheStore,
        registry: InFlightRegistry,
        fanout: FanOut,
        *,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._fanout = fanout
        self._clock = clock or now_ms

    def decide(self, query: Query[Any]) -> tuple[Decision, CacheEntry[Any] | None]:
        entry = self._store.get(query.key)
        return decide(entry, query.policy, self._clock()), entry

    async def fetch(self, query: Query[T]) -> T:
        """Answer a read, waiting for a fetch when nothing servable exists.

        Raises FetchError when the fetch fails. A result dropped because a
        newer write committed while it was pending is never returned; the
        read is retried instead.
        """
        waiter = object()
        while True:
            decision, entry = self.decide(query)
            if decision is Decision.SERVE:
                assert entry is not None
                return cast(T, entry.value)
            if decision is Decision.SERVE_AND_REFRESH:
                assert entry is not None
                self.refresh(query)
                return cast(T, entry.value)

            request = self._registry.get_or_start(
                query.key, functools.partial(self._run, query), waiter=waiter
            )
            try:
                return cast(T, await request)
            except StaleWriteDiscarded:
                logger.debug("Retrying read of %s after a newer write", request.canonical)
            finally:
                self._registry.remove_waiter(request, waiter)

    def refresh(
        self, query: Query[Any], *, waiters: Iterable[Hashable] = ()
    ) -> InFlightRequest:
        """Start, or join, a background fetch for the query.

        A refresh with no waiters is pinned: its result is applied even
        if readers join it and leave again.
        """
        request = self._registry.get_or_start(query.key, functools.partial(self._run, query))
        waiters = list(waiters)
        if not waiters:
            request.pinned = True
        for waiter in waiters:
            request.waiters.add(waiter)
        return request

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    async def _run(self, query: Query[T], request: InFlightRequest) -> T:
        """Call the fetch function and commit the outcome, then notify."""
        try:
            value = await query.fn()
        except Exception as exc:
            if request.superseded:
                raise StaleWriteDiscarded(query.key, request.started_at) from exc
            error = FetchError(query.key, exc)
            logger.warning("Fetch failed for %s: %s", request.canonical, exc)
            if not request.cancelled:
                self._commit_error(query, error)
            raise error from exc

        if request.superseded:
            logger.debug("Discarded superseded result for %s", request.canonical)
            raise StaleWriteDiscarded(query.key, request.started_at)

        current = self._store.peek(query.key)
        if current is not None and current.fetched_seq > request.started_seq:
            logger.debug("Discarded result for %s older than cached data", request.canonical)
            raise StaleWriteDiscarded(query.key, request.started_at)

        if request.cancelled:
            logger.debug("Dropped unwanted result for %s", request.canonical)
            return value

        policy = query.policy
        entry = self._store.set(
            query.key,
            value,
            policy.stale_window,
            policy.retention_window,
            seq=request.started_seq,
        )
        self._fanout.notify(query.key, QueryState.from_entry(entry))
        return value

    def _commit_error(self, query: Query[Any], error: FetchError) -> None:
        """Surface an error without discarding last-known-good data."""
        current = self._store.peek(query.key)
        if current is not None and current.has_value:
            entry = self._store.set_error(query.key, error)
            assert entry is not None
            state: QueryState[Any] = QueryState.from_entry(entry)
        else:
            state = QueryState.empty(query.key, error)
        self._fanout.notify(query.key, state)


__all__ = ["Decision", "Scheduler", "decide"]
