"""InFlightRegistry - one outstanding fetch per key."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Awaitable, Callable, Generator, Hashable, Iterator
from dataclasses import dataclass, field
from typing import Any

from querycascade.keys import KeyLike, as_key, canonical_parts, canonicalize, parts_have_prefix
from querycascade.store import now_ms
from querycascade.types import Clock, Key

logger = logging.getLogger(__name__)

FetchRunner = Callable[["InFlightRequest"], Awaitable[Any]]


@dataclass(eq=False)
class InFlightRequest:
    """A pending fetch shared by everyone asking for the same key.

    Awaiting the request waits for the shared result without letting the
    caller's cancellation reach the underlying fetch.
    """

    key: Key
    canonical: str
    started_at: int  # Unix timestamp ms
    started_seq: int
    waiters: set[Hashable] = field(default_factory=set)
    cancelled: bool = False
    superseded: bool = False
    pinned: bool = False  # wanted by the engine itself, kept when waiters leave
    task: asyncio.Task[Any] | None = None

    def __await__(self) -> Generator[Any, None, Any]:
        assert self.task is not None
        return asyncio.shield(self.task).__await__()

    def done(self) -> bool:
        return self.task is not None and self.task.done()


class InFlightRegistry:
    """Tracks pending fetches and deduplicates concurrent requests."""

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        sequence: Iterator[int] | None = None,
    ) -> None:
        self._clock = clock or now_ms
        self._sequence = sequence or itertools.count(1)
        self._requests: dict[str, InFlightRequest] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    def get(self, key: KeyLike) -> InFlightRequest | None:
        return self._requests.get(canonicalize(key))

    def get_or_start(
        self,
        key: KeyLike,
        fetch_fn: FetchRunner,
        *,
        waiter: Hashable | None = None,
    ) -> InFlightRequest:
        """Join the pending request for key, or start one.

        fetch_fn receives the request and is responsible for committing its
        result; the registration is removed only after it returns.
        """
        canonical = canonicalize(key)
        request = self._requests.get(canonical)

        if request is None:
            request = InFlightRequest(
                key=as_key(key),
                canonical=canonical,
                started_at=self._clock(),
                started_seq=next(self._sequence),
            )
            self._requests[canonical] = request
            task = asyncio.create_task(
                self._run(request, fetch_fn), name=f"querycascade-fetch:{canonical}"
            )
            request.task = task
            self._tasks.add(task)
            task.add_done_callback(self._finished)
            logger.debug("Started fetch for %s", canonical)
        elif request.cancelled:
            # Someone wants the result again
            request.cancelled = False

        if waiter is not None:
            request.waiters.add(waiter)
        return request

    def add_waiter(self, key: KeyLike, waiter: Hashable) -> InFlightRequest | None:
        request = self.get(key)
        if request is not None:
            request.waiters.add(waiter)
            request.cancelled = False
        return request

    def remove_waiter(self, request: InFlightRequest, waiter: Hashable) -> None:
        """Detach one waiter; when none are left the result is unwanted.

        Pinned requests keep running and are still applied.
        """
        request.waiters.discard(waiter)
        if not request.waiters and not request.pinned and not request.done():
            if self._requests.get(request.canonical) is request:
                self.cancel(request.key)

    def cancel(self, key: KeyLike) -> bool:
        """Signal that nobody wants the pending result any more.

        The fetch keeps running; when it settles its result is not applied.
        """
        request = self.get(key)
        if request is None:
            return False
        request.cancelled = True
        request.waiters.clear()
        logger.debug("Cancelled fetch for %s", request.canonical)
        return True

    def supersede(self, key: KeyLike) -> InFlightRequest | None:
        """Detach a request that started before a newer write committed.

        Its result is discarded when it settles, and the next request for
        the key starts a new fetch.
        """
        request = self._requests.pop(canonicalize(key), None)
        if request is not None:
            request.superseded = True
            logger.debug("Superseded fetch for %s", request.canonical)
        return request

    def pending(self) -> list[InFlightRequest]:
        return list(self._requests.values())

    def matching(self, prefix: KeyLike) -> list[InFlightRequest]:
        prefix_parts = canonical_parts(prefix)
        return [
            request
            for request in self._requests.values()
            if parts_have_prefix(prefix_parts, canonical_parts(request.key))
        ]

    async def wait_idle(self) -> None:
        """Wait until every started fetch, detached ones included, settles."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def __len__(self) -> int:
        return len(self._requests)

    def __contains__(self, key: object) -> bool:
        return canonicalize(key) in self._requests  # type: ignore[arg-type]

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    async def _run(self, request: InFlightRequest, fetch_fn: FetchRunner) -> Any:
        try:
            return await fetch_fn(request)
        finally:
            if self._requests.get(request.canonical) is request:
                del self._requests[request.canonical]

    def _finished(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled():
            # Mark the exception retrieved; awaiters still see it
            task.exception()


__all__ = ["FetchRunner", "InFlightRegistry", "InFlightRequest"]
