"""Subscriber fan-out - notifies observers when a key's state changes."""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable
from typing import Any

from querycascade.keys import KeyLike, as_key, canonical_parts, canonicalize, parts_have_prefix
from querycascade.types import EntryStatus, Key, QueryState

logger = logging.getLogger(__name__)

Observer = Callable[[QueryState[Any]], None]


class Subscription:
    """A reader observing one key until it unsubscribes."""

    __slots__ = ("_fanout", "_observer", "_seen", "active", "canonical", "id", "key", "state")

    def __init__(
        self,
        fanout: FanOut,
        id: int,
        key: Key,
        observer: Observer | None,
    ) -> None:
        self._fanout = fanout
        self._observer = observer
        self._seen: tuple[int, EntryStatus, BaseException | None] | None = None
        self.id = id
        self.key = key
        self.canonical = canonicalize(key)
        self.state: QueryState[Any] = QueryState.empty(key)
        self.active = True

    @property
    def value(self) -> Any:
        return self.state.value

    @property
    def status(self) -> EntryStatus:
        return self.state.status

    @property
    def error(self) -> BaseException | None:
        return self.state.error

    def unsubscribe(self) -> None:
        self._fanout.unsubscribe(self)

    def deliver(self, state: QueryState[Any]) -> bool:
        """Hand a state to the observer unless it has already seen it."""
        if not self.active:
            return False
        seen = self._seen
        if (
            seen is not None
            and seen[0] == state.version
            and seen[1] is state.status
            and seen[2] is state.error
        ):
            return False

        self._seen = (state.version, state.status, state.error)
        self.state = state
        if self._observer is not None:
            try:
                self._observer(state)
            except Exception:
                logger.exception("Observer of %s failed", self.canonical)
        return True

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.unsubscribe()

    def __repr__(self) -> str:
        return f"Subscription({self.id}, {self.canonical}, {self.state.status.value})"


class FanOut:
    """Registry of subscriptions grouped by canonical key."""

    def __init__(
        self,
        *,
        on_unsubscribe: Callable[[Subscription], None] | None = None,
    ) -> None:
        self._subscriptions: dict[str, dict[int, Subscription]] = {}
        self._ids = itertools.count(1)
        self._on_unsubscribe = on_unsubscribe

    def subscribe(self, key: KeyLike, observer: Observer | None = None) -> Subscription:
        subscription = Subscription(self, next(self._ids), as_key(key), observer)
        self._subscriptions.setdefault(subscription.canonical, {})[subscription.id] = subscription
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        group = self._subscriptions.get(subscription.canonical)
        if group is None or group.pop(subscription.id, None) is None:
            return False
        if not group:
            del self._subscriptions[subscription.canonical]
        subscription.active = False
        if self._on_unsubscribe is not None:
            self._on_unsubscribe(subscription)
        return True

    def notify(self, key: KeyLike, state: QueryState[Any]) -> int:
        """Deliver a committed state to every observer of key."""
        group = self._subscriptions.get(canonicalize(key))
        if not group:
            return 0
        return sum(1 for subscription in list(group.values()) if subscription.deliver(state))

    def subscriptions(self, key: KeyLike) -> list[Subscription]:
        return list(self._subscriptions.get(canonicalize(key), {}).values())

    def subscribed_keys(self, prefix: KeyLike | None = None) -> list[Key]:
        """Keys with at least one subscriber, optionally under a prefix."""
        keys: list[Key] = []
        prefix_parts = canonical_parts(prefix) if prefix is not None else ()
        for group in self._subscriptions.values():
            key = next(iter(group.values())).key
            if parts_have_prefix(prefix_parts, canonical_parts(key)):
                keys.append(key)
        return keys

    def __len__(self) -> int:
        return sum(len(group) for group in self._subscriptions.values())


__all__ = ["FanOut", "Observer", "Subscription"]
