"""Core types for the querycascade engine."""

from __future__ import annotations

import enum
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Generic, TypeVar

T = TypeVar("T")

# A key is ("kind", *params); params are JSON-compatible primitives.
Key = tuple[Any, ...]

# Duration type alias
Duration = str | int | timedelta  # "30s", "5m", "2h", "1d", ms or timedelta

Clock = Callable[[], int]  # Unix timestamp ms


class EntryStatus(str, enum.Enum):
    """Lifecycle of a cached entry."""

    FRESH = "fresh"
    STALE = "stale"
    INVALIDATED = "invalidated"
    EMPTY = "empty"


class FetchMode(str, enum.Enum):
    """How a stale entry is served."""

    STALE_WHILE_REVALIDATE = "serve-stale-while-revalidate"
    BLOCKING = "blocking"


@dataclass(frozen=True, slots=True)
class CacheEntry(Generic[T]):
    """A cached value with metadata."""

    key: Key
    value: T | None
    status: EntryStatus
    fetched_at: int  # Unix timestamp ms
    stale_at: int  # fetched_at + stale window
    gc_at: int  # last access + retention window
    stale_window: int
    retention_window: int
    version: int = 0
    fetched_seq: int = 0
    error: BaseException | None = None
    shadow: CacheEntry[T] | None = None

    @property
    def has_value(self) -> bool:
        return self.status in (EntryStatus.FRESH, EntryStatus.STALE)

    def is_stale_at(self, now: int) -> bool:
        """Check if a servable entry should be refreshed."""
        return self.status is EntryStatus.STALE or now >= self.stale_at


@dataclass(frozen=True, slots=True)
class QueryPolicy:
    """Freshness and retention settings for one query."""

    stale_window: int  # ms
    retention_window: int  # ms
    mode: FetchMode = FetchMode.STALE_WHILE_REVALIDATE


@dataclass(frozen=True, slots=True)
class Query(Generic[T]):
    """A read registration: key, fetch function and policy."""

    key: Key
    fn: Callable[[], Awaitable[T]]
    policy: QueryPolicy
    enabled: bool = True


@dataclass(frozen=True, slots=True)
class QueryState(Generic[T]):
    """What an observer sees for a key."""

    key: Key
    value: T | None
    status: EntryStatus
    error: BaseException | None = None
    version: int = 0
    updated_at: int | None = None

    @classmethod
    def from_entry(cls, entry: CacheEntry[T]) -> QueryState[T]:
        return cls(
            key=entry.key,
            value=entry.value,
            status=entry.status,
            error=entry.error,
            version=entry.version,
            updated_at=entry.fetched_at,
        )

    @classmethod
    def empty(cls, key: Key, error: BaseException | None = None) -> QueryState[Any]:
        return cls(key=key, value=None, status=EntryStatus.EMPTY, error=error)

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def has_data(self) -> bool:
        return self.status in (EntryStatus.FRESH, EntryStatus.STALE)
