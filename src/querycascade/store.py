"""CacheStore - single owner of every cached entry.

The store is synchronous and is mutated only from the event loop that
owns the engine, so it needs no locking. Entries are immutable
snapshots; every transition replaces the entry, so observers never see
a half-updated one.
"""

from __future__ import annotations

import itertools
import logging
import time
from collections.abc import Iterator
from dataclasses import replace
from typing import Any

from querycascade.errors import InvalidKeyError
from querycascade.keys import (
    KeyLike,
    as_key,
    canonical_parts,
    canonicalize,
    parts_have_prefix,
)
from querycascade.types import CacheEntry, Clock, EntryStatus, Key

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


class CacheStore:
    """In-memory store of cache entries keyed by canonical key."""

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        sequence: Iterator[int] | None = None,
    ) -> None:
        self._clock = clock or now_ms
        self._sequence = sequence or itertools.count(1)
        self._entries: dict[str, CacheEntry[Any]] = {}
        self._parts: dict[str, tuple[str, ...]] = {}
        self._subscribers: dict[str, int] = {}

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, key: KeyLike) -> CacheEntry[Any] | None:
        """Get a servable entry, or None if absent, invalidated or empty.

        A fresh entry read past its stale deadline becomes stale, and every
        read pushes the retention deadline forward.
        """
        canonical = self._canonical(key)
        entry = self._entries.get(canonical)
        if entry is None or not entry.has_value:
            return None

        now = self._clock()
        if entry.status is EntryStatus.FRESH and now >= entry.stale_at:
            entry = replace(entry, status=EntryStatus.STALE)
        entry = replace(entry, gc_at=max(entry.gc_at, now + entry.retention_window))
        self._entries[canonical] = entry
        return entry

    def peek(self, key: KeyLike) -> CacheEntry[Any] | None:
        """Raw entry lookup, including tombstones, without side effects."""
        return self._entries.get(self._canonical(key))

    def matching(self, prefix: KeyLike) -> list[CacheEntry[Any]]:
        """All entries whose key starts with prefix."""
        return [self._entries[c] for c in self._matching_keys(prefix)]

    def keys(self) -> list[Key]:
        return [entry.key for entry in self._entries.values()]

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        try:
            return self._canonical(key) in self._entries  # type: ignore[arg-type]
        except InvalidKeyError:
            return False

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def set(
        self,
        key: KeyLike,
        value: Any,
        stale_window: int,
        retention_window: int,
        *,
        seq: int | None = None,
    ) -> CacheEntry[Any]:
        """Store a fresh value, replacing any existing entry."""
        key = as_key(key)
        canonical = self._canonical(key)
        previous = self._entries.get(canonical)
        now = self._clock()

        entry: CacheEntry[Any] = CacheEntry(
            key=key,
            value=value,
            status=EntryStatus.FRESH,
            fetched_at=now,
            stale_at=now + stale_window,
            gc_at=now + retention_window,
            stale_window=stale_window,
            retention_window=retention_window,
            version=previous.version + 1 if previous else 1,
            fetched_seq=seq if seq is not None else next(self._sequence),
        )
        self._commit(canonical, entry)
        logger.debug("Stored %s (stale in %dms)", canonical, stale_window)
        return entry

    def set_error(self, key: KeyLike, error: BaseException) -> CacheEntry[Any] | None:
        """Attach an error to an existing entry, keeping its value."""
        canonical = self._canonical(key)
        entry = self._entries.get(canonical)
        if entry is None:
            return None
        entry = replace(entry, error=error, version=entry.version + 1)
        self._entries[canonical] = entry
        return entry

    def mark_stale(self, prefix: KeyLike) -> list[Key]:
        """Mark every entry with a value under prefix as stale.

        Values are kept so they can still be shown while refetching.
        Returns the keys that were marked.
        """
        changed: list[Key] = []
        for canonical in self._matching_keys(prefix):
            entry = self._entries[canonical]
            if not entry.has_value:
                continue
            self._entries[canonical] = replace(
                entry, status=EntryStatus.STALE, version=entry.version + 1
            )
            changed.append(entry.key)
        if changed:
            logger.debug("Marked %d entries stale under %r", len(changed), prefix)
        return changed

    def invalidate(self, prefix: KeyLike) -> list[Key]:
        """Clear the value of every entry under prefix.

        Entries that are already invalidated are left alone, so repeating
        an invalidation changes nothing. Returns the keys that
        changed.
        """
        changed: list[Key] = []
        for canonical in self._matching_keys(prefix):
            entry = self._entries[canonical]
            if entry.status is EntryStatus.INVALIDATED:
                continue
            self._entries[canonical] = replace(
                entry,
                value=None,
                status=EntryStatus.INVALIDATED,
                error=None,
                shadow=None,
                version=entry.version + 1,
            )
            changed.append(entry.key)
        if changed:
            logger.debug("Invalidated %d entries under %r", len(changed), prefix)
        return changed

    def tombstone(self, key: KeyLike) -> bool:
        """Record an invalidated placeholder for a key with no entry."""
        key = as_key(key)
        canonical = self._canonical(key)
        if canonical in self._entries:
            return False
        now = self._clock()
        self._commit(
            canonical,
            CacheEntry(
                key=key,
                value=None,
                status=EntryStatus.INVALIDATED,
                fetched_at=now,
                stale_at=now,
                gc_at=now,
                stale_window=0,
                retention_window=0,
                version=1,
            ),
        )
        return True

    def remove(self, prefix: KeyLike) -> list[Key]:
        """Delete every entry under prefix."""
        removed: list[Key] = []
        for canonical in self._matching_keys(prefix):
            removed.append(self._entries[canonical].key)
            self._drop(canonical)
        return removed

    def clear(self) -> None:
        """Delete all entries. Subscriber counts are kept."""
        self._entries.clear()
        self._parts.clear()

    # -------------------------------------------------------------------------
    # Optimistic updates
    # -------------------------------------------------------------------------

    def apply_optimistic(
        self,
        key: KeyLike,
        value: Any,
        stale_window: int,
        retention_window: int,
    ) -> CacheEntry[Any] | None:
        """Show a provisional value and return the entry it replaced.

        The replaced entry is kept in the shadow slot; the provisional
        entry is stale so it is refetched once the write settles.
        """
        key = as_key(key)
        canonical = self._canonical(key)
        previous = self._entries.get(canonical)
        now = self._clock()

        if previous is None:
            provisional: CacheEntry[Any] = CacheEntry(
                key=key,
                value=value,
                status=EntryStatus.STALE,
                fetched_at=now,
                stale_at=now,
                gc_at=now + retention_window,
                stale_window=stale_window,
                retention_window=retention_window,
                version=1,
            )
            self._commit(canonical, provisional)
        else:
            self._entries[canonical] = replace(
                previous,
                value=value,
                status=EntryStatus.STALE,
                error=None,
                shadow=previous,
                version=previous.version + 1,
            )
        return previous

    def rollback(
        self, key: KeyLike, snapshot: CacheEntry[Any] | None
    ) -> CacheEntry[Any] | None:
        """Restore the entry that an optimistic update replaced."""
        canonical = self._canonical(key)
        current = self._entries.get(canonical)
        if snapshot is None:
            self._drop(canonical)
            return None
        version = max(snapshot.version, current.version if current else 0) + 1
        restored = replace(snapshot, version=version)
        self._commit(canonical, restored)
        logger.debug("Rolled back %s to version %d", canonical, snapshot.version)
        return restored

    def commit_optimistic(self, key: KeyLike) -> None:
        """Drop the shadow slot once the write has succeeded."""
        canonical = self._canonical(key)
        entry = self._entries.get(canonical)
        if entry is not None and entry.shadow is not None:
            self._entries[canonical] = replace(entry, shadow=None)

    # -------------------------------------------------------------------------
    # Retention
    # -------------------------------------------------------------------------

    def retain(self, key: KeyLike) -> int:
        """Count one more subscriber for key."""
        canonical = self._canonical(key)
        count = self._subscribers.get(canonical, 0) + 1
        self._subscribers[canonical] = count
        return count

    def release(self, key: KeyLike) -> int:
        """Count one subscriber less; the last one restarts retention."""
        canonical = self._canonical(key)
        count = max(self._subscribers.get(canonical, 0) - 1, 0)
        if count:
            self._subscribers[canonical] = count
            return count

        self._subscribers.pop(canonical, None)
        entry = self._entries.get(canonical)
        if entry is not None:
            self._entries[canonical] = replace(
                entry, gc_at=self._clock() + entry.retention_window
            )
        return 0

    def subscriber_count(self, key: KeyLike) -> int:
        return self._subscribers.get(self._canonical(key), 0)

    def evict_expired(self, now: int | None = None) -> list[Key]:
        """Remove unobserved entries whose retention deadline has passed."""
        if now is None:
            now = self._clock()
        expired: list[Key] = []
        for canonical, entry in list(self._entries.items()):
            if entry.gc_at <= now and not self._subscribers.get(canonical):
                expired.append(entry.key)
                self._drop(canonical)
        if expired:
            logger.debug("Evicted %d expired entries", len(expired))
        return expired

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _canonical(self, key: KeyLike) -> str:
        return canonicalize(key)

    def _commit(self, canonical: str, entry: CacheEntry[Any]) -> None:
        if canonical not in self._parts:
            self._parts[canonical] = canonical_parts(entry.key)
        self._entries[canonical] = entry

    def _drop(self, canonical: str) -> None:
        self._entries.pop(canonical, None)
        self._parts.pop(canonical, None)

    def _matching_keys(self, prefix: KeyLike) -> list[str]:
        prefix_parts = canonical_parts(prefix)
        return [
            canonical
            for canonical, parts in self._parts.items()
            if parts_have_prefix(prefix_parts, parts)
        ]


__all__ = ["CacheStore", "now_ms"]
