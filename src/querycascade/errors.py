"""Exceptions raised by the querycascade engine."""

from __future__ import annotations

from typing import Any


class QueryCascadeError(Exception):
    """Base class for all engine errors."""


class InvalidKeyError(QueryCascadeError, ValueError):
    """A query key could not be canonicalized."""


class FetchError(QueryCascadeError):
    """The fetch function of a query failed.

    The collaborator's exception is available as ``cause`` and is chained
    as ``__cause__``.
    """

    def __init__(self, key: tuple[Any, ...], cause: BaseException) -> None:
        super().__init__(f"Fetch failed for {key!r}: {cause}")
        self.key = key
        self.cause = cause


class MutationError(QueryCascadeError):
    """A mutation's write failed or reported failure."""

    def __init__(self, name: str, cause: BaseException | None = None, message: str | None = None) -> None:
        detail = message or (str(cause) if cause is not None else "mutation failed")
        super().__init__(f"Mutation {name!r} failed: {detail}")
        self.name = name
        self.cause = cause


class MutationRejected(MutationError):
    """A mutation was called while running under the reject policy."""

    def __init__(self, name: str) -> None:
        super().__init__(name, message="already running")


class StaleWriteDiscarded(QueryCascadeError):
    """An in-flight read settled after a newer write and was dropped."""

    def __init__(self, key: tuple[Any, ...], started_at: int) -> None:
        super().__init__(f"Discarded result for {key!r} started at {started_at}")
        self.key = key
        self.started_at = started_at
