"""Query key construction, canonicalization and prefix matching."""

from __future__ import annotations

import json
from collections.abc import Callable, Sequence
from typing import Any

from querycascade.errors import InvalidKeyError
from querycascade.types import Key

KeyLike = Key | Sequence[Any]


def _reject(obj: Any) -> Any:
    raise TypeError(f"{type(obj).__name__} is not a valid key part")


def _dump(part: Any) -> str:
    return json.dumps(
        part,
        sort_keys=True,
        separators=(",", ":"),
        allow_nan=False,
        default=_reject,
    )


def make_key(kind: str, *params: Any) -> Key:
    """Build a key tuple, validating that it canonicalizes."""
    key = (kind, *params)
    canonical_parts(key)
    return key


def as_key(key: KeyLike) -> Key:
    """Normalize a list or tuple into a key tuple."""
    if isinstance(key, (str, bytes)) or not isinstance(key, Sequence):
        raise InvalidKeyError(f"Key must be a sequence, got {type(key).__name__}")
    return tuple(key)


def canonical_parts(key: KeyLike) -> tuple[str, ...]:
    """Canonical form of each key element, in order."""
    key = as_key(key)
    if not key or not isinstance(key[0], str) or not key[0]:
        raise InvalidKeyError(f"Key must start with a non-empty kind: {key!r}")
    try:
        return tuple(_dump(part) for part in key)
    except (TypeError, ValueError) as exc:
        raise InvalidKeyError(f"Key {key!r} is not serializable: {exc}") from exc


def canonicalize(key: KeyLike) -> str:
    """Serialize a key to a deterministic string.

    Equal keys always produce the same string; dict params are written
    with sorted keys. Params are compared by their JSON form, not by
    Python equality: 1, 1.0, True and "1" are four different params.
    """
    return "[" + ",".join(canonical_parts(key)) + "]"


def parts_have_prefix(prefix: tuple[str, ...], parts: tuple[str, ...]) -> bool:
    """Check if canonical parts start with the canonical prefix."""
    if len(prefix) > len(parts):
        return False
    return parts[: len(prefix)] == prefix


def is_prefix(candidate_prefix: KeyLike, full_key: KeyLike) -> bool:
    """Check if candidate_prefix is a leading sub-sequence of full_key."""
    return parts_have_prefix(canonical_parts(candidate_prefix), canonical_parts(full_key))


def define_keys(
    definitions: dict[str, Callable[..., KeyLike]],
) -> dict[str, Callable[..., Key]]:
    """
    Define related keys in one place.

    Example:
        user_keys = define_keys({
            "all": lambda: ("users",),
            "detail": lambda id: ("users", "detail", id),
            "profile": lambda id: ("users", "detail", id, "profile"),
        })

        user_keys["detail"]("123")   # ("users", "detail", "123")
    """
    result: dict[str, Callable[..., Key]] = {}
    for name, fn in definitions.items():

        def make(*args: Any, _fn: Callable[..., KeyLike] = fn) -> Key:
            key = as_key(_fn(*args))
            canonical_parts(key)
            return key

        result[name] = make
    return result


__all__ = [
    "KeyLike",
    "as_key",
    "canonical_parts",
    "canonicalize",
    "define_keys",
    "is_prefix",
    "make_key",
    "parts_have_prefix",
]
