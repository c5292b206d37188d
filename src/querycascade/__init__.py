"""querycascade - client-side query cache with mutation-driven invalidation."""

# Engine
from querycascade.client import QueryClient, create_client

# Duration parsing
from querycascade.duration import parse_duration

# Errors
from querycascade.errors import (
    FetchError,
    InvalidKeyError,
    MutationError,
    MutationRejected,
    QueryCascadeError,
    StaleWriteDiscarded,
)
from querycascade.fanout import FanOut, Observer, Subscription
from querycascade.inflight import InFlightRegistry, InFlightRequest

# Keys
from querycascade.keys import canonicalize, define_keys, is_prefix, make_key

# Mutations
from querycascade.mutations import (
    ConcurrencyPolicy,
    Invalidation,
    Mutation,
    MutationCoordinator,
    MutationDescriptor,
    MutationOutcome,
    MutationState,
    OptimisticUpdate,
)
from querycascade.scheduler import Decision, Scheduler, decide
from querycascade.store import CacheStore

# Core types
from querycascade.types import (
    CacheEntry,
    Duration,
    EntryStatus,
    FetchMode,
    Key,
    Query,
    QueryPolicy,
    QueryState,
)

__version__ = "0.1.0"

__all__ = [
    "CacheEntry",
    "CacheStore",
    "ConcurrencyPolicy",
    "Decision",
    "Duration",
    "EntryStatus",
    "FanOut",
    "FetchError",
    "FetchMode",
    "InFlightRegistry",
    "InFlightRequest",
    "InvalidKeyError",
    "Invalidation",
    "Key",
    "Mutation",
    "MutationCoordinator",
    "MutationDescriptor",
    "MutationError",
    "MutationOutcome",
    "MutationRejected",
    "MutationState",
    "Observer",
    "OptimisticUpdate",
    "Query",
    "QueryCascadeError",
    "QueryClient",
    "QueryPolicy",
    "QueryState",
    "Scheduler",
    "StaleWriteDiscarded",
    "Subscription",
    "canonicalize",
    "create_client",
    "decide",
    "define_keys",
    "is_prefix",
    "make_key",
    "parse_duration",
]
