"""Aggregate cache of externally-sourced DAO facts and its refresh scheduler."""

from .kv_cache import (
    ACTIVITY_KEY,
    DAO_KEY,
    GROUPS_KEY,
    MEMBERS_KEY,
    PROPOSALS_KEY,
    ROLES_KEY,
    AggregateCache,
)
from .refresh import (
    CacheRefresher,
    CompositeAggregate,
    RefreshReport,
    TrackedSource,
    run_periodic_refresh,
)

__all__ = [
    "ACTIVITY_KEY",
    "DAO_KEY",
    "GROUPS_KEY",
    "MEMBERS_KEY",
    "PROPOSALS_KEY",
    "ROLES_KEY",
    "AggregateCache",
    "CacheRefresher",
    "CompositeAggregate",
    "RefreshReport",
    "TrackedSource",
    "run_periodic_refresh",
]
