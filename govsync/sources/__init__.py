"""
External fact sources feeding the aggregate cache.

Each source returns plain JSON-ready data; the cache refresher decides when
to call it. Sources raise SourceError on upstream failure.
"""

from .groups import GroupsSource, filter_groups
from .hats import HatsSource, find_hat
from .snapshot import SnapshotSource, filter_activity, filter_proposals

__all__ = [
    "GroupsSource",
    "HatsSource",
    "SnapshotSource",
    "filter_activity",
    "filter_groups",
    "filter_proposals",
    "find_hat",
]
