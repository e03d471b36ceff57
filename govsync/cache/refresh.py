"""
Staleness-driven refresh of the aggregate cache.

One periodic trigger serves every tracked key: each cycle refreshes only the
keys whose last refresh is at least their TTL old (or all of them when
forced). Due refreshes run concurrently; a failing source is logged and
does not affect its siblings or the cycle.

Composite aggregates (the DAO descriptor) are never refreshed by the
scheduler. A forced cycle deletes them and the next read rebuilds them from
whatever constituents are cached.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Optional

from ..clock import Clock, utcnow
from .kv_cache import AggregateCache

logger = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[Any]]


@dataclass
class TrackedSource:
    """A cache key fed by an external fetcher."""

    key: str
    ttl_seconds: int
    fetch: Fetcher

    def is_due(self, last_refreshed: datetime | None, now: datetime) -> bool:
        if last_refreshed is None:
            return True
        return (now - last_refreshed).total_seconds() >= self.ttl_seconds


@dataclass
class CompositeAggregate:
    """A cache key assembled from other keys, read through the refresher."""

    key: str
    ttl_seconds: int
    build: Callable[[CacheRefresher], Awaitable[Any]]


@dataclass
class RefreshReport:
    """What one refresh cycle did, per key."""

    forced: bool = False
    refreshed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    invalidated: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "forced": self.forced,
            "refreshed": self.refreshed,
            "skipped": self.skipped,
            "failed": self.failed,
            "invalidated": self.invalidated,
        }


class CacheRefresher:
    """
    Keeps tracked cache keys warm and serves read-through lookups.

    Args:
        cache: Backing store
        sources: Tracked keys and their fetchers
        composites: Derived keys rebuilt lazily on read
        clock: Time source for TTL gating
    """

    def __init__(
        self,
        cache: AggregateCache,
        sources: Iterable[TrackedSource] = (),
        composites: Iterable[CompositeAggregate] = (),
        clock: Clock = utcnow,
    ):
        self.cache = cache
        self.clock = clock
        self.sources: dict[str, TrackedSource] = {s.key: s for s in sources}
        self.composites: dict[str, CompositeAggregate] = {c.key: c for c in composites}

    def track(self, source: TrackedSource) -> None:
        self.sources[source.key] = source

    def add_composite(self, composite: CompositeAggregate) -> None:
        self.composites[composite.key] = composite

    async def refresh_all(self, force: bool = False) -> RefreshReport:
        """Run one refresh cycle."""
        report = RefreshReport(forced=force)
        now = self.clock()

        due: list[TrackedSource] = []
        for source in self.sources.values():
            if force or source.is_due(self.cache.last_refreshed(source.key), now):
                due.append(source)
            else:
                report.skipped.append(source.key)

        results = await asyncio.gather(*(self._refresh(source) for source in due))
        for source, error in zip(due, results):
            if error is None:
                report.refreshed.append(source.key)
            else:
                report.failed[source.key] = error

        if force:
            for key in self.composites:
                self.cache.delete(key)
                report.invalidated.append(key)

        logger.info(
            "Cache refresh%s: %d refreshed, %d skipped, %d failed",
            " (forced)" if force else "",
            len(report.refreshed),
            len(report.skipped),
            len(report.failed),
        )
        return report

    async def _refresh(self, source: TrackedSource) -> Optional[str]:
        try:
            value = await source.fetch()
        except Exception as e:
            logger.error("Cache refresh failed for %s: %s", source.key, e)
            return f"{type(e).__name__}: {e}"
        # Scheduler writes outlive their TTL so a missed cycle still serves data.
        self.cache.put(source.key, value, source.ttl_seconds, expires_in=source.ttl_seconds * 2)
        return None

    async def get(self, key: str) -> Any | None:
        """
        Read-through lookup.

        A miss on a tracked or composite key computes the value, stores it
        with the key's TTL and returns it. Unknown keys and failed fetches
        return None.
        """
        value = self.cache.get(key)
        if value is not None:
            return value

        if key in self.composites:
            composite = self.composites[key]
            compute: Fetcher = lambda: composite.build(self)
            ttl = composite.ttl_seconds
        elif key in self.sources:
            source = self.sources[key]
            compute = source.fetch
            ttl = source.ttl_seconds
        else:
            return None

        try:
            value = await compute()
        except Exception as e:
            logger.warning("Read-through fetch failed for %s: %s", key, e)
            return None
        self.cache.put(key, value, ttl)
        return value


async def run_periodic_refresh(
    refresher: CacheRefresher,
    interval_seconds: float,
    stop: Optional[asyncio.Event] = None,
) -> None:
    """
    Refresh cycle every interval_seconds until stop is set or the task is cancelled.

    A failing cycle is logged and the loop continues.
    """
    stop = stop or asyncio.Event()
    logger.info("Periodic cache refresh every %ss", interval_seconds)
    while not stop.is_set():
        try:
            await refresher.refresh_all()
        except Exception:
            logger.exception("Cache refresh cycle failed")
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass
