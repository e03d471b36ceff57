"""Tests for the aggregate cache and its staleness-driven refresher."""

import asyncio
from collections import Counter

import pytest

from govsync.cache import (
    DAO_KEY,
    GROUPS_KEY,
    MEMBERS_KEY,
    PROPOSALS_KEY,
    ROLES_KEY,
    AggregateCache,
    CacheRefresher,
    CompositeAggregate,
    TrackedSource,
    run_periodic_refresh,
)

PROPOSALS = [{"id": "daoip-2:sb.eth:proposal:0x1", "status": "active"}]


class CountingSource:
    """Fetcher that returns a fixed value and counts calls."""

    def __init__(self, value, fail: bool = False):
        self.value = value
        self.fail = fail
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.fail:
            raise RuntimeError("upstream down")
        return self.value


@pytest.fixture
def cache(db, clock) -> AggregateCache:
    return AggregateCache(db, clock)


class TestAggregateCache:
    def test_given_value_when_within_expiry_then_served(self, cache, clock) -> None:
        cache.put("k", {"a": 1}, ttl_seconds=60)

        clock.advance(59)

        assert cache.get("k") == {"a": 1}

    def test_given_value_when_expired_then_absent_but_refresh_time_kept(self, cache, clock) -> None:
        cache.put("k", [1, 2], ttl_seconds=60)
        refreshed = cache.last_refreshed("k")

        clock.advance(60)

        assert cache.get("k") is None
        assert cache.last_refreshed("k") == refreshed
        assert cache.entries()[0]["live"] is False

    def test_given_longer_expiry_when_put_then_value_outlives_ttl(self, cache, clock) -> None:
        cache.put("k", "v", ttl_seconds=60, expires_in=120)

        clock.advance(90)

        assert cache.get("k") == "v"

    def test_given_key_when_deleted_then_gone(self, cache) -> None:
        cache.put("k", "v", ttl_seconds=60)

        assert cache.delete("k") is True
        assert cache.delete("k") is False
        assert cache.get("k") is None


class TestRefreshAll:
    @pytest.mark.asyncio
    async def test_given_fresh_key_when_cycle_runs_then_refresh_is_skipped_until_ttl(
        self, cache, clock
    ) -> None:
        """A 900s key refreshed at T is skipped at T+500 and refreshed at T+901."""
        # Given
        source = CountingSource(PROPOSALS)
        refresher = CacheRefresher(cache, [TrackedSource(PROPOSALS_KEY, 900, source)], clock=clock)
        await refresher.refresh_all()
        assert source.calls == 1

        # When
        clock.advance(500)
        skipped = await refresher.refresh_all()
        clock.advance(401)
        refreshed = await refresher.refresh_all()

        # Then
        assert skipped.skipped == [PROPOSALS_KEY]
        assert refreshed.refreshed == [PROPOSALS_KEY]
        assert source.calls == 2

    @pytest.mark.asyncio
    async def test_given_scheduler_write_when_ttl_passes_then_value_still_served(
        self, cache, clock
    ) -> None:
        refresher = CacheRefresher(cache, [TrackedSource(PROPOSALS_KEY, 900, CountingSource(PROPOSALS))], clock=clock)
        await refresher.refresh_all()

        clock.advance(1500)

        assert cache.get(PROPOSALS_KEY) == PROPOSALS

    @pytest.mark.asyncio
    async def test_given_failing_source_when_cycle_runs_then_siblings_refresh(self, cache, clock) -> None:
        # Given
        good = CountingSource([{"id": "hat"}])
        bad = CountingSource(None, fail=True)
        refresher = CacheRefresher(
            cache,
            [TrackedSource(ROLES_KEY, 1800, good), TrackedSource(PROPOSALS_KEY, 900, bad)],
            clock=clock,
        )

        # When
        report = await refresher.refresh_all()

        # Then
        assert report.refreshed == [ROLES_KEY]
        assert "upstream down" in report.failed[PROPOSALS_KEY]
        assert cache.get(ROLES_KEY) == [{"id": "hat"}]
        assert cache.get(PROPOSALS_KEY) is None

    @pytest.mark.asyncio
    async def test_given_failure_when_next_cycle_runs_then_key_is_retried(self, cache, clock) -> None:
        source = CountingSource(PROPOSALS, fail=True)
        refresher = CacheRefresher(cache, [TrackedSource(PROPOSALS_KEY, 900, source)], clock=clock)
        await refresher.refresh_all()

        source.fail = False
        clock.advance(1)
        report = await refresher.refresh_all()

        assert report.refreshed == [PROPOSALS_KEY]

    @pytest.mark.asyncio
    async def test_given_forced_cycle_when_run_then_every_key_refreshes_and_descriptor_is_dropped(
        self, cache, clock
    ) -> None:
        # Given
        source = CountingSource(PROPOSALS)

        async def build(refresher):
            return {"proposals": await refresher.get(PROPOSALS_KEY)}

        refresher = CacheRefresher(
            cache,
            [TrackedSource(PROPOSALS_KEY, 900, source)],
            [CompositeAggregate(DAO_KEY, 1800, build)],
            clock=clock,
        )
        await refresher.refresh_all()
        assert await refresher.get(DAO_KEY) == {"proposals": PROPOSALS}

        # When
        report = await refresher.refresh_all(force=True)

        # Then
        assert report.forced
        assert report.refreshed == [PROPOSALS_KEY]
        assert report.invalidated == [DAO_KEY]
        assert cache.get(DAO_KEY) is None
        assert source.calls == 2


class TestReadThrough:
    @pytest.mark.asyncio
    async def test_given_miss_on_tracked_key_when_read_then_fetched_and_stored(self, cache, clock) -> None:
        source = CountingSource([{"id": "g"}])
        refresher = CacheRefresher(cache, [TrackedSource(GROUPS_KEY, 7200, source)], clock=clock)

        first = await refresher.get(GROUPS_KEY)
        second = await refresher.get(GROUPS_KEY)

        assert first == second == [{"id": "g"}]
        assert source.calls == 1

    @pytest.mark.asyncio
    async def test_given_read_through_write_when_ttl_passes_then_value_expires(self, cache, clock) -> None:
        refresher = CacheRefresher(cache, [TrackedSource(GROUPS_KEY, 7200, CountingSource([]))], clock=clock)
        await refresher.get(GROUPS_KEY)

        clock.advance(7200)

        assert cache.get(GROUPS_KEY) is None

    @pytest.mark.asyncio
    async def test_given_failing_fetch_or_unknown_key_when_read_then_none(self, cache, clock) -> None:
        refresher = CacheRefresher(
            cache, [TrackedSource(PROPOSALS_KEY, 900, CountingSource(None, fail=True))], clock=clock
        )

        assert await refresher.get(PROPOSALS_KEY) is None
        assert await refresher.get("no:such:key") is None

    @pytest.mark.asyncio
    async def test_given_untracked_constituent_when_descriptor_built_then_it_is_omitted(
        self, cache, clock
    ) -> None:
        async def build(refresher):
            return {
                "members": await refresher.get(MEMBERS_KEY),
                "proposals": await refresher.get(PROPOSALS_KEY),
            }

        refresher = CacheRefresher(
            cache,
            [TrackedSource(PROPOSALS_KEY, 900, CountingSource(PROPOSALS))],
            [CompositeAggregate(DAO_KEY, 1800, build)],
            clock=clock,
        )

        assert await refresher.get(DAO_KEY) == {"members": None, "proposals": PROPOSALS}


class TestPeriodicRefresh:
    @pytest.mark.asyncio
    async def test_given_stop_event_when_set_then_loop_exits(self) -> None:
        # Given
        calls = Counter()

        class Refresher:
            async def refresh_all(self, force=False):
                calls["cycles"] += 1
                if calls["cycles"] == 1:
                    raise RuntimeError("transient")

        stop = asyncio.Event()
        task = asyncio.create_task(run_periodic_refresh(Refresher(), 0.01, stop))

        # When
        while calls["cycles"] < 3:
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        # Then
        assert task.done()
        assert calls["cycles"] >= 3
