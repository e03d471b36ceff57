"""
Dependency wiring for govsync.

SyncContext bundles the long-lived handles (database, stores, fetchers,
cache) that the pipeline, the webhook intake, the refresher and the thin
API/CLI layers share. build_context() assembles one from settings; tests
pass their own database, mirror and HTTP transport.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import httpx

from .cache import (
    ACTIVITY_KEY,
    GROUPS_KEY,
    MEMBERS_KEY,
    PROPOSALS_KEY,
    ROLES_KEY,
    AggregateCache,
    CacheRefresher,
    TrackedSource,
)
from .clock import Clock, utcnow
from .content_mirror import ContentMirror, FileContentMirror
from .db_utils import Database
from .descriptor import DaoIdentity, dao_descriptor_aggregate, members_payload
from .github_fetcher import GitHubFetcher
from .graph_store import GraphStore
from .lineage import RunTracker
from .pipeline import SyncPipeline
from .settings import Settings, get_settings
from .source_config import SourceConfig, resolve_source_config
from .sources import GroupsSource, HatsSource, SnapshotSource
from .webhook import DeliveryLedger, TaskDispatcher, WebhookIntake

MembersFetcher = Callable[[], Awaitable[list[dict[str, Any]]]]


@dataclass
class SyncContext:
    settings: Settings
    source: SourceConfig
    db: Database
    http: httpx.AsyncClient
    graph: GraphStore
    mirror: ContentMirror
    fetcher: GitHubFetcher
    tracker: RunTracker
    pipeline: SyncPipeline
    ledger: DeliveryLedger
    dispatcher: TaskDispatcher
    intake: WebhookIntake
    cache: AggregateCache
    refresher: CacheRefresher
    snapshot: SnapshotSource
    hats: HatsSource
    groups: GroupsSource

    async def aclose(self) -> None:
        await self.dispatcher.drain()
        await self.http.aclose()
        self.db.close()


def build_refresher(
    cache: AggregateCache,
    settings: Settings,
    snapshot: SnapshotSource,
    hats: HatsSource,
    groups: GroupsSource,
    members_fetcher: Optional[MembersFetcher] = None,
    clock: Clock = utcnow,
) -> CacheRefresher:
    """Tracked keys with their TTLs, plus the dao.json composite."""
    sources = [
        TrackedSource(PROPOSALS_KEY, settings.ttl_proposals_seconds, snapshot.fetch_proposals),
        TrackedSource(ACTIVITY_KEY, settings.ttl_activity_seconds, snapshot.fetch_activity),
        TrackedSource(ROLES_KEY, settings.ttl_roles_seconds, hats.fetch_tree),
        TrackedSource(GROUPS_KEY, settings.ttl_groups_seconds, groups.fetch_groups),
    ]
    if members_fetcher is not None:

        async def fetch_members() -> dict[str, Any]:
            return members_payload(await members_fetcher())

        sources.append(TrackedSource(MEMBERS_KEY, settings.ttl_members_seconds, fetch_members))

    return CacheRefresher(
        cache,
        sources,
        [dao_descriptor_aggregate(DaoIdentity.from_settings(settings), settings.ttl_dao_seconds)],
        clock=clock,
    )


def build_context(
    settings: Optional[Settings] = None,
    *,
    db: Optional[Database] = None,
    mirror: Optional[ContentMirror] = None,
    http: Optional[httpx.AsyncClient] = None,
    members_fetcher: Optional[MembersFetcher] = None,
    clock: Clock = utcnow,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    config_dir: Optional[Path] = None,
) -> SyncContext:
    """
    Assemble a context from settings.

    Args:
        settings: Defaults to environment settings
        db: Defaults to Database.connect(settings); the schema is created if missing
        mirror: Defaults to a FileContentMirror under CONTENT_MIRROR_ROOT
        http: Shared AsyncClient for every upstream source
        members_fetcher: Token-holder source; the members key is only tracked when given
        clock: Time source for every store
        sleep: Retry delay coroutine for pipeline steps
        config_dir: Directory of source YAML files
    """
    settings = settings or get_settings()
    source = resolve_source_config(settings, config_dir)

    if db is None:
        db = Database.connect(settings)
    db.init_schema()

    http = http or httpx.AsyncClient(timeout=settings.http_timeout_seconds, follow_redirects=True)
    mirror = mirror or FileContentMirror(settings.content_mirror_root)

    fetcher = GitHubFetcher(
        source.github.owner,
        source.github.repo,
        source.github.branch,
        token=settings.github_token,
        api_url=settings.github_api_url,
        raw_url=settings.github_raw_url,
        client=http,
    )
    graph = GraphStore(db, clock)
    tracker = RunTracker(
        db,
        clock,
        retries=settings.sync_step_retries,
        retry_delay=settings.sync_retry_delay_seconds,
        sleep=sleep,
    )
    pipeline = SyncPipeline(graph, mirror, fetcher, tracker, source.rules, clock)
    ledger = DeliveryLedger(db, clock, settings.webhook_delivery_ttl_seconds)
    dispatcher = TaskDispatcher(pipeline)
    intake = WebhookIntake(
        settings.github_webhook_secret,
        ledger,
        dispatcher,
        branch=source.github.branch,
        rules=source.rules,
    )

    kb_fetcher = GitHubFetcher.from_full_name(
        settings.knowledge_base_repo,
        token=settings.github_token,
        api_url=settings.github_api_url,
        raw_url=settings.github_raw_url,
        client=http,
    )
    snapshot = SnapshotSource(settings.snapshot_space, settings.snapshot_api_url, client=http)
    hats = HatsSource(settings.hats_tree_id, settings.hats_subgraph_url, client=http)
    groups = GroupsSource(kb_fetcher, settings.groups_path)

    cache = AggregateCache(db, clock)
    refresher = build_refresher(cache, settings, snapshot, hats, groups, members_fetcher, clock)

    return SyncContext(
        settings=settings,
        source=source,
        db=db,
        http=http,
        graph=graph,
        mirror=mirror,
        fetcher=fetcher,
        tracker=tracker,
        pipeline=pipeline,
        ledger=ledger,
        dispatcher=dispatcher,
        intake=intake,
        cache=cache,
        refresher=refresher,
        snapshot=snapshot,
        hats=hats,
        groups=groups,
    )
