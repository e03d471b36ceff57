"""Shared fixtures: in-memory database, fixed clock, fake upstream HTTP services."""

from __future__ import annotations

import json
from collections import Counter
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from govsync.content_mirror import MemoryContentMirror
from govsync.context import SyncContext, build_context
from govsync.db_utils import Database
from govsync.graph_store import GraphStore
from govsync.settings import Settings

WEBHOOK_SECRET = "webhook-secret"
REFRESH_SECRET = "refresh-secret"

OPERATING_AGREEMENT = """---
type: agreement
title: Operating Agreement
status: active
effective_from: 2024-01-01
domain: [dao-core]
scope:
  - 0x1234abcd
---

# Operating Agreement
"""

CHARTER = """---
type: policy
title: Charter
status: active
domain: [operations]
related:
  - authorized_by: operating-agreement
---

# Charter
"""


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeUpstream:
    """
    GitHub (raw + contents API), Snapshot and Hats behind one MockTransport.

    files:  governance repo path -> content
    groups: knowledge-base group file name -> content
    down:   services answering 5xx ("github", "snapshot", "hats")
    """

    def __init__(self) -> None:
        self.files: dict[str, str] = {}
        self.groups: dict[str, str] = {}
        self.proposals: list[dict] = []
        self.votes: list[dict] = []
        self.hats: list[dict] = []
        self.down: set[str] = set()
        self.calls: Counter = Counter()

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def _repo_files(self, repo: str) -> dict[str, str]:
        if repo == "governance":
            return self.files
        return {f"data/groups/{name}": content for name, content in self.groups.items()}

    def handler(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        path = request.url.path

        if host == "raw.githubusercontent.com":
            self.calls["raw"] += 1
            if "github" in self.down:
                return httpx.Response(503)
            _owner, repo, _ref, rest = path.lstrip("/").split("/", 3)
            content = self._repo_files(repo).get(rest)
            if content is None:
                return httpx.Response(404)
            return httpx.Response(200, text=content)

        if host == "api.github.com":
            self.calls["contents"] += 1
            if "github" in self.down:
                return httpx.Response(503)
            repo, _, directory = path.removeprefix("/repos/superbenefit/").partition("/contents/")
            entries = [
                {
                    "type": "file",
                    "path": p,
                    "name": p.rsplit("/", 1)[-1],
                    "download_url": f"https://raw.githubusercontent.com/superbenefit/{repo}/main/{p}",
                }
                for p in sorted(self._repo_files(repo))
                if p.rpartition("/")[0] == directory
            ]
            if not entries:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(200, json=entries)

        if host == "hub.snapshot.org":
            self.calls["snapshot"] += 1
            if "snapshot" in self.down:
                return httpx.Response(502)
            body = json.loads(request.content)
            query = body["query"]
            if "votes(" in query:
                data = {"votes": self.votes}
            elif "proposals(" in query:
                data = {"proposals": self.proposals}
            else:
                wanted = body["variables"]["id"]
                data = {"proposal": next((p for p in self.proposals if p["id"] == wanted), None)}
            return httpx.Response(200, json={"data": data})

        if host == "api.goldsky.com":
            self.calls["hats"] += 1
            if "hats" in self.down:
                return httpx.Response(502)
            return httpx.Response(200, json={"data": {"tree": {"id": "0x01", "hats": self.hats}}})

        return httpx.Response(404)


class FlakyMirror(MemoryContentMirror):
    """Memory mirror whose put() fails for chosen keys."""

    def __init__(self) -> None:
        super().__init__()
        # key -> remaining failures (-1: always)
        self.failures: dict[str, int] = {}
        self.puts: Counter = Counter()

    def put(self, key, data, metadata=None):
        self.puts[key] += 1
        remaining = self.failures.get(key, 0)
        if remaining:
            if remaining > 0:
                self.failures[key] = remaining - 1
            raise OSError(f"mirror unavailable for {key}")
        super().put(key, data, metadata)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db():
    database = Database.sqlite()
    database.init_schema()
    yield database
    database.close()


@pytest.fixture
def graph(db, clock) -> GraphStore:
    store = GraphStore(db, clock)
    store.seed_domains()
    return store


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        github_webhook_secret=WEBHOOK_SECRET,
        internal_refresh_secret=REFRESH_SECRET,
        governance_repo="superbenefit/governance",
        governance_branch="main",
        knowledge_base_repo="superbenefit/knowledge-base",
        snapshot_space="sb.eth",
        hats_tree_id="0x01",
        public_base_url="https://gov.example.org",
        dao_name="SuperBenefit",
    )


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def make_context(settings, db, clock, upstream, sleeps, tmp_path):
    """Factory for a fully wired context over the fakes."""

    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    def factory(mirror=None, members_fetcher=None) -> SyncContext:
        ctx = build_context(
            settings,
            db=db,
            mirror=mirror or MemoryContentMirror(),
            http=httpx.AsyncClient(transport=upstream.transport()),
            members_fetcher=members_fetcher,
            clock=clock,
            sleep=record_sleep,
            config_dir=tmp_path,
        )
        ctx.graph.seed_domains()
        return ctx

    return factory


@pytest.fixture
def ctx(make_context) -> SyncContext:
    return make_context()
