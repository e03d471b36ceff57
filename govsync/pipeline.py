"""
Governance sync pipeline.

Reconciles a set of changed and deleted repository paths into the content
mirror and the graph store as a durable, step-wise run:

  fetch-files          fetch every changed path at the commit ref
  sync-file:{path}     mirror the raw content, parse, upsert document + edges
  delete-file:{path}   delete the mirror object, retire the document

Each step is recorded in the run ledger (govsync.lineage). Re-running the
same request skips steps that already completed; failed steps are retried
with a fixed delay and then recorded as failed without blocking siblings.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any

from .clock import Clock, to_iso, utcnow
from .content_mirror import ContentMirror
from .exceptions import StepFailed
from .github_fetcher import GitHubFetcher
from .graph_store import GraphStore
from .lineage import RunTracker, SyncRun, run_id_for
from .parser import parse_document
from .source_config import DEFAULT_RULES, SyncRules

logger = logging.getLogger(__name__)

FETCH_STEP = "fetch-files"


def sync_step_name(path: str) -> str:
    return f"sync-file:{path}"


def delete_step_name(path: str) -> str:
    return f"delete-file:{path}"


@dataclass
class SyncRequest:
    """The (changed, deleted, commit) triple that identifies one run."""

    changed_paths: list[str]
    deleted_paths: list[str]
    commit_id: str
    # Fetch ref when it is not the commit itself (full resyncs read a branch).
    ref: str | None = None

    def __post_init__(self) -> None:
        self.changed_paths = list(dict.fromkeys(self.changed_paths))
        self.deleted_paths = list(dict.fromkeys(self.deleted_paths))

    @property
    def run_id(self) -> str:
        return run_id_for(self.commit_id, self.changed_paths, self.deleted_paths)

    @property
    def fetch_ref(self) -> str:
        return self.ref or self.commit_id

    @classmethod
    def from_run(cls, run: dict[str, Any]) -> SyncRequest:
        return cls(
            changed_paths=run["changed_paths"],
            deleted_paths=run["deleted_paths"],
            commit_id=run["commit_id"],
            ref=run.get("ref"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncReport:
    """Summary of one pipeline execution."""

    run_id: str
    status: str
    synced: list[str] = field(default_factory=list)
    not_indexable: list[str] = field(default_factory=list)
    unavailable: list[str] = field(default_factory=list)
    retired: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    metrics: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class SyncPipeline:
    """
    Durable sync of repository content into the mirror and the graph store.

    Args:
        graph: Graph store (documents, domains, edges)
        mirror: Content mirror for raw files
        fetcher: Source repository access
        tracker: Run ledger providing step memoization and retries
        rules: Path rules (exclusions, slugs, mirror keys)
        clock: Time source for mirror metadata
    """

    def __init__(
        self,
        graph: GraphStore,
        mirror: ContentMirror,
        fetcher: GitHubFetcher,
        tracker: RunTracker,
        rules: SyncRules = DEFAULT_RULES,
        clock: Clock = utcnow,
    ):
        self.graph = graph
        self.mirror = mirror
        self.fetcher = fetcher
        self.tracker = tracker
        self.rules = rules
        self.clock = clock

    def submit(self, request: SyncRequest) -> str:
        """Record the request as a queued run. Returns its run id."""
        run_id = request.run_id
        self.tracker.register(
            run_id, request.commit_id, request.changed_paths, request.deleted_paths, request.ref
        )
        return run_id

    async def run(self, request: SyncRequest) -> SyncReport:
        """
        Execute (or resume) the run for a request.

        Per-file failures are contained: the run finishes as 'partial' and
        the report lists the failed step names.
        """
        run_id = self.submit(request)
        report = SyncReport(run_id=run_id, status="running")

        logger.info(
            "Sync %s at %s: %d changed, %d deleted",
            run_id,
            request.commit_id,
            len(request.changed_paths),
            len(request.deleted_paths),
        )

        with self.tracker.track_run(run_id) as run:
            try:
                contents = await run.step(FETCH_STEP, lambda: self._fetch(request))
            except StepFailed as e:
                logger.error("Fetch failed for %s: %s", run_id, e.message)
                contents = {}
                report.failed.append(FETCH_STEP)

            run.increment_metric("files_fetched", len(contents))
            report.unavailable = [p for p in request.changed_paths if p not in contents]

            outcomes = await asyncio.gather(
                *(
                    self._run_step(run, sync_step_name(path), self._sync_file_step(path, entry, request.commit_id))
                    for path, entry in contents.items()
                ),
                *(
                    self._run_step(run, delete_step_name(path), self._delete_file_step(path))
                    for path in request.deleted_paths
                ),
            )

            for outcome in outcomes:
                if outcome is None:
                    continue
                path = outcome["path"]
                if "retired" in outcome:
                    if outcome["retired"]:
                        report.retired.append(path)
                        run.increment_metric("documents_retired")
                    continue
                run.increment_metric("files_mirrored")
                if outcome["indexed"]:
                    report.synced.append(path)
                    run.increment_metric("documents_upserted")
                else:
                    report.not_indexable.append(path)
                    run.increment_metric("not_indexable")

            report.failed.extend(s for s in run.failed_steps if s not in report.failed)

        stored = self.tracker.get_run(run_id)
        report.status = stored["status"] if stored else "completed"
        report.metrics = dict(run.metrics)
        return report

    async def resume_pending(self) -> list[SyncReport]:
        """Re-execute runs left queued or running by an earlier process."""
        reports = []
        for pending in self.tracker.pending_runs():
            logger.info("Resuming run %s (%s)", pending["id"], pending["status"])
            reports.append(await self.run(SyncRequest.from_run(pending)))
        return reports

    async def discover_paths(self, ref: str | None = None) -> list[str]:
        """List document paths under the corpus directories at a ref."""
        paths: list[str] = []
        for directory in self.rules.slug_prefixes:
            entries = await self.fetcher.list_files(directory, self.rules.file_extensions, ref=ref)
            paths.extend(e.path for e in entries if not self.rules.is_excluded(e.path))
        return paths

    async def resync(self, ref: str | None = None, passes: int = 1) -> list[SyncReport]:
        """
        Sync every document path at a ref.

        A second pass closes relationships whose targets were only created
        later in the first pass.
        """
        ref = ref or self.fetcher.branch
        paths = await self.discover_paths(ref)
        stamp = to_iso(self.clock())
        reports = []
        for n in range(1, max(1, passes) + 1):
            # A fresh commit marker per pass; identical ids would replay memoized steps.
            request = SyncRequest(
                changed_paths=paths,
                deleted_paths=[],
                commit_id=f"resync:{ref}:{stamp}:{n}",
                ref=ref,
            )
            reports.append(await self.run(request))
        return reports

    # -----------------------------------------------------------------------
    # Steps
    # -----------------------------------------------------------------------

    async def _fetch(self, request: SyncRequest) -> dict[str, dict[str, str]]:
        ref = request.fetch_ref
        fetched = await self.fetcher.fetch_files(request.changed_paths, ref)
        for path in request.changed_paths:
            if path not in fetched:
                logger.warning("Skipping %s: unavailable at %s", path, ref)
        return {
            path: {"content": f.content, "content_hash": f.metadata.content_hash}
            for path, f in fetched.items()
        }

    @staticmethod
    async def _run_step(run: SyncRun, name: str, fn) -> dict[str, Any] | None:
        try:
            return await run.step(name, fn)
        except StepFailed as e:
            logger.error("Step %s failed: %s", name, e.message)
            return None

    def _sync_file_step(self, path: str, entry: dict[str, str], commit_id: str):
        async def sync_file() -> dict[str, Any]:
            key = self.rules.content_key(path)
            content = entry["content"]
            digest = entry["content_hash"]

            # Mirror first: the document row points at the mirror object.
            self.mirror.put(
                key,
                content,
                {"commit_id": commit_id, "synced_at": to_iso(self.clock()), "content_hash": digest},
            )

            parsed = parse_document(path, content, self.rules)
            if parsed is None:
                logger.debug("%s is not indexable", path)
                return {"path": path, "indexed": False}

            result = self.graph.sync_document(parsed, key, digest)
            return {"path": path, "indexed": True, **result.to_dict()}

        return sync_file

    def _delete_file_step(self, path: str):
        async def delete_file() -> dict[str, Any]:
            self.mirror.delete(self.rules.content_key(path))
            retired = self.graph.retire_document(self.rules.slug_for(path))
            return {"path": path, "retired": retired}

        return delete_file
