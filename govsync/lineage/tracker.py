"""
RunTracker - durable run and step ledger for the sync pipeline.

Usage:
    tracker = RunTracker(db)
    tracker.register(run_id, commit_id, changed, deleted)

    with tracker.track_run(run_id) as run:
        contents = await run.step("fetch-files", fetch_contents)
        await run.step(f"sync-file:{path}", sync_one)
        run.increment_metric("documents_upserted")
    # run closed as completed, partial or failed

Steps are memoized by (run_id, step_name): a step that completed in an
earlier execution of the same run returns its stored result without
running again. Failed steps are re-attempted.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Generator, Iterable

from ..clock import Clock, to_iso, utcnow
from ..db_utils import Database
from ..exceptions import StepFailed
from .episode import RunStatus, StepRecord, StepStatus

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def run_id_for(commit_id: str, changed_paths: Iterable[str], deleted_paths: Iterable[str]) -> str:
    """Deterministic run id for a (commit, changed, deleted) triple."""
    key = json.dumps(
        [commit_id, sorted(set(changed_paths)), sorted(set(deleted_paths))],
        separators=(",", ":"),
    )
    return "run-" + hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]


def _decode_run(row: dict[str, Any]) -> dict[str, Any]:
    row["changed_paths"] = json.loads(row["changed_paths"])
    row["deleted_paths"] = json.loads(row["deleted_paths"])
    row["metrics"] = json.loads(row["metrics"])
    return row


class RunTracker:
    """
    Persists sync runs and their steps.

    Args:
        db: Shared database
        clock: Time source for timestamps
        retries: Extra attempts per step after the first failure
        retry_delay: Seconds to wait between attempts
        sleep: Awaitable used for the delay (swapped out in tests)
    """

    def __init__(
        self,
        db: Database,
        clock: Clock = utcnow,
        *,
        retries: int = 2,
        retry_delay: float = 2.0,
        sleep: Sleep = asyncio.sleep,
    ):
        self.db = db
        self.clock = clock
        self.retries = max(0, retries)
        self.retry_delay = retry_delay
        self._sleep = sleep

    def _now(self) -> str:
        return to_iso(self.clock())

    # -----------------------------------------------------------------------
    # Runs
    # -----------------------------------------------------------------------

    def register(
        self,
        run_id: str,
        commit_id: str,
        changed_paths: list[str],
        deleted_paths: list[str],
        ref: str | None = None,
    ) -> bool:
        """
        Record a run as queued.

        Returns:
            True if the run is new, False if it was already known.
        """
        cursor = self.db.execute(
            """
            INSERT INTO sync_runs (
                id, commit_id, ref, changed_paths, deleted_paths, status, started_at, metrics
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO NOTHING
            """,
            (
                run_id,
                commit_id,
                ref,
                json.dumps(changed_paths),
                json.dumps(deleted_paths),
                RunStatus.QUEUED.value,
                self._now(),
                json.dumps({}),
            ),
        )
        return cursor.rowcount == 1

    def get_run(self, run_id: str) -> dict[str, Any] | None:
        row = self.db.fetch_one(
            """
            SELECT id, commit_id, ref, changed_paths, deleted_paths, status,
                   started_at, completed_at, metrics
            FROM sync_runs WHERE id = %s
            """,
            (run_id,),
        )
        return _decode_run(row) if row else None

    def list_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        rows = self.db.fetch_all(
            """
            SELECT id, commit_id, ref, changed_paths, deleted_paths, status,
                   started_at, completed_at, metrics
            FROM sync_runs ORDER BY started_at DESC LIMIT %s
            """,
            (limit,),
        )
        return [_decode_run(row) for row in rows]

    def pending_runs(self) -> list[dict[str, Any]]:
        """Runs that were queued or interrupted mid-flight, oldest first."""
        rows = self.db.fetch_all(
            """
            SELECT id, commit_id, ref, changed_paths, deleted_paths, status,
                   started_at, completed_at, metrics
            FROM sync_runs WHERE status IN (%s, %s) ORDER BY started_at
            """,
            (RunStatus.QUEUED.value, RunStatus.RUNNING.value),
        )
        return [_decode_run(row) for row in rows]

    def _set_status(self, run_id: str, status: RunStatus, metrics: dict[str, int] | None = None) -> None:
        if status in (RunStatus.QUEUED, RunStatus.RUNNING):
            self.db.execute(
                "UPDATE sync_runs SET status = %s, started_at = %s, completed_at = NULL WHERE id = %s",
                (status.value, self._now(), run_id),
            )
        else:
            self.db.execute(
                "UPDATE sync_runs SET status = %s, completed_at = %s, metrics = %s WHERE id = %s",
                (status.value, self._now(), json.dumps(metrics or {}), run_id),
            )

    @contextmanager
    def track_run(self, run_id: str) -> Generator[SyncRun, None, None]:
        """
        Mark a registered run as running and close it on exit.

        Final status: failed if the body raised, partial if any step failed,
        completed otherwise.
        """
        if self.get_run(run_id) is None:
            raise KeyError(f"Unknown run: {run_id}")

        self._set_status(run_id, RunStatus.RUNNING)
        run = SyncRun(self, run_id)
        try:
            yield run
        except BaseException:
            run.metrics["errors"] += 1
            self._set_status(run_id, RunStatus.FAILED, run.metrics)
            raise
        status = RunStatus.PARTIAL if run.failed_steps else RunStatus.COMPLETED
        self._set_status(run_id, status, run.metrics)
        logger.info("Run %s %s: %s", run_id, status.value, run.metrics)

    # -----------------------------------------------------------------------
    # Steps
    # -----------------------------------------------------------------------

    def get_step(self, run_id: str, step_name: str) -> StepRecord | None:
        row = self.db.fetch_one(
            """
            SELECT id, run_id, step_name, status, attempts, result, error_message, completed_at
            FROM sync_steps WHERE run_id = %s AND step_name = %s
            """,
            (run_id, step_name),
        )
        return StepRecord.from_row(row) if row else None

    def steps(self, run_id: str) -> list[StepRecord]:
        rows = self.db.fetch_all(
            """
            SELECT id, run_id, step_name, status, attempts, result, error_message, completed_at
            FROM sync_steps WHERE run_id = %s ORDER BY completed_at, step_name
            """,
            (run_id,),
        )
        return [StepRecord.from_row(row) for row in rows]

    def record_step(self, record: StepRecord) -> None:
        """Persist a step outcome. Attempts accumulate across executions."""
        record.completed_at = record.completed_at or self._now()
        self.db.execute(
            """
            INSERT INTO sync_steps (
                id, run_id, step_name, status, attempts, result, error_message, completed_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (run_id, step_name) DO UPDATE SET
                status = excluded.status,
                attempts = sync_steps.attempts + excluded.attempts,
                result = excluded.result,
                error_message = excluded.error_message,
                completed_at = excluded.completed_at
            """,
            (
                record.id,
                record.run_id,
                record.step_name,
                record.status.value,
                record.attempts,
                json.dumps(record.result) if record.result is not None else None,
                record.error_message,
                record.completed_at,
            ),
        )

    async def step(self, run_id: str, step_name: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run a step at most once to completion.

        Args:
            run_id: Owning run
            step_name: Unique name within the run
            fn: Zero-argument coroutine factory; its result must be JSON-serializable

        Returns:
            The step result (stored result when the step already completed)

        Raises:
            StepFailed: After 1 + retries failed attempts
        """
        previous = self.get_step(run_id, step_name)
        if previous is not None and previous.completed:
            logger.debug("Step %s of %s already completed", step_name, run_id)
            return previous.result

        last_error = ""
        attempts = 0
        for attempt in range(1, self.retries + 2):
            attempts = attempt
            try:
                result = await fn()
            except Exception as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning("Step %s attempt %d failed: %s", step_name, attempt, last_error)
                if attempt <= self.retries:
                    await self._sleep(self.retry_delay)
                continue
            self.record_step(
                StepRecord(
                    run_id=run_id,
                    step_name=step_name,
                    status=StepStatus.COMPLETED,
                    attempts=attempts,
                    result=result,
                )
            )
            return result

        self.record_step(
            StepRecord(
                run_id=run_id,
                step_name=step_name,
                status=StepStatus.FAILED,
                attempts=attempts,
                error_message=last_error,
            )
        )
        raise StepFailed(step_name, last_error)


class SyncRun:
    """Handle for one executing run: step memoization plus run-level metrics."""

    def __init__(self, tracker: RunTracker, run_id: str):
        self.tracker = tracker
        self.run_id = run_id
        self.failed_steps: list[str] = []
        self.metrics: dict[str, int] = {
            "files_fetched": 0,
            "files_mirrored": 0,
            "documents_upserted": 0,
            "not_indexable": 0,
            "documents_retired": 0,
            "steps_reused": 0,
            "errors": 0,
        }

    async def step(self, step_name: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Run a step; StepFailed is recorded on the run and re-raised."""
        previous = self.tracker.get_step(self.run_id, step_name)
        if previous is not None and previous.completed:
            self.metrics["steps_reused"] += 1
        try:
            return await self.tracker.step(self.run_id, step_name, fn)
        except StepFailed:
            self.failed_steps.append(step_name)
            self.metrics["errors"] += 1
            raise

    def increment_metric(self, metric: str, count: int = 1) -> None:
        """Manually increment a metric."""
        self.metrics[metric] = self.metrics.get(metric, 0) + count
