"""
Durable run ledger for the sync pipeline.

Every pipeline invocation is a run with a deterministic id; every unit of
work inside it is a named step whose outcome is persisted. Re-executing a
run returns the stored result of completed steps instead of repeating them.

Usage:
    from govsync.lineage import RunTracker, run_id_for

    tracker = RunTracker(db, retries=2, retry_delay=2.0)
    run_id = run_id_for(commit_id, changed, deleted)
    tracker.register(run_id, commit_id, changed, deleted)
    with tracker.track_run(run_id) as run:
        files = await run.step("fetch-files", fetch)
"""

from .episode import RunStatus, StepRecord, StepStatus
from .tracker import RunTracker, SyncRun, run_id_for

__all__ = [
    "RunStatus",
    "RunTracker",
    "StepRecord",
    "StepStatus",
    "SyncRun",
    "run_id_for",
]
