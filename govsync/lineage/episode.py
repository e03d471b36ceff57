"""
Step record model for the sync run ledger.

A StepRecord is the persisted outcome of one named unit of work inside a
run: its result when it completed, or the last error once retries ran out.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import ulid


class RunStatus(str, Enum):
    """Lifecycle of a sync run."""

    QUEUED = "queued"  # recorded by the dispatcher, not started
    RUNNING = "running"
    COMPLETED = "completed"  # every step succeeded
    PARTIAL = "partial"  # at least one step failed after retries
    FAILED = "failed"  # the run itself raised


class StepStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class StepRecord:
    """Persisted outcome of one step."""

    run_id: str
    step_name: str
    status: StepStatus
    attempts: int = 1
    result: Any = None
    error_message: str | None = None
    completed_at: str | None = None
    id: str = field(default_factory=lambda: str(ulid.new()))

    @property
    def completed(self) -> bool:
        return self.status == StepStatus.COMPLETED

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> StepRecord:
        return cls(
            id=row["id"],
            run_id=row["run_id"],
            step_name=row["step_name"],
            status=StepStatus(row["status"]),
            attempts=row["attempts"],
            result=json.loads(row["result"]) if row["result"] is not None else None,
            error_message=row["error_message"],
            completed_at=row["completed_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "step_name": self.step_name,
            "status": self.status.value,
            "attempts": self.attempts,
            "result": self.result,
            "error_message": self.error_message,
            "completed_at": self.completed_at,
        }
