"""
Webhook intake for repository push events.

Checks, in order, before anything is scheduled:
  1. HMAC-SHA256 signature of the raw body ("sha256=<hex>", constant-time compare)
  2. Delivery id present
  3. Payload is a valid push event
  4. Delivery id not seen in the last 24h (atomic claim in webhook_deliveries)
  5. Ref is the default branch
  6. At least one markdown path added, modified or removed

Only an accepted push reaches the dispatcher, which records the run as queued
and schedules the pipeline in the background. Rejections write nothing.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError

from .clock import Clock, to_iso, utcnow
from .db_utils import Database
from .pipeline import SyncPipeline, SyncReport, SyncRequest
from .source_config import DEFAULT_RULES, SyncRules

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="
DEFAULT_DELIVERY_TTL = 24 * 60 * 60


def sign_payload(body: bytes, secret: str) -> str:
    """Signature header value GitHub would send for body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """Constant-time check of an X-Hub-Signature-256 header."""
    if not secret or not signature or not signature.startswith(SIGNATURE_PREFIX):
        return False
    return hmac.compare_digest(signature.encode("utf-8"), sign_payload(body, secret).encode("utf-8"))


# ---------------------------------------------------------------------------
# Push payload
# ---------------------------------------------------------------------------


class PushCommit(BaseModel):
    id: str = ""
    message: str = ""
    added: list[str] = Field(default_factory=list)
    modified: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)


class PushRepository(BaseModel):
    full_name: str = ""


class PushEvent(BaseModel):
    """The subset of a GitHub push event the intake reads."""

    ref: str
    before: str = ""
    after: str
    commits: list[PushCommit] = Field(default_factory=list)
    repository: Optional[PushRepository] = None

    def changed_and_deleted(self, rules: SyncRules = DEFAULT_RULES) -> tuple[list[str], list[str]]:
        """
        Document paths touched by the push, de-duplicated in first-seen order.

        Commits are replayed in order; the last operation on a path decides
        whether it is changed or deleted.
        """
        state: dict[str, bool] = {}
        for commit in self.commits:
            for path in (*commit.added, *commit.modified):
                state[path] = True
            for path in commit.removed:
                state[path] = False

        paths = [p for p in state if rules.is_document_path(p)]
        changed = [p for p in paths if state[p]]
        deleted = [p for p in paths if not state[p]]
        return changed, deleted


# ---------------------------------------------------------------------------
# Replay protection
# ---------------------------------------------------------------------------


class DeliveryLedger:
    """Bounded-lifetime record of seen delivery ids."""

    def __init__(self, db: Database, clock: Clock = utcnow, ttl_seconds: int = DEFAULT_DELIVERY_TTL):
        self.db = db
        self.clock = clock
        self.ttl_seconds = ttl_seconds

    def claim(self, delivery_id: str) -> bool:
        """
        Atomically record a delivery id.

        Returns:
            True on first sight (or when the previous record expired),
            False while an earlier record is live.
        """
        now = self.clock()
        cursor = self.db.execute(
            """
            INSERT INTO webhook_deliveries (delivery_id, received_at, expires_at)
            VALUES (%s, %s, %s)
            ON CONFLICT (delivery_id) DO UPDATE SET
                received_at = excluded.received_at,
                expires_at = excluded.expires_at
            WHERE webhook_deliveries.expires_at <= excluded.received_at
            """,
            (delivery_id, to_iso(now), to_iso(now + timedelta(seconds=self.ttl_seconds))),
        )
        return cursor.rowcount == 1

    def is_live(self, delivery_id: str) -> bool:
        row = self.db.fetch_one(
            "SELECT expires_at FROM webhook_deliveries WHERE delivery_id = %s",
            (delivery_id,),
        )
        return bool(row) and row["expires_at"] > to_iso(self.clock())

    def purge_expired(self) -> int:
        cursor = self.db.execute(
            "DELETE FROM webhook_deliveries WHERE expires_at <= %s",
            (to_iso(self.clock()),),
        )
        return cursor.rowcount


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class TaskDispatcher:
    """
    Fire-and-forget execution of pipeline runs on the running event loop.

    submit() records the run as queued before scheduling it, so a run lost to
    a restart is picked up by resume_pending() at the next startup.
    """

    def __init__(self, pipeline: SyncPipeline):
        self.pipeline = pipeline
        self._tasks: set[asyncio.Task] = set()

    def submit(self, request: SyncRequest) -> str:
        run_id = self.pipeline.submit(request)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; run %s stays queued", run_id)
            return run_id
        self._track(loop.create_task(self.pipeline.run(request), name=f"sync:{run_id}"))
        return run_id

    def resume_pending(self) -> Optional[asyncio.Task]:
        """Schedule every queued or interrupted run."""
        if not self.pipeline.tracker.pending_runs():
            return None
        task = asyncio.get_running_loop().create_task(self.pipeline.resume_pending(), name="sync:resume")
        self._track(task)
        return task

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background %s failed: %s", task.get_name(), error)
            return
        result = task.result()
        if isinstance(result, SyncReport):
            logger.info("Run %s finished %s", result.run_id, result.status)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every scheduled run (used at shutdown and in tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
            # Let done-callbacks run.
            await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Intake
# ---------------------------------------------------------------------------


@dataclass
class WebhookResult:
    """Outcome of one delivery: accepted, rejected, duplicate or ignored."""

    status: str
    reason: str | None = None
    delivery_id: str | None = None
    run_id: str | None = None
    changed: int = 0
    deleted: int = 0

    @property
    def accepted(self) -> bool:
        return self.status == "accepted"

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"status": self.status}
        if self.reason:
            body["reason"] = self.reason
        if self.delivery_id and self.status == "duplicate":
            body["delivery_id"] = self.delivery_id
        if self.accepted:
            body.update(run_id=self.run_id, changed=self.changed, deleted=self.deleted)
        return body


class WebhookIntake:
    """Turns authenticated, first-seen push deliveries into queued sync runs."""

    def __init__(
        self,
        secret: str,
        ledger: DeliveryLedger,
        dispatcher: TaskDispatcher,
        branch: str = "main",
        rules: SyncRules = DEFAULT_RULES,
    ):
        self.secret = secret
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.branch = branch
        self.rules = rules

    @property
    def branch_ref(self) -> str:
        return f"refs/heads/{self.branch}"

    def handle_push(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        delivery_id: Optional[str],
    ) -> WebhookResult:
        if not verify_signature(raw_body, signature_header, self.secret):
            logger.warning("Rejected delivery %s: invalid signature", delivery_id)
            return WebhookResult(status="rejected", reason="invalid signature")

        if not delivery_id:
            return WebhookResult(status="rejected", reason="missing delivery id")

        try:
            event = PushEvent.model_validate_json(raw_body)
        except ValidationError as e:
            logger.warning("Rejected delivery %s: malformed payload (%d errors)", delivery_id, e.error_count())
            return WebhookResult(status="rejected", reason="malformed payload", delivery_id=delivery_id)

        # The claim commits only together with the queued run.
        with self.ledger.db.transaction():
            if not self.ledger.claim(delivery_id):
                logger.info("Duplicate delivery %s", delivery_id)
                return WebhookResult(status="duplicate", delivery_id=delivery_id)

            if event.ref != self.branch_ref:
                return WebhookResult(status="ignored", reason=f"not {self.branch} branch", delivery_id=delivery_id)

            changed, deleted = event.changed_and_deleted(self.rules)
            if not changed and not deleted:
                return WebhookResult(
                    status="ignored", reason="no markdown files changed", delivery_id=delivery_id
                )

            request = SyncRequest(changed_paths=changed, deleted_paths=deleted, commit_id=event.after)
            run_id = self.dispatcher.submit(request)
        logger.info("Accepted delivery %s as %s", delivery_id, run_id)
        return WebhookResult(
            status="accepted",
            delivery_id=delivery_id,
            run_id=run_id,
            changed=len(changed),
            deleted=len(deleted),
        )
