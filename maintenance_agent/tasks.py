"""Task store: durable units of maintenance work.

Tasks are claimed atomically to prevent double execution. The claim is a
single conditional update (``status='pending' -> 'in_progress'`` only while
still pending); it is the engine's entire concurrency-control primitive.

Eligibility is ``status='pending' AND (scheduled_for IS NULL OR
scheduled_for <= now)``. The NULL branch must stay explicit: a bare
``scheduled_for <= now`` evaluates to unknown for NULL and silently drops
every immediately-runnable task.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from .context import EngineContext
from .models import TaskKind, TaskStatus, parse_dt
from .query_filters import query_ts

logger = logging.getLogger(__name__)

TASKS_TABLE = "maintenance_tasks"
MAX_PAGE_SIZE = 200
UNFINISHED = f"({TaskStatus.PENDING.value},{TaskStatus.IN_PROGRESS.value})"


@dataclass
class Task:
    """Represents a task in the maintenance queue."""

    title: str
    kind: TaskKind
    priority: int
    status: TaskStatus = TaskStatus.PENDING
    id: str | None = None
    finding_id: str | None = None
    directive_key: str | None = None
    input_data: dict[str, Any] = field(default_factory=dict)
    scheduled_for: datetime | None = None
    attempts: int = 0
    claimed_by: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: dict[str, Any] | None = None
    error_message: str | None = None
    needs_review: bool = False
    created_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        return cls(
            id=str(data["id"]),
            title=data.get("title") or "",
            kind=TaskKind(data["kind"]),
            priority=data["priority"],
            status=TaskStatus(data["status"]),
            finding_id=str(data["finding_id"]) if data.get("finding_id") else None,
            directive_key=data.get("directive_key"),
            input_data=data.get("input_data") or {},
            scheduled_for=parse_dt(data.get("scheduled_for")),
            attempts=data.get("attempts") or 0,
            claimed_by=data.get("claimed_by"),
            started_at=parse_dt(data.get("started_at")),
            completed_at=parse_dt(data.get("completed_at")),
            result=data.get("result"),
            error_message=data.get("error_message"),
            needs_review=bool(data.get("needs_review")),
            created_at=parse_dt(data.get("created_at")),
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "kind": self.kind.value,
            "priority": self.priority,
            "status": self.status.value,
            "finding_id": self.finding_id,
            "directive_key": self.directive_key,
            "input_data": self.input_data,
            "scheduled_for": self.scheduled_for,
            "attempts": self.attempts,
            "claimed_by": self.claimed_by,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "result": self.result,
            "error_message": self.error_message,
            "needs_review": self.needs_review,
            "created_at": self.created_at,
        }

    @property
    def duration_ms(self) -> int | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)


def is_eligible(task: Task, now: datetime) -> bool:
    """Whether a pending task may run at *now*."""
    return task.status is TaskStatus.PENDING and (
        task.scheduled_for is None or task.scheduled_for <= now
    )


def is_stale(task: Task, now: datetime, stale_after: timedelta) -> bool:
    """Whether an in_progress task has been abandoned and may be reclaimed.

    A missing ``started_at`` counts as stale so no task can be stuck forever.
    """
    return task.status is TaskStatus.IN_PROGRESS and (
        task.started_at is None or task.started_at <= now - stale_after
    )


def _selection_order(task: Task) -> tuple[int, float]:
    created = task.created_at.timestamp() if task.created_at else 0.0
    return (task.priority, created)


class TaskStore:
    """Persistence and state transitions for tasks."""

    def __init__(self, ctx: EngineContext):
        self.ctx = ctx

    @property
    def db(self):
        return self.ctx.db

    async def create(self, task: Task) -> Task:
        task.created_at = task.created_at or self.ctx.now()
        row = await self.db.insert(TASKS_TABLE, task.to_row())
        return Task.from_dict(row)

    async def get(self, task_id: str) -> Task | None:
        rows = await self.db.query(TASKS_TABLE, f"id=eq.{task_id}")
        return Task.from_dict(rows[0]) if rows else None

    async def list(
        self,
        statuses: list[TaskStatus] | None = None,
        since: datetime | None = None,
        needs_review: bool | None = None,
        limit: int = 50,
    ) -> list[Task]:
        """List tasks, newest first."""
        parts = ["order=created_at.desc", f"limit={min(limit, MAX_PAGE_SIZE)}"]
        if statuses:
            parts.append(f"status=in.({','.join(s.value for s in statuses)})")
        if since is not None:
            parts.append(f"created_at=gte.{query_ts(since)}")
        if needs_review is not None:
            parts.append(f"needs_review=eq.{str(needs_review).lower()}")
        rows = await self.db.query(TASKS_TABLE, "&".join(parts))
        return [Task.from_dict(r) for r in rows]

    async def find_existing(
        self,
        finding_id: str | None = None,
        directive_key: str | None = None,
        unfinished_only: bool = False,
    ) -> Task | None:
        """Return a task already created for a finding or directive."""
        if finding_id is not None:
            key = f"finding_id=eq.{finding_id}"
        elif directive_key is not None:
            key = f"directive_key=eq.{directive_key}"
        else:
            raise ValueError("finding_id or directive_key required")
        if unfinished_only:
            key += f"&status=in.{UNFINISHED}"
        rows = await self.db.query(
            TASKS_TABLE, f"{key}&order=created_at.desc&limit=1"
        )
        return Task.from_dict(rows[0]) if rows else None

    async def select_eligible(self, limit: int, stale_after: timedelta) -> list[Task]:
        """Select up to *limit* runnable tasks by (priority, created_at).

        Runnable means eligible pending tasks plus in_progress tasks whose
        claim is older than the staleness window.
        """
        if limit <= 0:
            return []
        now = self.ctx.now()
        order = "order=priority.asc,created_at.asc"
        pending = await self.db.query(
            TASKS_TABLE,
            f"status=eq.{TaskStatus.PENDING.value}"
            f"&or=(scheduled_for.is.null,scheduled_for.lte.{query_ts(now)})"
            f"&{order}&limit={limit}",
        )
        stale = await self.db.query(
            TASKS_TABLE,
            f"status=eq.{TaskStatus.IN_PROGRESS.value}"
            f"&or=(started_at.is.null,started_at.lte.{query_ts(now - stale_after)})"
            f"&{order}&limit={limit}",
        )
        candidates = [Task.from_dict(r) for r in pending + stale]
        candidates.sort(key=_selection_order)
        return candidates[:limit]

    async def claim(self, task: Task, token: str) -> Task | None:
        """Atomically take ownership of *task* for the invocation *token*.

        Pending tasks are claimed only while still pending. A stale
        in_progress task is reclaimed only while the previous owner's token
        is unchanged, and the abandoned run counts as an attempt. Returns
        None when another invocation won the race.
        """
        now = self.ctx.now()
        data: dict[str, Any] = {
            "status": TaskStatus.IN_PROGRESS.value,
            "claimed_by": token,
            "started_at": now,
        }
        if task.status is TaskStatus.PENDING:
            match: dict[str, Any] = {"id": task.id, "status": TaskStatus.PENDING.value}
        else:
            match = {"id": task.id, "status": TaskStatus.IN_PROGRESS.value}
            if task.claimed_by is not None:
                match["claimed_by"] = task.claimed_by
            data["attempts"] = task.attempts + 1

        rows = await self.db.update(TASKS_TABLE, match, data)
        if not rows:
            logger.info("Task %s already claimed elsewhere, skipping", task.id)
            return None
        return Task.from_dict(rows[0])

    async def _finish(self, task: Task, data: dict[str, Any]) -> Task | None:
        rows = await self.db.update(
            TASKS_TABLE,
            {
                "id": task.id,
                "status": TaskStatus.IN_PROGRESS.value,
                "claimed_by": task.claimed_by,
            },
            data,
        )
        if not rows:
            logger.warning(
                "Task %s was reclaimed before it finished; result discarded", task.id
            )
            return None
        return Task.from_dict(rows[0])

    async def complete(self, task: Task, result: dict[str, Any]) -> Task | None:
        return await self._finish(
            task,
            {
                "status": TaskStatus.COMPLETED.value,
                "completed_at": self.ctx.now(),
                "result": result,
                "error_message": None,
            },
        )

    async def fail(
        self,
        task: Task,
        error_message: str,
        max_attempts: int,
        count_attempt: bool = True,
        result: dict[str, Any] | None = None,
    ) -> Task | None:
        """Mark a claimed task failed.

        Once attempts reach *max_attempts* the task is flagged for manual
        review and no retry policy will pick it up again. *result* is what
        the action recorded before failing (a partial fix's ``backup``);
        it is stored alongside the failure summary.
        """
        attempts = task.attempts + 1 if count_attempt else task.attempts
        needs_review = attempts >= max_attempts
        return await self._finish(
            task,
            {
                "status": TaskStatus.FAILED.value,
                "completed_at": self.ctx.now(),
                "attempts": attempts,
                "error_message": error_message,
                "needs_review": needs_review,
                "result": {
                    **(result or {}),
                    "summary": (
                        "Permanently failed; manual review required"
                        if needs_review
                        else f"Failed on attempt {attempts}"
                    ),
                },
            },
        )

    async def requeue_failed(self, max_attempts: int, backoff: timedelta) -> int:
        """Explicit retry policy: move retryable failed tasks back to pending."""
        rows = await self.db.query(
            TASKS_TABLE,
            f"status=eq.{TaskStatus.FAILED.value}&needs_review=eq.false"
            f"&attempts=lt.{max_attempts}&limit={MAX_PAGE_SIZE}",
        )
        scheduled_for = self.ctx.now() + backoff
        requeued = 0
        for row in rows:
            updated = await self.db.update(
                TASKS_TABLE,
                {"id": row["id"], "status": TaskStatus.FAILED.value},
                {
                    "status": TaskStatus.PENDING.value,
                    "scheduled_for": scheduled_for,
                    "claimed_by": None,
                    "started_at": None,
                    "completed_at": None,
                },
            )
            requeued += len(updated)
        if requeued:
            logger.info("Requeued %d failed task(s) for retry", requeued)
        return requeued

    async def prune_completed(self, older_than: datetime) -> int:
        """Delete completed tasks finished before *older_than*.

        Failed tasks are kept so permanent failures stay reviewable.
        """
        rows = await self.db.query(
            TASKS_TABLE,
            f"status=eq.{TaskStatus.COMPLETED.value}"
            f"&completed_at=lt.{query_ts(older_than)}&limit={MAX_PAGE_SIZE}",
            select="id",
        )
        for row in rows:
            await self.db.delete(
                TASKS_TABLE, {"id": row["id"], "status": TaskStatus.COMPLETED.value}
            )
        if rows:
            logger.info("Pruned %d completed task(s) older than %s", len(rows), older_than)
        return len(rows)
