"""Task selector/executor.

Selects eligible tasks by (priority, created_at), claims each one
atomically and dispatches it by kind:

- ``auto_fix`` tasks go to the :class:`AutoFixExecutor`.
- ``proposal`` tasks get a ChangePlan stored for review.

A task whose claim is lost to another invocation is skipped. Any exception
during execution fails the task; it is never retried implicitly.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from .autofix import AutoFixExecutor
from .context import EngineContext
from .errors import ExecutionError
from .findings import Finding, FindingStore
from .models import TaskKind, TaskStatus
from .proposer import ChangePlanStore, CodeChangeProposer
from .tasks import Task, TaskStore

logger = logging.getLogger(__name__)


@dataclass
class ExecutionSummary:
    """Outcome of one executor pass."""

    completed: list[Task] = field(default_factory=list)
    failed: list[Task] = field(default_factory=list)
    skipped: int = 0
    budget_exhausted: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.completed) + len(self.failed)


class TaskExecutor:
    """Runs a bounded batch of tasks for one invocation."""

    def __init__(
        self,
        ctx: EngineContext,
        tasks: TaskStore | None = None,
        findings: FindingStore | None = None,
        autofix: AutoFixExecutor | None = None,
        proposer: CodeChangeProposer | None = None,
        plans: ChangePlanStore | None = None,
    ):
        self.ctx = ctx
        self.tasks = tasks or TaskStore(ctx)
        self.findings = findings or FindingStore(ctx)
        self.autofix = autofix or AutoFixExecutor(ctx)
        self.proposer = proposer or CodeChangeProposer()
        self.plans = plans or ChangePlanStore(ctx)

    async def run(self, deadline: float | None = None) -> ExecutionSummary:
        """Select, claim and execute up to the configured batch size.

        Args:
            deadline: ``time.monotonic()`` value after which no further
                task is claimed. Defaults to the configured tick budget
                from now. Tasks left unclaimed stay pending.
        """
        cfg = self.ctx.config.executor
        if deadline is None:
            deadline = time.monotonic() + cfg.tick_budget_seconds

        summary = ExecutionSummary()
        candidates = await self.tasks.select_eligible(
            limit=cfg.batch_size,
            stale_after=timedelta(minutes=cfg.stale_after_minutes),
        )

        for candidate in candidates:
            if time.monotonic() >= deadline:
                summary.budget_exhausted = True
                logger.warning(
                    "Tick budget spent; leaving %d selected task(s) unclaimed",
                    len(candidates) - summary.processed - summary.skipped,
                )
                break

            task = await self.tasks.claim(candidate, self.ctx.invocation_id)
            if task is None:
                summary.skipped += 1
                continue

            if candidate.status is TaskStatus.IN_PROGRESS:
                logger.warning(
                    "Reclaimed stale task %s (attempt %d)", task.id, task.attempts
                )
                if task.attempts >= cfg.max_attempts:
                    await self._guarded(self._give_up, task, summary)
                    continue

            await self._guarded(self.execute, task, summary)

        logger.info(
            "Executor: %d completed, %d failed, %d skipped",
            len(summary.completed),
            len(summary.failed),
            summary.skipped,
        )
        return summary

    async def _guarded(self, step, task: Task, summary: ExecutionSummary) -> None:
        """Run *step*; if even recording its failure raises, log and move on.

        The task stays in_progress and is reclaimed once stale.
        """
        try:
            await step(task, summary)
        except Exception as e:
            logger.error("Task %s left unfinished: %s", task.id, e, exc_info=True)
            summary.errors.append(f"task {task.id}: {e}")

    async def _give_up(self, task: Task, summary: ExecutionSummary) -> None:
        message = f"Abandoned {task.attempts} time(s) without finishing"
        failed = await self.tasks.fail(
            task, message, self.ctx.config.executor.max_attempts, count_attempt=False
        )
        if failed is not None:
            summary.failed.append(failed)
            summary.errors.append(f"task {task.id}: {message}")
            if task.finding_id:
                await self.findings.mark_open(task.finding_id)

    async def execute(self, task: Task, summary: ExecutionSummary) -> None:
        """Run one claimed task to a terminal state.

        Every step after the claim, including the finding lookup and the
        completion write, fails the task when it raises.
        """
        finding = None
        try:
            if task.finding_id:
                finding = await self.findings.get(task.finding_id)
            if finding is not None:
                await self.findings.mark_in_progress(finding.id)

            if task.kind is TaskKind.AUTO_FIX:
                result = await self.autofix.run(task)
            else:
                result = await self._propose(task, finding)
            done = await self.tasks.complete(task, result)
        except Exception as e:
            await self._fail(task, e, summary)
            return

        if done is None:
            return
        summary.completed.append(done)
        logger.info("Task %s completed: %s", task.id, result.get("summary", ""))
        if finding is not None and task.kind is TaskKind.AUTO_FIX:
            try:
                await self.findings.mark_resolved(finding.id)
            except Exception as e:
                logger.error(
                    "Task %s completed but finding %s was not resolved: %s",
                    task.id,
                    finding.id,
                    e,
                    exc_info=True,
                )
                summary.errors.append(
                    f"task {task.id}: finding {finding.id} not resolved: {e}"
                )

    async def _fail(
        self, task: Task, exc: Exception, summary: ExecutionSummary
    ) -> None:
        error = str(exc) or type(exc).__name__
        logger.warning("Task %s failed: %s", task.id, error, exc_info=exc)
        partial = exc.result if isinstance(exc, ExecutionError) else None
        failed = await self.tasks.fail(
            task, error, self.ctx.config.executor.max_attempts, result=partial
        )
        if task.finding_id:
            await self.findings.mark_open(task.finding_id)
        if failed is not None:
            summary.failed.append(failed)
            summary.errors.append(f"task {task.id}: {error}")

    async def _propose(self, task: Task, finding: Finding | None) -> dict[str, Any]:
        plan = self.proposer.propose(task, finding)
        saved = await self.plans.save(task, plan)
        return {
            "summary": f"Change plan {saved.id} awaiting review",
            "change_plan_id": saved.id,
            "changes": len(saved.changes),
            "risk": saved.highest_risk,
        }
