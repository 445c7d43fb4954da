"""Task scheduler: turns findings and directives into pending tasks.

A finding gets at most one task, and only if its severity meets
the configured threshold. Sub-threshold findings stay open and listed but
never spawn work.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Protocol

from .context import EngineContext
from .errors import ConflictError
from .findings import Finding
from .integrity_rules import PriorityDirective, load_directives
from .models import Category, Severity, TaskKind, severity_rank
from .tasks import Task, TaskStore

logger = logging.getLogger(__name__)


def meets_threshold(severity: Severity, threshold: Severity) -> bool:
    """Whether *severity* is at least as severe as *threshold*."""
    return severity_rank(severity) <= severity_rank(threshold)


def task_kind_for(finding: Finding) -> TaskKind:
    if finding.category is Category.DATA_INTEGRITY:
        return TaskKind.AUTO_FIX
    return TaskKind.PROPOSAL


class DirectiveSource(Protocol):
    """External source of prioritized goals."""

    async def directives(self) -> list[PriorityDirective]: ...


class YamlDirectiveSource:
    """Reads directives from a YAML goals file; a missing file yields none."""

    def __init__(self, path: Path | None):
        self.path = path

    async def directives(self) -> list[PriorityDirective]:
        if self.path is None:
            return []
        if not self.path.exists():
            logger.warning("Directives file %s not found", self.path)
            return []
        return load_directives(self.path)


class TaskScheduler:
    """Creates tasks from findings and external directives."""

    def __init__(self, ctx: EngineContext, tasks: TaskStore | None = None):
        self.ctx = ctx
        self.tasks = tasks or TaskStore(ctx)

    async def schedule_finding(
        self, finding: Finding, scheduled_for: datetime | None = None
    ) -> Task | None:
        """Create a task for *finding* if it warrants one.

        Args:
            finding: A persisted finding.
            scheduled_for: Explicit deferral. Defaults to now, so the task
                is eligible on the very next selection.

        Returns:
            The new task, or None when the finding is below threshold or
            already has a task.
        """
        threshold = self.ctx.config.scheduler.severity_threshold
        if not meets_threshold(finding.severity, threshold):
            logger.debug(
                "Finding %s (%s) below threshold %s; no task",
                finding.id,
                finding.severity.value,
                threshold.value,
            )
            return None

        existing = await self.tasks.find_existing(finding_id=finding.id)
        if existing is not None:
            # A failed task comes back only through requeue_failed.
            return None

        kind = task_kind_for(finding)
        verb = "Fix" if kind is TaskKind.AUTO_FIX else "Address"
        try:
            task = await self.tasks.create(
                Task(
                    title=f"{verb}: {finding.description}"[:200],
                    kind=kind,
                    priority=severity_rank(finding.severity),
                    finding_id=finding.id,
                    input_data={
                        "category": finding.category.value,
                        "location": finding.location,
                        "evidence": finding.evidence,
                    },
                    scheduled_for=scheduled_for or self.ctx.now(),
                )
            )
        except ConflictError:
            logger.info("Finding %s was scheduled by another invocation", finding.id)
            return None
        logger.info(
            "Scheduled %s task %s (priority %d) for finding %s",
            kind.value,
            task.id,
            task.priority,
            finding.id,
        )
        return task

    async def schedule_findings(self, findings: list[Finding]) -> list[Task]:
        created = []
        for finding in findings:
            task = await self.schedule_finding(finding)
            if task is not None:
                created.append(task)
        return created

    async def schedule_directive(self, directive: PriorityDirective) -> Task | None:
        """Seed a proposal task from a directive.

        Each directive key yields one task; publish a new key to re-seed.
        """
        existing = await self.tasks.find_existing(directive_key=directive.key)
        if existing is not None:
            return None

        try:
            task = await self.tasks.create(
                Task(
                    title=directive.title,
                    kind=TaskKind.PROPOSAL,
                    priority=directive.priority,
                    directive_key=directive.key,
                    input_data={
                        "description": directive.description,
                        "location": directive.location,
                    },
                    scheduled_for=directive.scheduled_for or self.ctx.now(),
                )
            )
        except ConflictError:
            logger.info("Directive %s was seeded by another invocation", directive.key)
            return None
        logger.info("Scheduled directive %s as task %s", directive.key, task.id)
        return task

    async def schedule_directives(self, source: DirectiveSource) -> list[Task]:
        created = []
        for directive in await source.directives():
            task = await self.schedule_directive(directive)
            if task is not None:
                created.append(task)
        return created

    async def requeue_failed(self) -> int:
        """Apply the explicit retry policy, if enabled. Returns tasks requeued."""
        cfg = self.ctx.config
        if not cfg.scheduler.requeue_failed:
            return 0
        return await self.tasks.requeue_failed(
            max_attempts=cfg.executor.max_attempts,
            backoff=timedelta(minutes=cfg.scheduler.requeue_backoff_minutes),
        )
