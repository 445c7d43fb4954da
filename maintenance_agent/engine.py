"""One maintenance tick: detect, schedule, execute, report, prune.

A tick is stateless and bounded. Stages run strictly in sequence, and a
failing stage is recorded in ``errors`` without stopping the stages after
it. Nothing except a bad trigger credential escapes the receiver; that
check happens before :func:`run_tick` is reached.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from .audit import RunLedger
from .context import EngineContext
from .detectors import DetectionSummary, Detector, detect
from .executor import TaskExecutor
from .reports import ReportGenerator, ReportSink
from .scheduler import DirectiveSource, TaskScheduler, YamlDirectiveSource
from .tasks import TaskStore

logger = logging.getLogger(__name__)

ENGINE_DISABLED = "engine disabled"


@dataclass
class TickResult:
    """Summary returned to the caller of one tick."""

    tasks_processed: int = 0
    findings_created: int = 0
    duration_ms: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tasksProcessed": self.tasks_processed,
            "findingsCreated": self.findings_created,
            "durationMs": self.duration_ms,
            "errors": self.errors,
        }


def _stage_error(stage: str, exc: Exception) -> str:
    logger.error("Stage %s failed: %s", stage, exc, exc_info=True)
    return f"{stage}: {type(exc).__name__}: {exc}"


async def run_tick(
    ctx: EngineContext,
    trigger: str = "scheduled",
    detectors: list[Detector] | None = None,
    directive_source: DirectiveSource | None = None,
    sinks: list[ReportSink] | None = None,
) -> TickResult:
    """Run one full pipeline invocation against *ctx*.

    Args:
        ctx: Store, configuration, clock and invocation identity.
        trigger: ``"scheduled"`` or ``"manual"``, recorded in the run ledger.
        detectors: Detector list in execution order; defaults to the
            registered detectors.
        directive_source: Source of priority directives; defaults to the
            YAML goals file from configuration.
        sinks: Report sinks; defaults to logging plus the webhook if set.

    Returns:
        TickResult with every absorbed failure listed in ``errors``.
    """
    started = time.monotonic()
    deadline = started + ctx.config.executor.tick_budget_seconds
    result = TickResult()

    if not ctx.config.trigger.enabled:
        logger.info("Maintenance engine disabled; tick %s skipped", ctx.invocation_id)
        result.errors.append(ENGINE_DISABLED)
        await _finish(ctx, trigger, result, started)
        return result

    logger.info("Tick %s started (%s)", ctx.invocation_id, trigger)

    detection = DetectionSummary()
    try:
        detection = await detect(ctx, detectors)
        result.findings_created = len(detection.created)
        result.errors.extend(
            f"detector {e.detector}: {e.message}" for e in detection.failures
        )
    except Exception as e:
        result.errors.append(_stage_error("detect", e))

    scheduler = TaskScheduler(ctx)
    try:
        await scheduler.requeue_failed()
        await scheduler.schedule_findings(detection.findings)
        await scheduler.schedule_directives(
            directive_source
            or YamlDirectiveSource(ctx.config.scheduler.directives_path)
        )
    except Exception as e:
        result.errors.append(_stage_error("schedule", e))

    try:
        execution = await TaskExecutor(ctx).run(deadline=deadline)
        result.tasks_processed = execution.processed
        result.errors.extend(execution.errors)
    except Exception as e:
        result.errors.append(_stage_error("execute", e))

    try:
        _report, sink_errors = await ReportGenerator(ctx, sinks).generate()
        result.errors.extend(sink_errors)
    except Exception as e:
        result.errors.append(_stage_error("report", e))

    retention_days = ctx.config.executor.retention_days
    if retention_days > 0:
        try:
            await TaskStore(ctx).prune_completed(ctx.now() - timedelta(days=retention_days))
        except Exception as e:
            result.errors.append(_stage_error("retention", e))

    await _finish(ctx, trigger, result, started)
    logger.info(
        "Tick %s finished: %d task(s), %d new finding(s), %d error(s) in %dms",
        ctx.invocation_id,
        result.tasks_processed,
        result.findings_created,
        len(result.errors),
        result.duration_ms,
    )
    return result


async def _finish(
    ctx: EngineContext, trigger: str, result: TickResult, started: float
) -> None:
    result.duration_ms = int((time.monotonic() - started) * 1000)
    await RunLedger(ctx).record(
        trigger=trigger,
        tasks_processed=result.tasks_processed,
        findings_created=result.findings_created,
        duration_ms=result.duration_ms,
        errors=result.errors,
    )
