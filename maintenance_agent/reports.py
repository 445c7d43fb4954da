"""Report generator: rolling-window summaries of maintenance activity."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

import httpx

from .context import EngineContext
from .db import to_json_compatible
from .findings import FINDINGS_TABLE, Finding
from .models import TERMINAL_TASK_STATUSES, FindingStatus, Severity, TaskStatus, parse_dt
from .proposer import ChangePlanStore
from .query_filters import query_ts
from .tasks import TASKS_TABLE, Task

logger = logging.getLogger(__name__)

REPORTS_TABLE = "maintenance_reports"
REPORT_ROW_LIMIT = 1000


@dataclass
class Report:
    """Aggregated activity over one window."""

    period_start: datetime
    period_end: datetime
    report_type: str = "daily_summary"
    tasks_by_status: dict[str, int] = field(default_factory=dict)
    findings_by_category: dict[str, int] = field(default_factory=dict)
    findings_fixed: int = 0
    success_rate: float | None = None
    mean_task_duration_ms: int | None = None
    pending_change_plans: int = 0
    change_plans: list[dict[str, Any]] = field(default_factory=list)
    executive_summary: str = ""
    key_accomplishments: list[str] = field(default_factory=list)
    critical_issues: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "report_type": self.report_type,
            "period_start": self.period_start,
            "period_end": self.period_end,
            "tasks_by_status": self.tasks_by_status,
            "findings_by_category": self.findings_by_category,
            "findings_fixed": self.findings_fixed,
            "success_rate": self.success_rate,
            "mean_task_duration_ms": self.mean_task_duration_ms,
            "pending_change_plans": self.pending_change_plans,
            "change_plans": self.change_plans,
            "executive_summary": self.executive_summary,
            "key_accomplishments": self.key_accomplishments,
            "critical_issues": self.critical_issues,
            "recommendations": self.recommendations,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Report:
        return cls(
            id=str(data["id"]) if data.get("id") else None,
            report_type=data.get("report_type", "daily_summary"),
            period_start=parse_dt(data["period_start"]),
            period_end=parse_dt(data["period_end"]),
            tasks_by_status=data.get("tasks_by_status") or {},
            findings_by_category=data.get("findings_by_category") or {},
            findings_fixed=data.get("findings_fixed") or 0,
            success_rate=data.get("success_rate"),
            mean_task_duration_ms=data.get("mean_task_duration_ms"),
            pending_change_plans=data.get("pending_change_plans") or 0,
            change_plans=data.get("change_plans") or [],
            executive_summary=data.get("executive_summary") or "",
            key_accomplishments=data.get("key_accomplishments") or [],
            critical_issues=data.get("critical_issues") or [],
            recommendations=data.get("recommendations") or [],
        )


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------


class ReportSink(Protocol):
    """Notification channel receiving each generated report."""

    async def send(self, report: Report) -> None: ...


class LoggingSink:
    async def send(self, report: Report) -> None:
        logger.info("Maintenance report: %s", report.executive_summary)


class WebhookSink:
    """POSTs the report as JSON to a webhook URL."""

    def __init__(self, url: str, client: httpx.AsyncClient | None = None):
        self.url = url
        self._client = client

    async def send(self, report: Report) -> None:
        payload = to_json_compatible(report.to_dict())
        if self._client is not None:
            response = await self._client.post(self.url, json=payload)
            response.raise_for_status()
            return
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.post(self.url, json=payload)
            response.raise_for_status()


def default_sinks(ctx: EngineContext) -> list[ReportSink]:
    sinks: list[ReportSink] = [LoggingSink()]
    if ctx.config.reports.webhook_url:
        sinks.append(WebhookSink(ctx.config.reports.webhook_url))
    return sinks


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------


def _executive_summary(
    completed: int, found: int, fixed: int, proposed: int, pending: int
) -> str:
    if completed == 0 and found == 0 and proposed == 0:
        return "No maintenance activity in this period; system appears stable."
    return (
        f"Completed {completed} task(s), detected {found} issue(s) and fixed "
        f"{fixed} automatically. Proposed {proposed} change plan(s); "
        f"{pending} await review."
    )


class ReportGenerator:
    """Builds, stores and forwards activity reports."""

    def __init__(self, ctx: EngineContext, sinks: list[ReportSink] | None = None):
        self.ctx = ctx
        self.sinks = sinks if sinks is not None else default_sinks(ctx)

    async def build(self) -> Report:
        """Aggregate task and finding activity over the configured window."""
        end = self.ctx.now()
        start = end - timedelta(hours=self.ctx.config.reports.window_hours)
        since = query_ts(start)
        db = self.ctx.db

        task_rows = await db.query(
            TASKS_TABLE,
            f"or=(created_at.gte.{since},completed_at.gte.{since})"
            f"&limit={REPORT_ROW_LIMIT}",
        )
        tasks = [Task.from_dict(r) for r in task_rows]
        finding_rows = await db.query(
            FINDINGS_TABLE,
            f"or=(created_at.gte.{since},fixed_at.gte.{since})"
            f"&limit={REPORT_ROW_LIMIT}",
        )
        findings = [Finding.from_dict(r) for r in finding_rows]
        plan_store = ChangePlanStore(self.ctx)
        plans = await plan_store.list_unapplied(limit=REPORT_ROW_LIMIT)
        proposed = await plan_store.list_unapplied(since=start, limit=REPORT_ROW_LIMIT)

        completed = [t for t in tasks if t.status is TaskStatus.COMPLETED]
        failed = [t for t in tasks if t.status is TaskStatus.FAILED]
        terminal = sum(1 for t in tasks if t.status in TERMINAL_TASK_STATUSES)
        durations = [t.duration_ms for t in completed if t.duration_ms is not None]

        found = [f for f in findings if f.created_at and f.created_at >= start]
        fixed = [f for f in findings if f.fixed_at and f.fixed_at >= start]
        needs_review = [t for t in failed if t.needs_review]

        critical_issues = [
            f"[{f.severity.value}] {f.description}"
            for f in findings
            if f.status is not FindingStatus.FIXED
            and f.severity in (Severity.CRITICAL, Severity.HIGH)
        ]
        critical_issues += [f"Task needs manual review: {t.title}" for t in needs_review]

        recommendations = []
        if needs_review:
            recommendations.append(
                f"Review {len(needs_review)} permanently failed task(s)"
            )
        if plans:
            recommendations.append(f"Review {len(plans)} pending change plan(s)")

        return Report(
            period_start=start,
            period_end=end,
            tasks_by_status=dict(Counter(t.status.value for t in tasks)),
            findings_by_category=dict(Counter(f.category.value for f in found)),
            findings_fixed=len(fixed),
            success_rate=round(len(completed) / terminal, 4) if terminal else None,
            mean_task_duration_ms=(
                int(sum(durations) / len(durations)) if durations else None
            ),
            pending_change_plans=len(plans),
            change_plans=[
                {
                    "id": p.id,
                    "summary": p.summary,
                    "risk": p.highest_risk,
                    "finding_id": p.finding_id,
                }
                for p in proposed
            ],
            executive_summary=_executive_summary(
                len(completed), len(found), len(fixed), len(proposed), len(plans)
            ),
            key_accomplishments=[
                f"Completed {len(completed)} automated task(s)",
                f"Detected {len(found)} potential issue(s)",
                f"Fixed {len(fixed)} problem(s) automatically",
            ],
            critical_issues=critical_issues,
            recommendations=recommendations,
        )

    async def generate(self) -> tuple[Report, list[str]]:
        """Build and store a report, then forward it to every sink.

        Returns the stored report and the errors raised by sinks. A failing
        sink does not prevent delivery to the others.
        """
        report = await self.build()
        row = await self.ctx.db.insert(REPORTS_TABLE, report.to_dict())
        report.id = str(row["id"]) if row.get("id") else None

        errors = []
        for sink in self.sinks:
            try:
                await sink.send(report)
            except Exception as e:
                logger.warning(
                    "Report sink %s failed", type(sink).__name__, exc_info=True
                )
                errors.append(f"report sink {type(sink).__name__}: {e}")
        return report, errors

    async def latest(self) -> Report | None:
        rows = await self.ctx.db.query(
            REPORTS_TABLE, "order=period_end.desc&limit=1"
        )
        return Report.from_dict(rows[0]) if rows else None
