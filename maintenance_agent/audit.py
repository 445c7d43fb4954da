"""Run ledger for the maintenance engine.

Every tick appends one row to ``maintenance_runs``, including disabled and
failed ticks, so that absorbed errors stay observable after the HTTP
response is gone. Rows are append-only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .context import EngineContext
from .models import parse_dt

logger = logging.getLogger(__name__)

RUNS_TABLE = "maintenance_runs"


@dataclass
class RunEntry:
    """One recorded tick."""

    invocation_id: str
    trigger: str
    tasks_processed: int = 0
    findings_created: int = 0
    duration_ms: int | None = None
    errors: list[str] = field(default_factory=list)
    success: bool = True
    id: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunEntry:
        return cls(
            id=str(data["id"]),
            invocation_id=data["invocation_id"],
            trigger=data.get("trigger") or "scheduled",
            tasks_processed=data.get("tasks_processed") or 0,
            findings_created=data.get("findings_created") or 0,
            duration_ms=data.get("duration_ms"),
            errors=data.get("errors") or [],
            success=bool(data.get("success")),
            created_at=parse_dt(data.get("created_at")),
        )


@dataclass
class LedgerResult:
    """Result of a ledger write."""

    success: bool
    entry_id: str | None = None
    error: str | None = None


class RunLedger:
    """Append-only record of engine invocations."""

    def __init__(self, ctx: EngineContext):
        self.ctx = ctx

    async def record(
        self,
        trigger: str,
        tasks_processed: int,
        findings_created: int,
        duration_ms: int,
        errors: list[str],
    ) -> LedgerResult:
        """Insert a run entry. Never raises; a failed write is reported back."""
        data = {
            "invocation_id": self.ctx.invocation_id,
            "trigger": trigger,
            "tasks_processed": tasks_processed,
            "findings_created": findings_created,
            "duration_ms": duration_ms,
            "errors": errors,
            "success": not errors,
            "created_at": self.ctx.now(),
        }
        try:
            row = await self.ctx.db.insert(RUNS_TABLE, data)
            return LedgerResult(success=True, entry_id=str(row.get("id", "")))
        except Exception as e:
            logger.warning("Could not record run %s", self.ctx.invocation_id, exc_info=True)
            return LedgerResult(success=False, error=str(e))

    async def recent(self, trigger: str | None = None, limit: int = 20) -> list[RunEntry]:
        """Most recent runs first."""
        query_parts = ["order=created_at.desc", f"limit={limit}"]
        if trigger:
            query_parts.append(f"trigger=eq.{trigger}")
        rows = await self.ctx.db.query(RUNS_TABLE, "&".join(query_parts))
        return [RunEntry.from_dict(r) for r in rows]
