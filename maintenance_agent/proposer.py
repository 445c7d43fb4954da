"""Code-change proposer.

Builds human-reviewable ChangePlans for code-related findings and
directive tasks. Plans are frozen values with ``applied=False``; nothing
in this module reads or writes source files. Applying a plan is a
separate, explicitly gated step outside the engine.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import PurePosixPath
from typing import Any

from .context import EngineContext
from .findings import Finding
from .models import Category, parse_dt
from .query_filters import query_ts
from .tasks import Task

logger = logging.getLogger(__name__)

CHANGE_PLANS_TABLE = "maintenance_change_plans"

ACTIONS = ("create", "modify", "delete")
SHARED_MARKERS = {"lib", "shared", "common", "core", "utils"}
DOC_SUFFIXES = {".md", ".rst", ".txt"}


@dataclass(frozen=True)
class FileChange:
    """One intended edit to one file."""

    path: str
    action: str
    risk: str
    description: str
    rationale: str

    def to_dict(self) -> dict[str, str]:
        return {
            "path": self.path,
            "action": self.action,
            "risk": self.risk,
            "description": self.description,
            "rationale": self.rationale,
        }


@dataclass(frozen=True)
class ChangePlan:
    """A structured description of intended code changes. Never auto-applied."""

    summary: str
    changes: tuple[FileChange, ...]
    testing_notes: str
    finding_id: str | None = None
    applied: bool = False
    id: str | None = None
    created_at: datetime | None = None

    @property
    def highest_risk(self) -> str:
        order = ["low", "medium", "high"]
        return max((c.risk for c in self.changes), key=order.index, default="low")

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "changes": [c.to_dict() for c in self.changes],
            "testing_notes": self.testing_notes,
            "finding_id": self.finding_id,
            "applied": self.applied,
            "risk": self.highest_risk,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChangePlan:
        return cls(
            id=str(data["id"]) if data.get("id") else None,
            summary=data.get("summary") or "",
            changes=tuple(FileChange(**c) for c in data.get("changes") or []),
            testing_notes=data.get("testing_notes") or "",
            finding_id=str(data["finding_id"]) if data.get("finding_id") else None,
            applied=bool(data.get("applied")),
            created_at=parse_dt(data.get("created_at")),
        )


# ---------------------------------------------------------------------------
# Risk heuristics
# ---------------------------------------------------------------------------


def is_test_or_doc(path: str) -> bool:
    p = PurePosixPath(path)
    return (
        "tests" in p.parts
        or "docs" in p.parts
        or p.name.startswith("test_")
        or p.suffix in DOC_SUFFIXES
    )


def is_shared_module(path: str) -> bool:
    p = PurePosixPath(path)
    return p.name == "__init__.py" or bool(SHARED_MARKERS.intersection(p.parts[:-1]))


def assess_risk(path: str, action: str) -> str:
    """Blast-radius estimate for one file change."""
    if action == "create":
        return "low"
    if action == "modify":
        return "low" if is_test_or_doc(path) else "medium"
    if action == "delete":
        return "high" if is_shared_module(path) else "medium"
    raise ValueError(f"Unknown change action: {action}")


def endpoint_to_path(location: str) -> str | None:
    """Map a location to a source path; endpoints map under ``routes/``.

    Returns None for locations that name no file, such as ``detector:<name>``.
    """
    if ":" in location or location == "unknown":
        return None
    if PurePosixPath(location).suffix:
        return location.lstrip("/")
    segments = [s for s in location.strip("/").split("/") if s] or ["index"]
    return str(PurePosixPath("routes", *segments).with_suffix(".py"))


def regression_test_path(source: str) -> str:
    p = PurePosixPath(source)
    return str(PurePosixPath("tests", f"test_{p.stem}.py"))


# ---------------------------------------------------------------------------
# Proposer
# ---------------------------------------------------------------------------


class CodeChangeProposer:
    """Turns a finding or directive task into a ChangePlan."""

    def __init__(self, path_resolver: Callable[[str], str | None] = endpoint_to_path):
        self.path_resolver = path_resolver

    def _change(self, path: str, action: str, description: str, rationale: str) -> FileChange:
        if action not in ACTIONS:
            raise ValueError(f"Unknown change action: {action}")
        return FileChange(
            path=path,
            action=action,
            risk=assess_risk(path, action),
            description=description,
            rationale=rationale,
        )

    def propose(self, task: Task, finding: Finding | None = None) -> ChangePlan:
        location = finding.location if finding else task.input_data.get("location", "")
        source = self.path_resolver(location) if location else None
        why = (
            f"Addresses finding {finding.id}: {finding.description}"
            if finding
            else f"Requested by directive {task.directive_key}: {task.title}"
        )

        changes: list[FileChange] = []
        notes: list[str] = []

        if finding is not None and finding.category is Category.ERROR:
            transient = finding.evidence.get("known_transient") or []
            remedy = (
                "Add bounded retry with backoff around the failing upstream call"
                if transient
                else "Handle the failure path and return a structured error"
            )
            if source:
                changes.append(self._change(source, "modify", remedy, why))
            notes.append("Reproduce the error pattern from the finding evidence.")
        elif finding is not None and finding.category is Category.PERFORMANCE:
            if source:
                changes.append(
                    self._change(
                        source,
                        "modify",
                        "Reduce response latency (pagination, caching or query tuning)",
                        why,
                    )
                )
            notes.append(
                f"Compare p95 latency against the recorded "
                f"{finding.evidence.get('p95_ms', 'baseline')}ms after the change."
            )
        elif source:
            changes.append(
                self._change(
                    source,
                    "modify",
                    task.input_data.get("description") or task.title,
                    why,
                )
            )

        if source and not is_test_or_doc(source):
            test_path = regression_test_path(source)
            changes.append(
                self._change(
                    test_path,
                    "create",
                    f"Regression test covering {location}",
                    why,
                )
            )
            notes.append(f"Run {test_path} before and after applying the change.")
        if not changes:
            notes.append("No source location known; investigate before planning edits.")

        return ChangePlan(
            summary=task.title,
            changes=tuple(changes),
            testing_notes=" ".join(notes),
            finding_id=finding.id if finding else None,
        )


class ChangePlanStore:
    """Persists plans for human review."""

    def __init__(self, ctx: EngineContext):
        self.ctx = ctx

    async def save(self, task: Task, plan: ChangePlan) -> ChangePlan:
        row = await self.ctx.db.insert(
            CHANGE_PLANS_TABLE,
            {
                **plan.to_dict(),
                "task_id": task.id,
                "applied": False,
                "created_at": self.ctx.now(),
            },
        )
        saved = ChangePlan.from_dict(row)
        logger.info(
            "Stored change plan %s for task %s (%d change(s), risk %s)",
            saved.id,
            task.id,
            len(saved.changes),
            saved.highest_risk,
        )
        return saved

    async def list_unapplied(
        self, since: datetime | None = None, limit: int = 200
    ) -> list[ChangePlan]:
        parts = ["applied=eq.false", "order=created_at.desc", f"limit={limit}"]
        if since is not None:
            parts.append(f"created_at=gte.{query_ts(since)}")
        rows = await self.ctx.db.query(CHANGE_PLANS_TABLE, "&".join(parts))
        return [ChangePlan.from_dict(r) for r in rows]
