"""Shared enums and helpers for findings, tasks and plans."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any


class Category(str, Enum):
    ERROR = "error"
    PERFORMANCE = "performance"
    DATA_INTEGRITY = "data-integrity"
    IMPROVEMENT = "improvement"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class FindingStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    FIXED = "fixed"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskKind(str, Enum):
    AUTO_FIX = "auto_fix"
    PROPOSAL = "proposal"


# Lower rank = more urgent; doubles as the inherited task priority.
SEVERITY_RANK: dict[Severity, int] = {
    Severity.CRITICAL: 1,
    Severity.HIGH: 2,
    Severity.MEDIUM: 3,
    Severity.LOW: 4,
    Severity.INFO: 5,
}

TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})
UNRESOLVED_FINDING_STATUSES = (FindingStatus.OPEN, FindingStatus.IN_PROGRESS)


def severity_rank(severity: Severity | str) -> int:
    """Return the urgency rank of a severity; unknown values rank as info."""
    try:
        return SEVERITY_RANK[Severity(severity)]
    except ValueError:
        return SEVERITY_RANK[Severity.INFO]


def parse_dt(val: Any) -> datetime | None:
    if val is None:
        return None
    if isinstance(val, datetime):
        return val
    return datetime.fromisoformat(str(val).replace("Z", "+00:00"))
