"""Finding store for the maintenance engine.

Findings form an audit trail: re-detection of the same content refreshes
``last_seen_at`` on the unresolved record, while any disagreement in
severity or description hashes to a new fingerprint and therefore a new
Finding. Existing severity and description are never rewritten.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .context import EngineContext
from .errors import ConflictError
from .models import (
    UNRESOLVED_FINDING_STATUSES,
    Category,
    FindingStatus,
    Severity,
    parse_dt,
)
from .query_filters import query_ts

logger = logging.getLogger(__name__)

FINDINGS_TABLE = "maintenance_findings"
MAX_PAGE_SIZE = 200


def compute_fingerprint(
    category: Category | str,
    severity: Severity | str,
    detection_method: str,
    location: str,
    description: str,
) -> str:
    """Content hash used as the dedup key for findings."""
    parts = [
        Category(category).value,
        Severity(severity).value,
        detection_method.strip(),
        location.strip(),
        " ".join(description.split()),
    ]
    return hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()


@dataclass
class Finding:
    """A detected condition recorded for later action."""

    category: Category
    severity: Severity
    description: str
    location: str = ""
    detection_method: str = ""
    evidence: dict[str, Any] = field(default_factory=dict)
    id: str | None = None
    fingerprint: str | None = None
    status: FindingStatus = FindingStatus.OPEN
    occurrences: int = 1
    created_at: datetime | None = None
    last_seen_at: datetime | None = None
    fixed_at: datetime | None = None

    def compute_fingerprint(self) -> str:
        return compute_fingerprint(
            self.category,
            self.severity,
            self.detection_method,
            self.location,
            self.description,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Finding":
        return cls(
            id=str(data["id"]),
            category=Category(data["category"]),
            severity=Severity(data["severity"]),
            description=data["description"],
            location=data.get("location") or "",
            detection_method=data.get("detection_method") or "",
            evidence=data.get("evidence") or {},
            fingerprint=data.get("fingerprint"),
            status=FindingStatus(data.get("status", FindingStatus.OPEN.value)),
            occurrences=data.get("occurrences") or 1,
            created_at=parse_dt(data.get("created_at")),
            last_seen_at=parse_dt(data.get("last_seen_at")),
            fixed_at=parse_dt(data.get("fixed_at")),
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "severity": self.severity.value,
            "description": self.description,
            "location": self.location,
            "detection_method": self.detection_method,
            "evidence": self.evidence,
            "fingerprint": self.fingerprint,
            "status": self.status.value,
            "occurrences": self.occurrences,
            "created_at": self.created_at,
            "last_seen_at": self.last_seen_at,
            "fixed_at": self.fixed_at,
        }


@dataclass
class UpsertResult:
    """Outcome of :meth:`FindingStore.dedupe_upsert`."""

    finding: Finding
    created: bool


@dataclass
class FindingFilter:
    """Filter for :meth:`FindingStore.list`."""

    category: Category | None = None
    severity: Severity | None = None
    statuses: list[FindingStatus] | None = None
    since: datetime | None = None
    limit: int = 50


class FindingStore:
    """Durable record of detected problems."""

    def __init__(self, ctx: EngineContext):
        self.ctx = ctx

    @property
    def db(self):
        return self.ctx.db

    async def create(self, finding: Finding) -> Finding:
        """Insert a new finding.

        Raises:
            ConflictError: An unresolved finding with the same fingerprint exists
        """
        now = self.ctx.now()
        finding.fingerprint = finding.fingerprint or finding.compute_fingerprint()
        finding.status = FindingStatus.OPEN
        finding.created_at = finding.created_at or now
        finding.last_seen_at = now
        row = await self.db.insert(FINDINGS_TABLE, finding.to_row())
        return Finding.from_dict(row)

    async def find_unresolved(self, fingerprint: str) -> Finding | None:
        statuses = ",".join(s.value for s in UNRESOLVED_FINDING_STATUSES)
        rows = await self.db.query(
            FINDINGS_TABLE,
            f"fingerprint=eq.{fingerprint}&status=in.({statuses})&limit=1",
        )
        return Finding.from_dict(rows[0]) if rows else None

    async def _refresh(self, existing: Finding) -> Finding:
        rows = await self.db.update(
            FINDINGS_TABLE,
            {"id": existing.id},
            {
                "last_seen_at": self.ctx.now(),
                "occurrences": existing.occurrences + 1,
            },
        )
        return Finding.from_dict(rows[0]) if rows else existing

    async def dedupe_upsert(self, fingerprint: str, finding: Finding) -> UpsertResult:
        """Create *finding* unless an unresolved one shares *fingerprint*.

        A concurrent invocation may insert the same fingerprint between the
        lookup and the insert; the unique index rejects the loser, which
        then refreshes the winner's record instead.
        """
        existing = await self.find_unresolved(fingerprint)
        if existing is not None:
            return UpsertResult(await self._refresh(existing), created=False)

        finding.fingerprint = fingerprint
        try:
            return UpsertResult(await self.create(finding), created=True)
        except ConflictError:
            existing = await self.find_unresolved(fingerprint)
            if existing is None:
                raise
            logger.info("Finding %s inserted concurrently, refreshing", fingerprint[:12])
            return UpsertResult(await self._refresh(existing), created=False)

    async def get(self, finding_id: str) -> Finding | None:
        rows = await self.db.query(FINDINGS_TABLE, f"id=eq.{finding_id}")
        return Finding.from_dict(rows[0]) if rows else None

    async def _transition(
        self, finding_id: str, target: FindingStatus, expected: FindingStatus | None
    ) -> bool:
        match: dict[str, Any] = {"id": finding_id}
        if expected is not None:
            match["status"] = expected.value
        data: dict[str, Any] = {"status": target.value}
        if target is FindingStatus.FIXED:
            data["fixed_at"] = self.ctx.now()
        rows = await self.db.update(FINDINGS_TABLE, match, data)
        return bool(rows)

    async def mark_in_progress(self, finding_id: str) -> bool:
        return await self._transition(
            finding_id, FindingStatus.IN_PROGRESS, FindingStatus.OPEN
        )

    async def mark_open(self, finding_id: str) -> bool:
        return await self._transition(
            finding_id, FindingStatus.OPEN, FindingStatus.IN_PROGRESS
        )

    async def mark_resolved(self, finding_id: str) -> bool:
        """Mark a finding fixed. Returns False when it does not exist."""
        return await self._transition(finding_id, FindingStatus.FIXED, None)

    async def list(self, flt: FindingFilter | None = None) -> list[Finding]:
        """List findings, newest first."""
        flt = flt or FindingFilter()
        parts = ["order=created_at.desc", f"limit={min(flt.limit, MAX_PAGE_SIZE)}"]
        if flt.category is not None:
            parts.append(f"category=eq.{flt.category.value}")
        if flt.severity is not None:
            parts.append(f"severity=eq.{flt.severity.value}")
        if flt.statuses:
            parts.append(f"status=in.({','.join(s.value for s in flt.statuses)})")
        if flt.since is not None:
            parts.append(f"created_at=gte.{query_ts(flt.since)}")
        rows = await self.db.query(FINDINGS_TABLE, "&".join(parts))
        return [Finding.from_dict(r) for r in rows]
