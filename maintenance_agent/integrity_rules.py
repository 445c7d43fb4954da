"""Declarative data-integrity checks and priority directives.

Both are YAML files validated against a JSON schema before use:

``integrity_checks.yaml``::

    checks:
      - name: orphaned_documents
        kind: orphan
        severity: critical
        table: documents
        column: folder_id
        parent_table: folders

``directives.yaml``::

    directives:
      - key: speed-up-search
        title: Bring search p95 under 2s
        priority: 2
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import yaml
from jsonschema import validate

from .models import Severity, parse_dt


CHECK_KINDS = ("orphan", "missing_timestamp", "endpoint")

# ---------------------------------------------------------------------------
# JSON Schemas
# ---------------------------------------------------------------------------

_IDENT = {"type": "string", "pattern": "^[A-Za-z_][A-Za-z0-9_]*$"}

INTEGRITY_CHECKS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["checks"],
    "properties": {
        "checks": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["name", "kind", "severity"],
                "properties": {
                    "name": {"type": "string", "minLength": 1},
                    "kind": {"type": "string", "enum": list(CHECK_KINDS)},
                    "severity": {"type": "string", "enum": [s.value for s in Severity]},
                    "table": _IDENT,
                    "column": _IDENT,
                    "key": _IDENT,
                    "parent_table": _IDENT,
                    "parent_column": _IDENT,
                    "relink_to": {"type": ["string", "integer"]},
                    "fallback_column": _IDENT,
                    "fallback_value": {"type": "string"},
                    "url": {"type": "string", "minLength": 1},
                    "expect_status": {
                        "type": "array",
                        "items": {"type": "integer"},
                    },
                    "limit": {"type": "integer", "minimum": 1},
                },
                "additionalProperties": False,
                "allOf": [
                    {
                        "if": {"properties": {"kind": {"const": "orphan"}}},
                        "then": {"required": ["table", "column", "parent_table"]},
                    },
                    {
                        "if": {"properties": {"kind": {"const": "missing_timestamp"}}},
                        "then": {"required": ["table", "column"]},
                    },
                    {
                        "if": {"properties": {"kind": {"const": "endpoint"}}},
                        "then": {"required": ["url"]},
                    },
                ],
            },
        },
    },
    "additionalProperties": False,
}

DIRECTIVES_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["directives"],
    "properties": {
        "directives": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["key", "title", "priority"],
                "properties": {
                    "key": {"type": "string", "pattern": "^[A-Za-z0-9_.-]+$"},
                    "title": {"type": "string", "minLength": 1},
                    "priority": {"type": "integer", "minimum": 1},
                    "description": {"type": "string"},
                    "location": {"type": "string"},
                    "scheduled_for": {},
                },
                "additionalProperties": False,
            },
        },
    },
    "additionalProperties": False,
}


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass
class IntegrityCheck:
    """One declarative relational consistency check."""

    name: str
    kind: str
    severity: Severity
    table: str | None = None
    column: str | None = None
    key: str = "id"
    parent_table: str | None = None
    parent_column: str = "id"
    relink_to: str | int | None = None
    fallback_column: str | None = None
    fallback_value: str = "1970-01-01T00:00:00+00:00"
    url: str | None = None
    expect_status: list[int] = field(default_factory=lambda: [200, 401, 403])
    limit: int = 1000

    @property
    def location(self) -> str:
        if self.kind == "endpoint":
            return self.url or ""
        return f"{self.table}.{self.column}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "severity": self.severity.value,
            "table": self.table,
            "column": self.column,
            "key": self.key,
            "parent_table": self.parent_table,
            "parent_column": self.parent_column,
            "relink_to": self.relink_to,
            "fallback_column": self.fallback_column,
            "fallback_value": self.fallback_value,
            "url": self.url,
            "expect_status": self.expect_status,
            "limit": self.limit,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IntegrityCheck:
        values = {k: v for k, v in data.items() if v is not None}
        values["severity"] = Severity(values["severity"])
        return cls(**values)


@dataclass
class PriorityDirective:
    """An externally maintained goal that seeds a task directly."""

    key: str
    title: str
    priority: int
    description: str = ""
    location: str = ""
    scheduled_for: datetime | None = None


# ---------------------------------------------------------------------------
# Loading + validation
# ---------------------------------------------------------------------------


def _load_yaml(path: Path, schema: dict[str, Any]) -> dict[str, Any]:
    with open(path) as fh:
        data = yaml.safe_load(fh) or {}
    validate(instance=data, schema=schema)
    return data


def load_integrity_checks(path: Path) -> list[IntegrityCheck]:
    """Load and validate an integrity checks file.

    Raises:
        FileNotFoundError: If *path* does not exist.
        jsonschema.ValidationError: If the data fails schema validation.
        ValueError: On duplicate check names.
    """
    data = _load_yaml(path, INTEGRITY_CHECKS_SCHEMA)
    checks = [IntegrityCheck.from_dict(c) for c in data["checks"]]
    names = [c.name for c in checks]
    duplicates = {n for n in names if names.count(n) > 1}
    if duplicates:
        raise ValueError(f"Duplicate integrity check names: {sorted(duplicates)}")
    return checks


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def load_directives(path: Path) -> list[PriorityDirective]:
    """Load and validate a directives (prioritized goals) file.

    YAML may yield naive timestamps; those are read as UTC.
    """
    data = _load_yaml(path, DIRECTIVES_SCHEMA)
    return [
        PriorityDirective(
            key=d["key"],
            title=d["title"],
            priority=d["priority"],
            description=d.get("description", ""),
            location=d.get("location", ""),
            scheduled_for=_aware(parse_dt(d.get("scheduled_for"))),
        )
        for d in data["directives"]
    ]


# ---------------------------------------------------------------------------
# Violation queries (shared by the validator and the auto-fix path)
# ---------------------------------------------------------------------------

_IN_CHUNK = 100
_SCAN_PAGE = 500


async def _unmatched(
    db: Any, check: IntegrityCheck, children: list[dict[str, Any]]
) -> list[dict[str, Any]]:
    referenced = sorted({str(row[check.column]) for row in children})
    present: set[str] = set()
    for start in range(0, len(referenced), _IN_CHUNK):
        chunk = referenced[start : start + _IN_CHUNK]
        parents = await db.query(
            check.parent_table,
            f"{check.parent_column}=in.({','.join(chunk)})",
            select=check.parent_column,
        )
        present.update(str(p[check.parent_column]) for p in parents)
    return [row for row in children if str(row[check.column]) not in present]


async def find_orphans(db: Any, check: IntegrityCheck) -> list[dict[str, Any]]:
    """Return up to ``check.limit`` child rows whose foreign key matches no parent.

    Children are read in key order one page at a time, resuming after the
    last key seen, until enough orphans are collected or the table ends.
    """
    orphans: list[dict[str, Any]] = []
    after: Any = None
    while len(orphans) < check.limit:
        params = f"{check.column}=not.is.null"
        if after is not None:
            params += f"&{check.key}=gt.{after}"
        children = await db.query(
            check.table,
            f"{params}&order={check.key}.asc&limit={_SCAN_PAGE}",
            select=f"{check.key},{check.column}",
        )
        if not children:
            break
        orphans.extend(await _unmatched(db, check, children))
        if len(children) < _SCAN_PAGE:
            break
        after = children[-1][check.key]
    return orphans[: check.limit]


async def _refetch(
    db: Any, check: IntegrityCheck, rows: list[dict[str, Any]]
) -> list[dict[str, Any]]:
    keys = [str(row[check.key]) for row in rows]
    current: list[dict[str, Any]] = []
    for start in range(0, len(keys), _IN_CHUNK):
        chunk = keys[start : start + _IN_CHUNK]
        current += await db.query(
            check.table,
            f"{check.key}=in.({','.join(chunk)})",
            select=f"{check.key},{check.column}",
        )
    return current


async def count_orphans_among(
    db: Any, check: IntegrityCheck, rows: list[dict[str, Any]]
) -> int:
    """Re-read *rows* by key and count those still orphaned; deleted rows are gone."""
    current = await _refetch(db, check, rows)
    linked = [row for row in current if row.get(check.column) is not None]
    return len(await _unmatched(db, check, linked))


async def count_missing_among(
    db: Any, check: IntegrityCheck, rows: list[dict[str, Any]]
) -> int:
    """Re-read *rows* by key and count those whose timestamp is still null."""
    current = await _refetch(db, check, rows)
    return sum(1 for row in current if row.get(check.column) is None)


async def find_missing_timestamps(db: Any, check: IntegrityCheck) -> list[dict[str, Any]]:
    """Return rows whose required timestamp column is null."""
    columns = [check.key]
    if check.fallback_column:
        columns.append(check.fallback_column)
    return await db.query(
        check.table,
        f"{check.column}=is.null&order={check.key}.asc&limit={check.limit}",
        select=",".join(columns),
    )
