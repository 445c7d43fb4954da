"""In-process database backend.

Used for dry runs (``DB_BACKEND=memory``) and tests. Filters follow the
same PostgREST subset as the other backends and keep SQL's three-valued
comparison semantics: comparing against a NULL column is never true.

Every operation completes without yielding to the event loop, so a
conditional ``update`` is atomic with respect to other coroutines, which
is the property the task claim relies on.
"""

from __future__ import annotations

import copy
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import uuid4

from .errors import ConflictError
from .models import FindingStatus, parse_dt
from .query_filters import Condition, parse_query_params


@dataclass(frozen=True)
class UniqueIndex:
    """A (possibly partial) unique index over one table."""

    table: str
    columns: tuple[str, ...]
    where: Callable[[dict[str, Any]], bool] | None = None

    def key(self, row: dict[str, Any]) -> tuple[Any, ...] | None:
        if self.where is not None and not self.where(row):
            return None
        return tuple(row.get(c) for c in self.columns)


# Mirror the partial unique indexes in sql/001_maintenance_engine.sql.
UNRESOLVED_FINGERPRINT_INDEX = UniqueIndex(
    table="maintenance_findings",
    columns=("fingerprint",),
    where=lambda row: row.get("status") != FindingStatus.FIXED.value,
)

ONE_TASK_PER_FINDING_INDEX = UniqueIndex(
    table="maintenance_tasks",
    columns=("finding_id",),
    where=lambda row: row.get("finding_id") is not None,
)

ONE_TASK_PER_DIRECTIVE_INDEX = UniqueIndex(
    table="maintenance_tasks",
    columns=("directive_key",),
    where=lambda row: row.get("directive_key") is not None,
)

DEFAULT_UNIQUE_INDEXES = (
    UNRESOLVED_FINGERPRINT_INDEX,
    ONE_TASK_PER_FINDING_INDEX,
    ONE_TASK_PER_DIRECTIVE_INDEX,
)


def _coerce(row_value: Any, raw: str) -> Any:
    if isinstance(row_value, bool):
        return raw.lower() == "true"
    if isinstance(row_value, (int, float)):
        return float(raw)
    if isinstance(row_value, datetime):
        return parse_dt(raw)
    return raw


def _compare(row_value: Any, op: str, raw: str) -> bool:
    if row_value is None:
        # NULL compared with anything is unknown, which filters the row out.
        return False
    other = _coerce(row_value, raw)
    if op == "eq":
        return row_value == other
    if op == "neq":
        return row_value != other
    if op == "gt":
        return row_value > other
    if op == "gte":
        return row_value >= other
    if op == "lt":
        return row_value < other
    if op == "lte":
        return row_value <= other
    raise ValueError(f"Unsupported operator: {op}")


def _matches(row: dict[str, Any], cond: Condition) -> bool:
    value = row.get(cond.column)
    if cond.op == "is_null":
        return value is None
    if cond.op == "not_null":
        return value is not None
    if cond.op == "in":
        if value is None:
            return False
        return any(value == _coerce(value, raw) for raw in cond.value)
    return _compare(value, cond.op, cond.value)


def _sort_key(value: Any) -> tuple[int, Any]:
    # PostgreSQL sorts NULLs last in ascending order.
    return (1, 0) if value is None else (0, value)


class InMemoryClient:
    """DatabaseClient implementation backed by Python dictionaries."""

    def __init__(self, unique_indexes: list[UniqueIndex] | None = None):
        self._tables: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self._unique = (
            unique_indexes
            if unique_indexes is not None
            else list(DEFAULT_UNIQUE_INDEXES)
        )

    # ------------------------------------------------------------------ #
    # Helpers for seeding and inspection
    # ------------------------------------------------------------------ #

    def seed(self, table: str, rows: list[dict[str, Any]]) -> None:
        for row in rows:
            stored = copy.deepcopy(row)
            stored.setdefault("id", str(uuid4()))
            self._tables[table].append(stored)

    def rows(self, table: str) -> list[dict[str, Any]]:
        return copy.deepcopy(self._tables[table])

    def _check_unique(
        self, table: str, candidate: dict[str, Any], ignore: dict[str, Any] | None = None
    ) -> None:
        for index in self._unique:
            if index.table != table:
                continue
            key = index.key(candidate)
            if key is None:
                continue
            for existing in self._tables[table]:
                if existing is ignore:
                    continue
                if index.key(existing) == key:
                    raise ConflictError(
                        f"{table}: duplicate key {dict(zip(index.columns, key))}"
                    )

    @staticmethod
    def _match(row: dict[str, Any], match: dict[str, Any]) -> bool:
        return all(row.get(k) == v for k, v in match.items())

    # ------------------------------------------------------------------ #
    # DatabaseClient protocol
    # ------------------------------------------------------------------ #

    async def rpc(self, function_name: str, params: dict[str, Any]) -> Any:
        raise NotImplementedError(
            f"Stored function {function_name!r} is not available in the memory backend"
        )

    async def query(
        self,
        table: str,
        query_params: str | None = None,
        select: str = "*",
    ) -> list[dict[str, Any]]:
        parsed = parse_query_params(query_params)
        rows = [
            row
            for row in self._tables[table]
            if all(_matches(row, c) for c in parsed.conditions)
            and all(any(_matches(row, c) for c in group) for group in parsed.any_of)
        ]
        # Stable multi-key sort: apply keys from last to first.
        for column, desc in reversed(parsed.order):
            rows.sort(key=lambda r, col=column: _sort_key(r.get(col)), reverse=desc)
        if parsed.limit is not None:
            rows = rows[: parsed.limit]

        if select.strip() != "*":
            columns = [c.strip() for c in select.split(",")]
            return [{c: copy.deepcopy(r.get(c)) for c in columns} for r in rows]
        return copy.deepcopy(rows)

    async def insert(
        self,
        table: str,
        data: dict[str, Any],
        return_data: bool = True,
    ) -> dict[str, Any]:
        row = copy.deepcopy(data)
        row.setdefault("id", str(uuid4()))
        self._check_unique(table, row)
        self._tables[table].append(row)
        return copy.deepcopy(row) if return_data else {}

    async def update(
        self,
        table: str,
        match: dict[str, Any],
        data: dict[str, Any],
        return_data: bool = True,
    ) -> list[dict[str, Any]]:
        updated = []
        for row in self._tables[table]:
            if not self._match(row, match):
                continue
            candidate = {**row, **copy.deepcopy(data)}
            self._check_unique(table, candidate, ignore=row)
            row.update(copy.deepcopy(data))
            updated.append(copy.deepcopy(row))
        return updated if return_data else []

    async def delete(self, table: str, match: dict[str, Any]) -> None:
        self._tables[table] = [
            row for row in self._tables[table] if not self._match(row, match)
        ]

    async def close(self) -> None:
        return None
