"""PostgREST query-string parsing shared by the non-HTTP backends.

Services build PostgREST filters (``status=eq.pending&order=priority.asc``)
once; the Supabase backend forwards them verbatim while the asyncpg and
in-memory backends parse them here.

Supported subset:
    col=eq.v / neq / gt / gte / lt / lte      comparison
    col=in.(a,b,c)                            membership
    col=is.null / col=not.is.null             null tests
    or=(col.op.v,col.is.null)                 disjunction group
    order=col.asc,col2.desc                   ordering
    limit=N                                   row cap
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

COMPARISON_OPS = ("eq", "neq", "gt", "gte", "lt", "lte")


@dataclass
class Condition:
    """A single column predicate."""

    column: str
    op: str  # one of COMPARISON_OPS, "in", "is_null", "not_null"
    value: Any = None  # str for comparisons, list[str] for "in"


@dataclass
class ParsedQuery:
    """Structured form of a PostgREST query string."""

    conditions: list[Condition] = field(default_factory=list)
    any_of: list[list[Condition]] = field(default_factory=list)
    order: list[tuple[str, bool]] = field(default_factory=list)  # (column, desc)
    limit: int | None = None


def query_ts(value: datetime) -> str:
    """Format a timestamp for a query string.

    Uses a ``Z`` suffix so no ``+`` ever reaches the URL, where PostgREST
    would decode it as a space.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _split_top_level(text: str) -> list[str]:
    """Split on commas that are not nested inside parentheses."""
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    for ch in text:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        if ch == "," and depth == 0:
            parts.append("".join(current))
            current = []
            continue
        current.append(ch)
    if current:
        parts.append("".join(current))
    return parts


def _parse_operator(column: str, expr: str) -> Condition:
    if expr == "is.null":
        return Condition(column, "is_null")
    if expr == "not.is.null":
        return Condition(column, "not_null")
    if expr.startswith("in."):
        raw = expr[3:].strip("()")
        values = [v.strip().strip('"') for v in raw.split(",") if v.strip()]
        return Condition(column, "in", values)
    op, _, value = expr.partition(".")
    if op not in COMPARISON_OPS:
        raise ValueError(f"Unsupported filter operator: {op!r} on {column}")
    return Condition(column, op, value)


def _parse_or_group(body: str) -> list[Condition]:
    group: list[Condition] = []
    for item in _split_top_level(body.strip()[1:-1]):
        column, _, expr = item.partition(".")
        group.append(_parse_operator(column, expr))
    return group


def parse_query_params(query_params: str | None) -> ParsedQuery:
    """Parse a PostgREST query string into a :class:`ParsedQuery`."""
    parsed = ParsedQuery()
    if not query_params:
        return parsed

    for part in query_params.split("&"):
        if not part:
            continue
        key, _, expr = part.partition("=")
        if key == "order":
            for item in expr.split(","):
                column, _, direction = item.partition(".")
                parsed.order.append((column, direction == "desc"))
        elif key == "limit":
            parsed.limit = int(expr)
        elif key == "or":
            parsed.any_of.append(_parse_or_group(expr))
        elif key == "select":
            continue
        else:
            parsed.conditions.append(_parse_operator(key, expr))
    return parsed
