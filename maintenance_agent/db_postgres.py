"""asyncpg backend for self-hosted PostgreSQL (``DB_BACKEND=postgres``).

Requires the ``postgres`` extra. Statements are built by the pure
``build_*_sql`` functions below, which return ``(sql, values)`` pairs with
positional ``$n`` placeholders; the client only acquires a pooled
connection and runs them. PostgREST filters are parsed by
:mod:`maintenance_agent.query_filters`.
"""

import json
import re
from datetime import datetime
from typing import Any
from uuid import UUID

import asyncpg  # noqa: I001

from .config import PostgresConfig
from .errors import ConflictError
from .query_filters import Condition, parse_query_params

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)
_TIMESTAMP_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}")
_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_SQL_OPS = {"eq": "=", "neq": "<>", "gt": ">", "gte": ">=", "lt": "<", "lte": "<="}

Statement = tuple[str, list[Any]]


def _coerce_filter_value(val: str) -> Any:
    """Type a PostgREST filter literal for asyncpg.

    asyncpg binds parameters by type, so a uuid, timestamptz or integer
    column rejects a plain string.
    """
    lowered = val.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    if _UUID_RE.match(val):
        return UUID(val)
    if _TIMESTAMP_RE.match(val):
        return datetime.fromisoformat(val.replace("Z", "+00:00"))
    for cast in (int, float):
        try:
            return cast(val)
        except ValueError:
            continue
    return val


def _ident(name: str, *, qualified: bool = True) -> str:
    parts = name.split(".") if qualified else [name]
    if not all(_IDENT_RE.match(part) for part in parts):
        raise ValueError(f"Unsafe identifier: {name}")
    return name


def _projection(select: str) -> str:
    if select.strip() == "*":
        return "*"
    return ", ".join(_ident(col.strip()) for col in select.split(","))


def _bind(values: list[Any], value: Any) -> str:
    values.append(value)
    return f"${len(values)}"


def _condition_sql(cond: Condition, values: list[Any]) -> str:
    col = _ident(cond.column)
    if cond.op == "is_null":
        return f"{col} IS NULL"
    if cond.op == "not_null":
        return f"{col} IS NOT NULL"
    if cond.op == "in":
        binds = [_bind(values, _coerce_filter_value(raw)) for raw in cond.value]
        return f"{col} IN ({', '.join(binds)})"
    return f"{col} {_SQL_OPS[cond.op]} {_bind(values, _coerce_filter_value(cond.value))}"


def _match_sql(match: dict[str, Any], values: list[Any]) -> str:
    """Equality guard for update/delete; ``None`` means IS NULL."""
    if not match:
        raise ValueError("Refusing to touch every row: empty match")
    return " AND ".join(
        f"{_ident(col, qualified=False)} IS NULL"
        if val is None
        else f"{_ident(col, qualified=False)} = {_bind(values, val)}"
        for col, val in match.items()
    )


def build_select_sql(table: str, query_params: str | None, select: str = "*") -> Statement:
    """Translate a PostgREST query string into a parameterised SELECT."""
    parsed = parse_query_params(query_params)
    values: list[Any] = []

    clauses = [_condition_sql(c, values) for c in parsed.conditions]
    clauses += [
        "(" + " OR ".join(_condition_sql(c, values) for c in group) + ")"
        for group in parsed.any_of
    ]

    sql = f"SELECT {_projection(select)} FROM {_ident(table)}"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    if parsed.order:
        sql += " ORDER BY " + ", ".join(
            f"{_ident(col)} {'DESC' if desc else 'ASC'}" for col, desc in parsed.order
        )
    if parsed.limit is not None:
        sql += f" LIMIT {int(parsed.limit)}"
    return sql, values


def build_insert_sql(table: str, data: dict[str, Any], returning: bool) -> Statement:
    values: list[Any] = []
    columns = ", ".join(_ident(col, qualified=False) for col in data)
    binds = ", ".join(_bind(values, val) for val in data.values())
    sql = f"INSERT INTO {_ident(table)} ({columns}) VALUES ({binds})"
    return sql + (" RETURNING *" if returning else ""), values


def build_update_sql(
    table: str, match: dict[str, Any], data: dict[str, Any], returning: bool
) -> Statement:
    """Single-statement conditional UPDATE; the match acts as a compare-and-swap."""
    values: list[Any] = []
    assignments = ", ".join(
        f"{_ident(col, qualified=False)} = {_bind(values, val)}" for col, val in data.items()
    )
    where = _match_sql(match, values)
    sql = f"UPDATE {_ident(table)} SET {assignments} WHERE {where}"
    return sql + (" RETURNING *" if returning else ""), values


def build_delete_sql(table: str, match: dict[str, Any]) -> Statement:
    values: list[Any] = []
    return f"DELETE FROM {_ident(table)} WHERE {_match_sql(match, values)}", values


def _json_dumps(value: Any) -> str:
    return json.dumps(value, default=str)


async def _init_connection(conn: asyncpg.Connection) -> None:
    for typename in ("json", "jsonb"):
        await conn.set_type_codec(
            typename, encoder=_json_dumps, decoder=json.loads, schema="pg_catalog"
        )


def _row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
    return {k: str(v) if isinstance(v, UUID) else v for k, v in dict(row).items()}


class DirectPostgresClient:
    """DatabaseClient over an asyncpg connection pool."""

    def __init__(self, config: PostgresConfig | None = None):
        self._config = config or PostgresConfig()
        self._pool: asyncpg.Pool | None = None

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                dsn=self._config.dsn,
                min_size=self._config.pool_min,
                max_size=self._config.pool_max,
                init=_init_connection,
            )
        return self._pool

    async def _fetch(self, statement: Statement) -> list[dict[str, Any]]:
        sql, values = statement
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            try:
                rows = await conn.fetch(sql, *values)
            except asyncpg.UniqueViolationError as e:
                raise ConflictError(str(e)) from e
        return [_row_to_dict(row) for row in rows]

    async def rpc(self, function_name: str, params: dict[str, Any]) -> Any:
        """Call a stored function with named arguments."""
        values: list[Any] = []
        args = ", ".join(
            f"{_ident(name, qualified=False)} := {_bind(values, val)}"
            for name, val in params.items()
        )
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await conn.fetchval(f"SELECT {_ident(function_name)}({args})", *values)

    async def query(
        self,
        table: str,
        query_params: str | None = None,
        select: str = "*",
    ) -> list[dict[str, Any]]:
        return await self._fetch(build_select_sql(table, query_params, select))

    async def insert(
        self,
        table: str,
        data: dict[str, Any],
        return_data: bool = True,
    ) -> dict[str, Any]:
        rows = await self._fetch(build_insert_sql(table, data, returning=return_data))
        return rows[0] if rows else {}

    async def update(
        self,
        table: str,
        match: dict[str, Any],
        data: dict[str, Any],
        return_data: bool = True,
    ) -> list[dict[str, Any]]:
        return await self._fetch(build_update_sql(table, match, data, returning=return_data))

    async def delete(self, table: str, match: dict[str, Any]) -> None:
        await self._fetch(build_delete_sql(table, match))

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
