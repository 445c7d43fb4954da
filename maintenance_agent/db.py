"""Storage layer for the maintenance engine.

Every component talks to a :class:`DatabaseClient`. Three backends exist,
chosen by ``DB_BACKEND``:

- ``supabase``: PostgREST over HTTP (:class:`SupabaseClient`, default)
- ``postgres``: asyncpg against a self-hosted database (needs the
  ``postgres`` extra)
- ``memory``: process-local tables, for dry runs and tests

Filters are always PostgREST query strings such as
``status=eq.pending&order=priority.asc``. The HTTP backend forwards them
as-is; the others parse them with :mod:`maintenance_agent.query_filters`.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable

import httpx

from .config import SupabaseConfig, get_config
from .errors import ConflictError


def to_json_compatible(value: Any) -> Any:
    """Convert datetimes and enums so a row can be sent as JSON."""
    if isinstance(value, dict):
        return {k: to_json_compatible(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json_compatible(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


@runtime_checkable
class DatabaseClient(Protocol):
    """What the engine needs from a backend.

    ``update`` is a conditional write: it touches only rows equal to every
    ``match`` column (``None`` meaning NULL) and returns them. Task claims
    depend on that being a single atomic statement.
    """

    async def rpc(self, function_name: str, params: dict[str, Any]) -> Any:
        """Call a stored PostgreSQL function."""
        ...

    async def query(
        self,
        table: str,
        query_params: str | None = None,
        select: str = "*",
    ) -> list[dict[str, Any]]:
        """Query a table with optional PostgREST filters."""
        ...

    async def insert(
        self,
        table: str,
        data: dict[str, Any],
        return_data: bool = True,
    ) -> dict[str, Any]:
        """Insert a row; raises ConflictError on a unique violation."""
        ...

    async def update(
        self,
        table: str,
        match: dict[str, Any],
        data: dict[str, Any],
        return_data: bool = True,
    ) -> list[dict[str, Any]]:
        """Update the rows equal to every ``match`` column."""
        ...

    async def delete(self, table: str, match: dict[str, Any]) -> None:
        """Delete the rows equal to every ``match`` column."""
        ...

    async def close(self) -> None:
        """Close the connection."""
        ...


def _match_filter(match: dict[str, Any]) -> str:
    parts = []
    for column, value in match.items():
        if value is None:
            parts.append(f"{column}=is.null")
        else:
            parts.append(f"{column}=eq.{to_json_compatible(value)}")
    return "&".join(parts)


class SupabaseClient:
    """PostgREST backend using a shared ``httpx.AsyncClient``."""

    def __init__(self, config: SupabaseConfig | None = None):
        self._config = config
        self._http: httpx.AsyncClient | None = None

    @property
    def config(self) -> SupabaseConfig:
        if self._config is None:
            self._config = get_config().supabase
        return self._config

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            key = self.config.service_key
            self._http = httpx.AsyncClient(
                base_url=f"{self.config.url}{self.config.rest_prefix}/",
                headers={"apikey": key, "Authorization": f"Bearer {key}"},
                timeout=30.0,
            )
        return self._http

    async def _send(
        self,
        method: str,
        path: str,
        *,
        body: Any = None,
        returning: bool = False,
    ) -> Any:
        """Issue one PostgREST request and decode the reply.

        A 409 (unique violation) becomes :class:`ConflictError`; any other
        error status raises ``httpx.HTTPStatusError``. Empty replies
        decode to None.
        """
        headers = {"Prefer": "return=representation"} if returning else {}
        response = await self._client().request(
            method,
            path,
            headers=headers,
            json=to_json_compatible(body) if body is not None else None,
        )
        if response.status_code == 409:
            raise ConflictError(f"{path.split('?', 1)[0]}: {response.text}")
        response.raise_for_status()
        if not response.content:
            return None
        return response.json()

    async def rpc(self, function_name: str, params: dict[str, Any]) -> Any:
        """Call a Supabase RPC function.

        Args:
            function_name: Name of the PostgreSQL function
            params: Parameters to pass to the function

        Returns:
            The function result (usually JSONB -> dict)

        Raises:
            httpx.HTTPStatusError: On API errors
        """
        return await self._send("POST", f"rpc/{function_name}", body=params)

    async def query(
        self,
        table: str,
        query_params: str | None = None,
        select: str = "*",
    ) -> list[dict[str, Any]]:
        """Query a table with optional filters.

        Args:
            table: Table name
            query_params: PostgREST query string (e.g., "status=eq.pending&order=priority.asc")
            select: Columns to select (default: "*")

        Returns:
            List of matching rows
        """
        path = f"{table}?select={select}"
        if query_params:
            path = f"{path}&{query_params}"
        return await self._send("GET", path) or []

    async def insert(
        self,
        table: str,
        data: dict[str, Any],
        return_data: bool = True,
    ) -> dict[str, Any]:
        """Insert a row into a table.

        Args:
            table: Table name
            data: Row data
            return_data: Whether to return the inserted row

        Returns:
            The inserted row (if return_data=True) or empty dict

        Raises:
            ConflictError: The row violates a unique index
        """
        rows = await self._send("POST", table, body=data, returning=return_data)
        return rows[0] if return_data and rows else {}

    async def update(
        self,
        table: str,
        match: dict[str, Any],
        data: dict[str, Any],
        return_data: bool = True,
    ) -> list[dict[str, Any]]:
        """Update matching rows in a table.

        Args:
            table: Table name
            match: Column values a row must equal; None matches NULL
            data: New values for matched rows
            return_data: Whether to return updated rows

        Returns:
            List of updated rows (if return_data=True); empty when
            nothing matched
        """
        rows = await self._send(
            "PATCH", f"{table}?{_match_filter(match)}", body=data, returning=return_data
        )
        return (rows or []) if return_data else []

    async def delete(self, table: str, match: dict[str, Any]) -> None:
        """Delete matching rows from a table.

        Args:
            table: Table name
            match: Column values a row must equal; None matches NULL
        """
        await self._send("DELETE", f"{table}?{_match_filter(match)}")

    async def close(self) -> None:
        """Close the shared HTTP client; the next call opens a new one."""
        if self._http is not None:
            await self._http.aclose()
            self._http = None


def create_db_client() -> DatabaseClient:
    """Build the backend named by ``DB_BACKEND``."""
    config = get_config()
    backend = config.database.backend

    if backend == "memory":
        from .db_memory import InMemoryClient

        return InMemoryClient()
    if backend == "supabase":
        return SupabaseClient(config.supabase)
    if backend == "postgres":
        try:
            from .db_postgres import DirectPostgresClient
        except ImportError as e:
            raise ImportError(
                "DB_BACKEND=postgres needs asyncpg: "
                "pip install 'maintenance-agent[postgres]'"
            ) from e
        return DirectPostgresClient(config.database.postgres)
    raise ValueError(f"Unknown database backend: {backend}")


_db: DatabaseClient | None = None


def get_db() -> DatabaseClient:
    """Process-wide client, created on first use."""
    global _db
    if _db is None:
        _db = create_db_client()
    return _db


async def close_db() -> None:
    global _db
    if _db is not None:
        await _db.close()
        _db = None


def reset_db() -> None:
    """Forget the process-wide client without closing it (tests)."""
    global _db
    _db = None
