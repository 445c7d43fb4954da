"""Pytest fixtures for maintenance engine tests."""

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import respx

from maintenance_agent.config import Config, SupabaseConfig, reset_config
from maintenance_agent.context import EngineContext
from maintenance_agent.db import SupabaseClient, reset_db
from maintenance_agent.db_memory import InMemoryClient
from maintenance_agent.findings import Finding
from maintenance_agent.models import Category, Severity, TaskKind, TaskStatus
from maintenance_agent.tasks import TASKS_TABLE

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)
TRIGGER_SECRET = "test-trigger-secret"

# =============================================================================
# Environment Setup
# =============================================================================


@pytest.fixture(autouse=True)
def setup_env(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("SUPABASE_URL", "https://test.supabase.co")
    monkeypatch.setenv("SUPABASE_SERVICE_KEY", "test-service-key")
    monkeypatch.setenv("DB_BACKEND", "memory")
    monkeypatch.setenv("MAINTENANCE_TRIGGER_SECRET", TRIGGER_SECRET)
    monkeypatch.delenv("MAINTENANCE_ENABLED", raising=False)
    monkeypatch.delenv("MAINTENANCE_DIRECTIVES_PATH", raising=False)
    monkeypatch.delenv("REPORT_WEBHOOK_URL", raising=False)
    monkeypatch.delenv("REQUEUE_FAILED", raising=False)
    monkeypatch.delenv("TASK_SEVERITY_THRESHOLD", raising=False)
    reset_config()
    reset_db()

    # Reset global state after each test
    yield
    reset_config()
    reset_db()


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture
def config():
    """Configuration loaded from the test environment."""
    return Config.from_env()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def memory_db():
    return InMemoryClient()


@pytest.fixture
def ctx(memory_db, config, clock):
    """Engine context over the in-memory store with a frozen clock."""
    return EngineContext(db=memory_db, config=config, clock=clock, invocation_id="inv-1")


@pytest.fixture
def make_ctx(memory_db, config, clock):
    """Build additional contexts sharing the store, e.g. overlapping invocations."""

    def _make(invocation_id: str) -> EngineContext:
        return EngineContext(
            db=memory_db, config=config, clock=clock, invocation_id=invocation_id
        )

    return _make


# =============================================================================
# Supabase
# =============================================================================


@pytest.fixture
def db_client():
    """Get a Supabase client configured for testing."""
    return SupabaseClient(
        SupabaseConfig(url="https://test.supabase.co", service_key="test-service-key")
    )


@pytest.fixture
def mock_supabase():
    """Mock Supabase API responses."""
    with respx.mock(assert_all_called=False) as respx_mock:
        yield respx_mock


# =============================================================================
# Builders
# =============================================================================


def make_finding(**overrides: Any) -> Finding:
    values: dict[str, Any] = {
        "category": Category.ERROR,
        "severity": Severity.HIGH,
        "description": "Recurring server error: upstream timeout",
        "location": "/api/chat",
        "detection_method": "error_monitoring",
    }
    values.update(overrides)
    return Finding(**values)


def task_row(**overrides: Any) -> dict[str, Any]:
    """A raw maintenance_tasks row suitable for InMemoryClient.seed."""
    row: dict[str, Any] = {
        "title": "Address: something",
        "kind": TaskKind.PROPOSAL.value,
        "priority": 3,
        "status": TaskStatus.PENDING.value,
        "finding_id": None,
        "directive_key": None,
        "input_data": {},
        "scheduled_for": None,
        "attempts": 0,
        "claimed_by": None,
        "started_at": None,
        "completed_at": None,
        "result": None,
        "error_message": None,
        "needs_review": False,
        "created_at": NOW - timedelta(hours=1),
    }
    row.update(overrides)
    return row


def seed_tasks(db: InMemoryClient, *rows: dict[str, Any]) -> None:
    db.seed(TASKS_TABLE, list(rows))


class YieldingClient:
    """Wraps a store so every call yields to the event loop first.

    Lets overlapping invocations interleave between a read and the write
    that depends on it. Set ``fail_query_on`` to a substring of a query
    string to make that query raise.
    """

    def __init__(self, inner: InMemoryClient, fail_query_on: str | None = None):
        self.inner = inner
        self.fail_query_on = fail_query_on

    async def rpc(self, function_name: str, params: dict[str, Any]) -> Any:
        await asyncio.sleep(0)
        return await self.inner.rpc(function_name, params)

    async def query(
        self, table: str, query_params: str | None = None, select: str = "*"
    ) -> list[dict[str, Any]]:
        await asyncio.sleep(0)
        if self.fail_query_on and self.fail_query_on in (query_params or ""):
            raise ConnectionError(f"{table} unavailable")
        return await self.inner.query(table, query_params, select)

    async def insert(
        self, table: str, data: dict[str, Any], return_data: bool = True
    ) -> dict[str, Any]:
        await asyncio.sleep(0)
        return await self.inner.insert(table, data, return_data)

    async def update(
        self,
        table: str,
        match: dict[str, Any],
        data: dict[str, Any],
        return_data: bool = True,
    ) -> list[dict[str, Any]]:
        await asyncio.sleep(0)
        return await self.inner.update(table, match, data, return_data)

    async def delete(self, table: str, match: dict[str, Any]) -> None:
        await asyncio.sleep(0)
        await self.inner.delete(table, match)

    async def close(self) -> None:
        await self.inner.close()
