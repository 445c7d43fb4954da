"""Tests for the in-memory database backend."""

from datetime import timedelta

import pytest

from maintenance_agent.db import DatabaseClient
from maintenance_agent.db_memory import InMemoryClient, UniqueIndex
from maintenance_agent.errors import ConflictError

from conftest import NOW


@pytest.fixture
def db():
    client = InMemoryClient()
    client.seed(
        "items",
        [
            {"id": "a", "status": "pending", "priority": 2, "due": None, "flag": False},
            {"id": "b", "status": "pending", "priority": 1, "due": NOW, "flag": True},
            {"id": "c", "status": "done", "priority": 3, "due": NOW + timedelta(days=1), "flag": False},
        ],
    )
    return client


def test_implements_protocol():
    assert isinstance(InMemoryClient(), DatabaseClient)


class TestQuery:
    @pytest.mark.asyncio
    async def test_null_never_satisfies_comparison(self, db):
        rows = await db.query("items", "due=lte.2030-01-01T00:00:00.000000Z")
        assert {r["id"] for r in rows} == {"b", "c"}

    @pytest.mark.asyncio
    async def test_or_group_admits_nulls_explicitly(self, db):
        rows = await db.query(
            "items",
            "status=eq.pending&or=(due.is.null,due.lte.2026-03-02T12:00:00.000000Z)",
        )
        assert {r["id"] for r in rows} == {"a", "b"}

    @pytest.mark.asyncio
    async def test_order_limit_and_select(self, db):
        rows = await db.query("items", "order=priority.asc&limit=2", select="id,priority")
        assert rows == [{"id": "b", "priority": 1}, {"id": "a", "priority": 2}]

    @pytest.mark.asyncio
    async def test_nulls_sort_last_ascending(self, db):
        rows = await db.query("items", "order=due.asc")
        assert [r["id"] for r in rows] == ["b", "c", "a"]

    @pytest.mark.asyncio
    async def test_boolean_and_in_filters(self, db):
        assert [r["id"] for r in await db.query("items", "flag=eq.true")] == ["b"]
        rows = await db.query("items", "id=in.(a,c)&order=id.asc")
        assert [r["id"] for r in rows] == ["a", "c"]

    @pytest.mark.asyncio
    async def test_returns_copies(self, db):
        rows = await db.query("items", "id=eq.a")
        rows[0]["status"] = "mutated"
        assert (await db.query("items", "id=eq.a"))[0]["status"] == "pending"

    @pytest.mark.asyncio
    async def test_unknown_table_is_empty(self, db):
        assert await db.query("nope") == []


class TestMutations:
    @pytest.mark.asyncio
    async def test_insert_assigns_id(self, db):
        row = await db.insert("items", {"status": "pending"})
        assert row["id"]
        assert len(db.rows("items")) == 4

    @pytest.mark.asyncio
    async def test_conditional_update_is_compare_and_swap(self, db):
        first = await db.update("items", {"id": "a", "status": "pending"}, {"status": "done"})
        second = await db.update("items", {"id": "a", "status": "pending"}, {"status": "done"})
        assert len(first) == 1
        assert first[0]["status"] == "done"
        assert second == []

    @pytest.mark.asyncio
    async def test_update_matches_none(self, db):
        rows = await db.update("items", {"due": None}, {"flag": True})
        assert [r["id"] for r in rows] == ["a"]

    @pytest.mark.asyncio
    async def test_delete(self, db):
        await db.delete("items", {"status": "pending"})
        assert [r["id"] for r in db.rows("items")] == ["c"]

    @pytest.mark.asyncio
    async def test_rpc_not_supported(self, db):
        with pytest.raises(NotImplementedError):
            await db.rpc("claim_task", {})


class TestUniqueIndexes:
    @pytest.mark.asyncio
    async def test_partial_index_rejects_duplicate_unresolved_fingerprint(self):
        db = InMemoryClient()
        await db.insert("maintenance_findings", {"fingerprint": "fp", "status": "open"})
        with pytest.raises(ConflictError):
            await db.insert(
                "maintenance_findings", {"fingerprint": "fp", "status": "in_progress"}
            )

    @pytest.mark.asyncio
    async def test_fixed_rows_are_outside_the_index(self):
        db = InMemoryClient()
        row = await db.insert("maintenance_findings", {"fingerprint": "fp", "status": "open"})
        await db.update("maintenance_findings", {"id": row["id"]}, {"status": "fixed"})
        await db.insert("maintenance_findings", {"fingerprint": "fp", "status": "open"})
        assert len(db.rows("maintenance_findings")) == 2

    @pytest.mark.asyncio
    async def test_custom_index_applies_to_updates(self):
        db = InMemoryClient(unique_indexes=[UniqueIndex("t", ("name",))])
        await db.insert("t", {"id": "1", "name": "x"})
        await db.insert("t", {"id": "2", "name": "y"})
        with pytest.raises(ConflictError):
            await db.update("t", {"id": "2"}, {"name": "x"})

    @pytest.mark.asyncio
    async def test_one_task_per_finding_and_directive(self):
        db = InMemoryClient()
        await db.insert("maintenance_tasks", {"finding_id": "f1", "directive_key": None})
        await db.insert("maintenance_tasks", {"finding_id": None, "directive_key": "goal"})
        await db.insert("maintenance_tasks", {"finding_id": None, "directive_key": None})
        await db.insert("maintenance_tasks", {"finding_id": None, "directive_key": None})

        with pytest.raises(ConflictError):
            await db.insert("maintenance_tasks", {"finding_id": "f1"})
        with pytest.raises(ConflictError):
            await db.insert("maintenance_tasks", {"directive_key": "goal"})
        assert len(db.rows("maintenance_tasks")) == 4
