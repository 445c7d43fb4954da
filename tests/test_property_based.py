"""Property-based tests for task selection and claim invariants.

1. Selection agrees with the eligibility predicate, NULL schedules included
2. Selection order is (priority, created_at)
3. No double-claim: concurrent claims on one task have exactly one winner
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import hypothesis.strategies as st
from hypothesis import HealthCheck, given, settings

from maintenance_agent.config import Config
from maintenance_agent.context import EngineContext
from maintenance_agent.db_memory import InMemoryClient
from maintenance_agent.models import TaskStatus
from maintenance_agent.tasks import TASKS_TABLE, Task, TaskStore, is_eligible

from conftest import NOW, FrozenClock, task_row

# The autouse environment fixture is shared by every generated example.
PROPERTY_SETTINGS = settings(
    max_examples=100,
    suppress_health_check=[HealthCheck.function_scoped_fixture],
)

task_specs = st.lists(
    st.tuples(
        st.sampled_from(list(TaskStatus)),
        st.one_of(st.none(), st.integers(min_value=-120, max_value=120)),
        st.integers(min_value=1, max_value=5),
        st.integers(min_value=0, max_value=600),
    ),
    max_size=20,
)


def _context(db: InMemoryClient, invocation_id: str = "inv-1") -> EngineContext:
    return EngineContext(
        db=db,
        config=Config.from_env(),
        clock=FrozenClock(NOW),
        invocation_id=invocation_id,
    )


def _seed(specs) -> InMemoryClient:
    db = InMemoryClient()
    db.seed(
        TASKS_TABLE,
        [
            task_row(
                id=f"t{i:02d}",
                status=status.value,
                scheduled_for=(
                    None if offset is None else NOW + timedelta(minutes=offset)
                ),
                priority=priority,
                created_at=NOW - timedelta(minutes=age),
                # A fresh claim keeps in_progress rows out of stale reclaim.
                started_at=NOW if status is TaskStatus.IN_PROGRESS else None,
                claimed_by="other" if status is TaskStatus.IN_PROGRESS else None,
            )
            for i, (status, offset, priority, age) in enumerate(specs)
        ],
    )
    return db


class TestSelection:
    @PROPERTY_SETTINGS
    @given(specs=task_specs)
    def test_selection_matches_predicate(self, specs):
        db = _seed(specs)
        store = TaskStore(_context(db))

        selected = asyncio.run(
            store.select_eligible(limit=len(specs) + 1, stale_after=timedelta(days=1))
        )

        expected = {
            row["id"]
            for row in db.rows(TASKS_TABLE)
            if is_eligible(Task.from_dict(row), NOW)
        }
        assert {t.id for t in selected} == expected

    @PROPERTY_SETTINGS
    @given(specs=task_specs, limit=st.integers(min_value=1, max_value=8))
    def test_selection_order_and_limit(self, specs, limit):
        db = _seed(specs)
        store = TaskStore(_context(db))

        selected = asyncio.run(
            store.select_eligible(limit=limit, stale_after=timedelta(days=1))
        )

        assert len(selected) <= limit
        keys = [(t.priority, t.created_at) for t in selected]
        assert keys == sorted(keys)


class TestClaimExclusivity:
    @PROPERTY_SETTINGS
    @given(invocations=st.integers(min_value=2, max_value=8))
    def test_one_winner(self, invocations):
        db = _seed([(TaskStatus.PENDING, None, 3, 10)])
        candidate = Task.from_dict(db.rows(TASKS_TABLE)[0])

        async def race():
            return await asyncio.gather(
                *(
                    TaskStore(_context(db, f"inv-{n}")).claim(candidate, f"inv-{n}")
                    for n in range(invocations)
                )
            )

        results = asyncio.run(race())

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert db.rows(TASKS_TABLE)[0]["claimed_by"] == winners[0].claimed_by
