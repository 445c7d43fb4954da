"""Tests for the task store: eligibility, claims, staleness and retries."""

import asyncio
from datetime import timedelta

import pytest

from maintenance_agent.models import TaskKind, TaskStatus
from maintenance_agent.tasks import TASKS_TABLE, Task, TaskStore, is_eligible, is_stale

from conftest import NOW, seed_tasks, task_row

STALE_AFTER = timedelta(minutes=15)


def _task(**overrides):
    values = {"title": "t", "kind": TaskKind.PROPOSAL, "priority": 3}
    values.update(overrides)
    return Task(**values)


class TestPredicates:
    def test_pending_without_schedule_is_eligible(self):
        assert is_eligible(_task(scheduled_for=None), NOW) is True

    def test_future_schedule_is_not_eligible(self):
        assert is_eligible(_task(scheduled_for=NOW + timedelta(seconds=1)), NOW) is False

    def test_schedule_at_now_is_eligible(self):
        assert is_eligible(_task(scheduled_for=NOW), NOW) is True

    def test_non_pending_is_never_eligible(self):
        assert is_eligible(_task(status=TaskStatus.IN_PROGRESS), NOW) is False

    def test_staleness(self):
        running = _task(status=TaskStatus.IN_PROGRESS, started_at=NOW - timedelta(minutes=16))
        fresh = _task(status=TaskStatus.IN_PROGRESS, started_at=NOW - timedelta(minutes=1))
        unknown = _task(status=TaskStatus.IN_PROGRESS, started_at=None)
        assert is_stale(running, NOW, STALE_AFTER) is True
        assert is_stale(fresh, NOW, STALE_AFTER) is False
        assert is_stale(unknown, NOW, STALE_AFTER) is True


class TestSelectEligible:
    @pytest.mark.asyncio
    async def test_null_scheduled_for_is_selected(self, ctx, memory_db):
        """Regression: absent scheduled_for must not compare as unknown."""
        seed_tasks(memory_db, task_row(id="t1", scheduled_for=None))

        selected = await TaskStore(ctx).select_eligible(5, STALE_AFTER)

        assert [t.id for t in selected] == ["t1"]

    @pytest.mark.asyncio
    async def test_created_task_runs_on_next_selection(self, ctx):
        store = TaskStore(ctx)
        created = await store.create(_task())

        selected = await store.select_eligible(5, STALE_AFTER)

        assert [t.id for t in selected] == [created.id]

    @pytest.mark.asyncio
    async def test_order_and_limit(self, ctx, memory_db):
        seed_tasks(
            memory_db,
            task_row(id="late-p1", priority=1, created_at=NOW - timedelta(minutes=1)),
            task_row(id="early-p1", priority=1, created_at=NOW - timedelta(minutes=9)),
            task_row(id="p3", priority=3),
            task_row(id="p2", priority=2),
            task_row(id="future", priority=1, scheduled_for=NOW + timedelta(hours=1)),
            task_row(id="done", priority=1, status="completed"),
        )

        selected = await TaskStore(ctx).select_eligible(3, STALE_AFTER)

        assert [t.id for t in selected] == ["early-p1", "late-p1", "p2"]

    @pytest.mark.asyncio
    async def test_stale_in_progress_is_selected_again(self, ctx, memory_db):
        seed_tasks(
            memory_db,
            task_row(
                id="stale",
                status="in_progress",
                claimed_by="dead-invocation",
                started_at=NOW - timedelta(minutes=30),
            ),
            task_row(
                id="running",
                status="in_progress",
                claimed_by="live-invocation",
                started_at=NOW - timedelta(minutes=2),
            ),
        )

        selected = await TaskStore(ctx).select_eligible(5, STALE_AFTER)

        assert [t.id for t in selected] == ["stale"]

    @pytest.mark.asyncio
    async def test_zero_limit(self, ctx, memory_db):
        seed_tasks(memory_db, task_row(id="t1"))
        assert await TaskStore(ctx).select_eligible(0, STALE_AFTER) == []


class TestClaim:
    @pytest.mark.asyncio
    async def test_claim_sets_owner(self, ctx, memory_db):
        seed_tasks(memory_db, task_row(id="t1"))
        store = TaskStore(ctx)
        [task] = await store.select_eligible(1, STALE_AFTER)

        claimed = await store.claim(task, "inv-1")

        assert claimed.status is TaskStatus.IN_PROGRESS
        assert claimed.claimed_by == "inv-1"
        assert claimed.started_at == NOW
        assert claimed.attempts == 0

    @pytest.mark.asyncio
    async def test_concurrent_claims_have_one_winner(self, ctx, make_ctx, memory_db):
        seed_tasks(memory_db, task_row(id="t1"))
        [task] = await TaskStore(ctx).select_eligible(1, STALE_AFTER)

        results = await asyncio.gather(
            TaskStore(make_ctx("inv-a")).claim(task, "inv-a"),
            TaskStore(make_ctx("inv-b")).claim(task, "inv-b"),
        )

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        [row] = memory_db.rows(TASKS_TABLE)
        assert row["claimed_by"] == winners[0].claimed_by

    @pytest.mark.asyncio
    async def test_stale_reclaim_counts_abandoned_attempt(self, ctx, memory_db):
        seed_tasks(
            memory_db,
            task_row(
                id="t1",
                status="in_progress",
                claimed_by="dead",
                started_at=NOW - timedelta(hours=1),
                attempts=1,
            ),
        )
        store = TaskStore(ctx)
        [task] = await store.select_eligible(1, STALE_AFTER)

        claimed = await store.claim(task, "inv-1")
        again = await store.claim(task, "inv-2")

        assert claimed.claimed_by == "inv-1"
        assert claimed.attempts == 2
        assert again is None


class TestFinish:
    @pytest.mark.asyncio
    async def test_complete(self, ctx, memory_db, clock):
        seed_tasks(memory_db, task_row(id="t1"))
        store = TaskStore(ctx)
        claimed = await store.claim((await store.get("t1")), "inv-1")
        clock.advance(seconds=2)

        done = await store.complete(claimed, {"summary": "ok"})

        assert done.status is TaskStatus.COMPLETED
        assert done.result == {"summary": "ok"}
        assert done.duration_ms == 2000

    @pytest.mark.asyncio
    async def test_fail_increments_attempts(self, ctx, memory_db):
        seed_tasks(memory_db, task_row(id="t1"))
        store = TaskStore(ctx)
        claimed = await store.claim((await store.get("t1")), "inv-1")

        failed = await store.fail(claimed, "boom", max_attempts=3)

        assert failed.status is TaskStatus.FAILED
        assert failed.attempts == 1
        assert failed.error_message == "boom"
        assert failed.needs_review is False
        assert failed.result == {"summary": "Failed on attempt 1"}

    @pytest.mark.asyncio
    async def test_fail_at_max_attempts_needs_review(self, ctx, memory_db):
        seed_tasks(memory_db, task_row(id="t1", attempts=2))
        store = TaskStore(ctx)
        claimed = await store.claim((await store.get("t1")), "inv-1")

        failed = await store.fail(claimed, "boom", max_attempts=3)

        assert failed.attempts == 3
        assert failed.needs_review is True

    @pytest.mark.asyncio
    async def test_finish_after_reclaim_is_discarded(self, ctx, memory_db):
        seed_tasks(memory_db, task_row(id="t1"))
        store = TaskStore(ctx)
        mine = await store.claim((await store.get("t1")), "inv-1")
        await memory_db.update(TASKS_TABLE, {"id": "t1"}, {"claimed_by": "inv-2"})

        assert await store.complete(mine, {"summary": "late"}) is None
        assert (await store.get("t1")).status is TaskStatus.IN_PROGRESS


class TestRequeueFailed:
    @pytest.mark.asyncio
    async def test_requeues_only_retryable(self, ctx, memory_db):
        seed_tasks(
            memory_db,
            task_row(id="retry", status="failed", attempts=1, claimed_by="x"),
            task_row(id="exhausted", status="failed", attempts=3, needs_review=True),
            task_row(id="done", status="completed", attempts=1),
        )
        store = TaskStore(ctx)

        count = await store.requeue_failed(max_attempts=3, backoff=timedelta(minutes=30))

        assert count == 1
        retry = await store.get("retry")
        assert retry.status is TaskStatus.PENDING
        assert retry.scheduled_for == NOW + timedelta(minutes=30)
        assert retry.claimed_by is None
        assert (await store.get("exhausted")).status is TaskStatus.FAILED

    @pytest.mark.asyncio
    async def test_find_existing(self, ctx, memory_db):
        seed_tasks(
            memory_db,
            task_row(id="t1", finding_id="f1", status="failed"),
            task_row(id="t2", directive_key="goal", status="pending"),
        )
        store = TaskStore(ctx)

        assert (await store.find_existing(finding_id="f1")).id == "t1"
        assert await store.find_existing(finding_id="f1", unfinished_only=True) is None
        assert (await store.find_existing(directive_key="goal")).id == "t2"
        with pytest.raises(ValueError):
            await store.find_existing()


class TestPruneCompleted:
    @pytest.mark.asyncio
    async def test_prunes_only_old_completed_tasks(self, ctx, memory_db):
        old = NOW - timedelta(days=40)
        seed_tasks(
            memory_db,
            task_row(id="old-done", status=TaskStatus.COMPLETED.value, completed_at=old),
            task_row(id="old-failed", status=TaskStatus.FAILED.value, completed_at=old),
            task_row(
                id="recent-done",
                status=TaskStatus.COMPLETED.value,
                completed_at=NOW - timedelta(days=1),
            ),
        )

        pruned = await TaskStore(ctx).prune_completed(NOW - timedelta(days=30))

        assert pruned == 1
        assert sorted(r["id"] for r in memory_db.rows(TASKS_TABLE)) == [
            "old-failed",
            "recent-done",
        ]
