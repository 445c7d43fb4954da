"""Auto-fix executor for data-integrity tasks.

Each fix is a reversible relational mutation: the affected rows' prior
values travel back in the task result under ``backup`` so an operator can
undo it. Violations are counted before and after every fix.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .context import EngineContext
from .errors import ExecutionError
from .integrity_rules import (
    IntegrityCheck,
    count_missing_among,
    count_orphans_among,
    find_missing_timestamps,
    find_orphans,
)
from .models import parse_dt
from .tasks import Task

logger = logging.getLogger(__name__)

_PAST_TENSE = {"delete": "Deleted", "relink": "Relinked"}


def check_from_task(task: Task) -> IntegrityCheck:
    """Recover the integrity check a task was scheduled from."""
    check = (task.input_data.get("evidence") or {}).get("check")
    if not check:
        raise ExecutionError(f"Task {task.id} carries no integrity check")
    return IntegrityCheck.from_dict(check)


class AutoFixExecutor:
    """Applies corrective mutations for integrity violations."""

    def __init__(self, ctx: EngineContext):
        self.ctx = ctx

    @property
    def db(self):
        return self.ctx.db

    async def run(self, task: Task) -> dict[str, Any]:
        """Fix the violation behind *task* and return the task result.

        Raises:
            ExecutionError: The violation kind has no reversible fix, or
                violations remain after the fix.
        """
        check = check_from_task(task)
        if check.kind == "orphan":
            result = await self.fix_orphans(check)
        elif check.kind == "missing_timestamp":
            result = await self.backfill_timestamps(check)
        else:
            raise ExecutionError(
                f"No reversible fix for {check.kind} check {check.name!r}; "
                "manual intervention required"
            )

        logger.info(
            "Auto-fix %s on %s: %d violation(s) before, %d after",
            check.name,
            check.location,
            result["before"],
            result["after"],
        )
        if result["after"] and result["after"] >= result["before"]:
            raise ExecutionError(
                f"Fix for {check.name!r} made no progress "
                f"({result['before']} violation(s) remain)",
                result=result,
            )
        return result

    async def _mutate_each(
        self,
        check: IntegrityCheck,
        action: str,
        rows: list[dict[str, Any]],
        backup: list[dict[str, Any]],
        mutate: Callable[[dict[str, Any]], Awaitable[None]],
    ) -> None:
        """Apply *mutate* row by row; a failure reports the rows already touched."""
        for done, row in enumerate(rows):
            try:
                await mutate(row)
            except Exception as e:
                raise ExecutionError(
                    f"{action} stopped after {done} of {len(rows)} row(s) "
                    f"in {check.location}: {e}",
                    # The failing row may have been written before the error.
                    result={
                        "action": action,
                        "fixed": done,
                        "before": len(rows),
                        "backup": backup[: done + 1],
                    },
                ) from e

    async def fix_orphans(self, check: IntegrityCheck) -> dict[str, Any]:
        """Delete orphaned child rows, or relink them when a target is declared."""
        orphans = await find_orphans(self.db, check)
        action = "relink" if check.relink_to is not None else "delete"

        async def mutate(row: dict[str, Any]) -> None:
            match = {check.key: row[check.key]}
            if check.relink_to is not None:
                await self.db.update(
                    check.table, match, {check.column: check.relink_to}, return_data=False
                )
            else:
                await self.db.delete(check.table, match)

        await self._mutate_each(check, action, orphans, orphans, mutate)

        remaining = await count_orphans_among(self.db, check, orphans)
        fixed = len(orphans) - remaining
        return {
            "summary": f"{_PAST_TENSE[action]} {fixed} orphaned rows in {check.location}",
            "action": action,
            "fixed": fixed,
            "before": len(orphans),
            "after": remaining,
            "backup": orphans,
        }

    async def backfill_timestamps(self, check: IntegrityCheck) -> dict[str, Any]:
        """Fill null timestamps from the fallback column or fallback constant."""
        missing = await find_missing_timestamps(self.db, check)
        default = parse_dt(check.fallback_value)
        backup = [{check.key: r[check.key], check.column: None} for r in missing]

        async def mutate(row: dict[str, Any]) -> None:
            value = row.get(check.fallback_column) if check.fallback_column else None
            await self.db.update(
                check.table,
                {check.key: row[check.key]},
                {check.column: value if value is not None else default},
                return_data=False,
            )

        await self._mutate_each(check, "backfill", missing, backup, mutate)

        remaining = await count_missing_among(self.db, check, missing)
        fixed = len(missing) - remaining
        return {
            "summary": f"Backfilled {fixed} rows missing {check.location}",
            "action": "backfill",
            "fixed": fixed,
            "before": len(missing),
            "after": remaining,
            "backup": backup,
        }
