"""Trigger receiver HTTP API.

Scheduled callers authenticate with ``Authorization: Bearer <secret>``.
Operators may instead send ``{"manual": true}``; manual runs are rate
limited per receiver process. Read-only views of findings, tasks, runs
and the latest report require the bearer secret.
"""

from __future__ import annotations

import hmac
import logging
import sys
import time
from collections.abc import Callable
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .audit import RunLedger
from .config import get_config
from .context import EngineContext
from .db import to_json_compatible
from .engine import TickResult, run_tick
from .errors import AuthError
from .findings import FindingFilter, FindingStore
from .models import Category, FindingStatus, Severity, TaskStatus
from .reports import ReportGenerator
from .tasks import TaskStore

logger = logging.getLogger(__name__)

API_VERSION = "0.1.0"

# =============================================================================
# Request models
# =============================================================================


class RunRequest(BaseModel):
    manual: bool = False


# =============================================================================
# Auth helpers
# =============================================================================


def bearer_matches(authorization: str | None, secret: str) -> bool:
    """Constant-time check of an ``Authorization: Bearer`` header."""
    if not secret or not authorization:
        return False
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return False
    return hmac.compare_digest(token.strip().encode(), secret.encode())


def resolve_trigger(authorization: str | None, manual: bool, secret: str) -> str:
    """Classify an invocation as scheduled or manual.

    Raises:
        AuthError: Neither a valid bearer credential nor the manual flag.
    """
    if bearer_matches(authorization, secret):
        return "scheduled"
    if manual:
        return "manual"
    raise AuthError("Missing or invalid trigger credential")


async def require_bearer(authorization: str | None = Header(None)) -> None:
    if not bearer_matches(authorization, get_config().trigger.secret):
        raise AuthError("Missing or invalid bearer token")


class ManualRateLimiter:
    """Allows one manual invocation per interval within this process."""

    def __init__(self, min_interval: float, clock: Callable[[], float] = time.monotonic):
        self.min_interval = min_interval
        self.clock = clock
        self._last: float | None = None

    def retry_after(self) -> float:
        """Seconds until the next manual run is allowed; 0 when allowed now."""
        if self._last is None:
            return 0.0
        return max(0.0, self.min_interval - (self.clock() - self._last))

    def acquire(self) -> bool:
        if self.retry_after() > 0:
            return False
        self._last = self.clock()
        return True


def _finding_view(finding: Any) -> dict[str, Any]:
    return {"id": finding.id, **to_json_compatible(finding.to_row())}


def _task_view(task: Any) -> dict[str, Any]:
    return {"id": task.id, **to_json_compatible(task.to_row())}


# =============================================================================
# Application factory
# =============================================================================


def create_trigger_api(
    context_factory: Callable[[], EngineContext] = EngineContext.from_globals,
) -> FastAPI:
    """Create the trigger receiver application.

    Args:
        context_factory: Builds a fresh EngineContext per request.
    """
    app = FastAPI(
        title="Maintenance Engine Trigger API",
        description="Invokes maintenance ticks and exposes their records",
        version=API_VERSION,
    )
    app.state.manual_limiter = ManualRateLimiter(
        get_config().trigger.manual_min_interval_seconds
    )

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
        return JSONResponse(
            status_code=401,
            content={"detail": str(exc)},
            headers={"WWW-Authenticate": "Bearer"},
        )

    # --------------------------------------------------------------------- #
    # TRIGGER
    # --------------------------------------------------------------------- #

    @app.post("/maintenance/run")
    async def run_maintenance(
        body: RunRequest | None = None,
        authorization: str | None = Header(None),
    ) -> dict[str, Any]:
        """Run one maintenance tick."""
        trigger = resolve_trigger(
            authorization,
            manual=bool(body and body.manual),
            secret=get_config().trigger.secret,
        )
        if trigger == "manual":
            limiter: ManualRateLimiter = app.state.manual_limiter
            if not limiter.acquire():
                raise HTTPException(
                    status_code=429,
                    detail="Manual trigger rate limit exceeded",
                    headers={"Retry-After": str(int(limiter.retry_after()) + 1)},
                )

        try:
            ctx = context_factory()
        except Exception as e:
            logger.error("Could not build engine context", exc_info=True)
            return TickResult(errors=[f"setup: {type(e).__name__}: {e}"]).to_dict()
        result = await run_tick(ctx, trigger=trigger)
        return result.to_dict()

    # --------------------------------------------------------------------- #
    # READ-ONLY VIEWS
    # --------------------------------------------------------------------- #

    @app.get("/maintenance/findings", dependencies=[Depends(require_bearer)])
    async def list_findings(
        status: FindingStatus | None = None,
        category: Category | None = None,
        severity: Severity | None = None,
        limit: int = Query(50, ge=1, le=200),
    ) -> dict[str, Any]:
        findings = await FindingStore(context_factory()).list(
            FindingFilter(
                category=category,
                severity=severity,
                statuses=[status] if status else None,
                limit=limit,
            )
        )
        return {"findings": [_finding_view(f) for f in findings]}

    @app.get("/maintenance/tasks", dependencies=[Depends(require_bearer)])
    async def list_tasks(
        status: TaskStatus | None = None,
        needs_review: bool | None = None,
        limit: int = Query(50, ge=1, le=200),
    ) -> dict[str, Any]:
        tasks = await TaskStore(context_factory()).list(
            statuses=[status] if status else None,
            needs_review=needs_review,
            limit=limit,
        )
        return {"tasks": [_task_view(t) for t in tasks]}

    @app.get("/maintenance/runs", dependencies=[Depends(require_bearer)])
    async def list_runs(limit: int = Query(20, ge=1, le=200)) -> dict[str, Any]:
        runs = await RunLedger(context_factory()).recent(limit=limit)
        return {
            "runs": [
                {
                    "id": r.id,
                    "invocation_id": r.invocation_id,
                    "trigger": r.trigger,
                    "tasks_processed": r.tasks_processed,
                    "findings_created": r.findings_created,
                    "duration_ms": r.duration_ms,
                    "errors": r.errors,
                    "success": r.success,
                    "created_at": r.created_at.isoformat() if r.created_at else None,
                }
                for r in runs
            ]
        }

    @app.get("/maintenance/reports/latest", dependencies=[Depends(require_bearer)])
    async def latest_report() -> dict[str, Any]:
        report = await ReportGenerator(context_factory(), sinks=[]).latest()
        if report is None:
            raise HTTPException(status_code=404, detail="No report generated yet")
        return {"id": report.id, **to_json_compatible(report.to_dict())}

    # --------------------------------------------------------------------- #
    # HEALTH
    # --------------------------------------------------------------------- #

    @app.get("/health")
    async def health() -> dict[str, Any]:
        cfg = get_config()
        return {
            "status": "ok",
            "enabled": cfg.trigger.enabled,
            "db_backend": cfg.database.backend,
            "version": API_VERSION,
        }

    return app


# =============================================================================
# MAIN
# =============================================================================


def main() -> None:
    """Entry point for the trigger receiver."""
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = get_config()
    host = config.api.host
    port = config.api.port

    # Allow CLI overrides
    for arg in sys.argv[1:]:
        if arg.startswith("--host="):
            host = arg.split("=", 1)[1]
        elif arg.startswith("--port="):
            port = int(arg.split("=", 1)[1])

    uvicorn.run(
        "maintenance_agent.trigger_api:create_trigger_api",
        factory=True,
        host=host,
        port=port,
        workers=config.api.workers,
        timeout_keep_alive=config.api.timeout_keep_alive,
        access_log=config.api.access_log,
    )


if __name__ == "__main__":
    main()
