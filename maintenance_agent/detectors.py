"""Detector set: pluggable scanners that turn observations into Findings.

Every detector exposes a single ``scan(ctx)`` capability returning either
``ScanOk`` with candidate findings or ``ScanFailed`` with a DetectorError.
Detectors only read; persisting what they find is :func:`detect`'s job.

They run sequentially in a fixed order (errors, then performance, then
data integrity), each under its own timeout. A detector that times out or
raises produces one ``error`` finding and the run moves on.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol, runtime_checkable

import httpx

from .context import EngineContext
from .errors import DetectorError
from .findings import Finding, FindingStore
from .integrity_rules import (
    IntegrityCheck,
    find_missing_timestamps,
    find_orphans,
    load_integrity_checks,
)
from .models import Category, Severity
from .query_filters import query_ts

logger = logging.getLogger(__name__)

PATTERN_LENGTH = 100
KNOWN_TRANSIENT_PATTERNS = (
    "timeout",
    "504",
    "Gateway Timeout",
    "ECONNREFUSED",
    "ETIMEDOUT",
)
DETECTOR_FAILURE_METHOD = "detector_failure"


# ---------------------------------------------------------------------------
# Scan results
# ---------------------------------------------------------------------------


@dataclass
class ScanOk:
    """A detector completed and produced zero or more candidate findings."""

    findings: list[Finding] = field(default_factory=list)


@dataclass
class ScanFailed:
    """A detector raised or timed out."""

    error: DetectorError


ScanResult = ScanOk | ScanFailed


@runtime_checkable
class Detector(Protocol):
    """A scanner producing candidate findings. Must not mutate state."""

    name: str

    async def scan(self, ctx: EngineContext) -> ScanResult: ...


# ---------------------------------------------------------------------------
# Log source
# ---------------------------------------------------------------------------


class LogSource(Protocol):
    """Read-only access to recent API request logs.

    Rows carry ``endpoint``, ``status_code``, ``response_time_ms``,
    ``error_message`` and ``created_at``.
    """

    async def recent_requests(
        self, ctx: EngineContext, since: datetime
    ) -> list[dict[str, Any]]: ...


class TableLogSource:
    """LogSource reading an ``api_logs`` table through the relational store."""

    def __init__(self, table: str = "api_logs", limit: int = 5000):
        self.table = table
        self.limit = limit

    async def recent_requests(
        self, ctx: EngineContext, since: datetime
    ) -> list[dict[str, Any]]:
        return await ctx.db.query(
            self.table,
            f"created_at=gte.{query_ts(since)}&order=created_at.desc&limit={self.limit}",
        )


def _window_start(ctx: EngineContext) -> datetime:
    return ctx.now() - timedelta(minutes=ctx.config.detectors.error_window_minutes)


# ---------------------------------------------------------------------------
# Reference detectors
# ---------------------------------------------------------------------------


class ErrorMonitor:
    """Groups recent server errors by message pattern."""

    name = "error_monitor"

    def __init__(self, log_source: LogSource | None = None):
        self.log_source = log_source or TableLogSource()

    async def scan(self, ctx: EngineContext) -> ScanResult:
        cfg = ctx.config.detectors
        rows = await self.log_source.recent_requests(ctx, _window_start(ctx))

        groups: dict[str, list[dict[str, Any]]] = defaultdict(list)
        for row in rows:
            status = row.get("status_code")
            if status is None or int(status) < 500:
                continue
            message = row.get("error_message") or f"HTTP {status}"
            groups[message[:PATTERN_LENGTH]].append(row)

        findings = []
        for pattern, occurrences in groups.items():
            count = len(occurrences)
            endpoints = Counter(r.get("endpoint") or "unknown" for r in occurrences)
            transient = [
                p for p in KNOWN_TRANSIENT_PATTERNS if p.lower() in pattern.lower()
            ]
            findings.append(
                Finding(
                    category=Category.ERROR,
                    severity=(
                        Severity.HIGH
                        if count > cfg.error_high_threshold
                        else Severity.MEDIUM
                    ),
                    description=f"Recurring server error: {pattern}",
                    location=endpoints.most_common(1)[0][0],
                    detection_method="error_monitoring",
                    evidence={
                        "pattern": pattern,
                        "count": count,
                        "window_minutes": cfg.error_window_minutes,
                        "endpoints": dict(endpoints),
                        "known_transient": transient,
                    },
                )
            )
        return ScanOk(findings)


def percentile(values: list[float], pct: float) -> float:
    """Nearest-rank percentile of *values* (which must be non-empty)."""
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100 * len(ordered)))
    return ordered[rank - 1]


class PerformanceAnalyzer:
    """Flags endpoints whose latency exceeds the slow threshold."""

    name = "performance_analyzer"

    def __init__(self, log_source: LogSource | None = None):
        self.log_source = log_source or TableLogSource()

    async def scan(self, ctx: EngineContext) -> ScanResult:
        cfg = ctx.config.detectors
        rows = await self.log_source.recent_requests(ctx, _window_start(ctx))

        latencies: dict[str, list[float]] = defaultdict(list)
        for row in rows:
            if row.get("response_time_ms") is None or not row.get("endpoint"):
                continue
            latencies[row["endpoint"]].append(float(row["response_time_ms"]))

        findings = []
        for endpoint, samples in sorted(latencies.items()):
            count = len(samples)
            if count <= cfg.min_samples:
                continue
            mean = sum(samples) / count
            p95 = percentile(samples, 95)
            if mean < cfg.slow_ms and p95 < cfg.slow_ms:
                continue
            findings.append(
                Finding(
                    category=Category.PERFORMANCE,
                    severity=(
                        Severity.HIGH if mean >= cfg.critical_ms else Severity.MEDIUM
                    ),
                    description=(
                        f"Slow endpoint {endpoint}: latency at or above {cfg.slow_ms}ms"
                    ),
                    location=endpoint,
                    detection_method="performance_analysis",
                    evidence={
                        "count": count,
                        "throughput_per_minute": round(
                            count / cfg.error_window_minutes, 3
                        ),
                        "mean_ms": round(mean, 1),
                        "p95_ms": round(p95, 1),
                    },
                )
            )
        return ScanOk(findings)


class DataIntegrityValidator:
    """Runs declarative consistency checks against the relational store."""

    name = "data_integrity_validator"

    def __init__(
        self,
        checks: list[IntegrityCheck] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._checks = checks
        self._http_client = http_client

    def checks(self, ctx: EngineContext) -> list[IntegrityCheck]:
        if self._checks is None:
            self._checks = load_integrity_checks(ctx.config.detectors.integrity_checks_path)
        return self._checks

    async def scan(self, ctx: EngineContext) -> ScanResult:
        findings = []
        for check in self.checks(ctx):
            finding = await self.run_check(ctx, check)
            if finding is not None:
                findings.append(finding)
        return ScanOk(findings)

    async def run_check(
        self, ctx: EngineContext, check: IntegrityCheck
    ) -> Finding | None:
        if check.kind == "orphan":
            rows = await find_orphans(ctx.db, check)
            description = f"{len(rows)} orphaned rows in {check.location}"
        elif check.kind == "missing_timestamp":
            rows = await find_missing_timestamps(ctx.db, check)
            description = f"{len(rows)} rows missing {check.location}"
        else:
            return await self._probe_endpoint(ctx, check)

        if not rows:
            return None
        return self._finding(
            check,
            description,
            {"violations": len(rows), "sample_keys": [r[check.key] for r in rows[:10]]},
        )

    async def _probe_endpoint(
        self, ctx: EngineContext, check: IntegrityCheck
    ) -> Finding | None:
        client = self._http_client or httpx.AsyncClient(
            timeout=ctx.config.detectors.timeout_seconds / 2
        )
        try:
            response = await client.get(check.url)
            if response.status_code in check.expect_status:
                return None
            if response.status_code < 500:
                logger.info(
                    "Endpoint %s answered %d; treating as reachable",
                    check.url,
                    response.status_code,
                )
                return None
            detail = f"HTTP {response.status_code}"
        except httpx.HTTPError as e:
            detail = type(e).__name__
        finally:
            if self._http_client is None:
                await client.aclose()

        return self._finding(
            check,
            f"Endpoint {check.url} unreachable",
            {"violations": 1, "detail": detail},
        )

    @staticmethod
    def _finding(
        check: IntegrityCheck, description: str, evidence: dict[str, Any]
    ) -> Finding:
        return Finding(
            category=Category.DATA_INTEGRITY,
            severity=check.severity,
            description=description,
            location=check.location,
            detection_method=f"integrity_check:{check.kind}",
            evidence={"check": check.to_dict(), **evidence},
        )


def default_detectors() -> list[Detector]:
    """The registered detectors, in execution order."""
    log_source = TableLogSource()
    return [
        ErrorMonitor(log_source),
        PerformanceAnalyzer(log_source),
        DataIntegrityValidator(),
    ]


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


async def run_detector(ctx: EngineContext, detector: Detector) -> ScanResult:
    """Run one detector under the configured timeout, capturing failures."""
    timeout = ctx.config.detectors.timeout_seconds
    try:
        return await asyncio.wait_for(detector.scan(ctx), timeout=timeout)
    except TimeoutError:
        return ScanFailed(
            DetectorError(detector.name, f"timed out after {timeout:g}s", timed_out=True)
        )
    except Exception as e:
        logger.warning("Detector %s raised", detector.name, exc_info=True)
        return ScanFailed(DetectorError(detector.name, f"{type(e).__name__}: {e}"))


def failure_finding(error: DetectorError) -> Finding:
    """Represent a failed detector as an ``error`` finding."""
    return Finding(
        category=Category.ERROR,
        severity=Severity.HIGH,
        description=f"Detector {error.detector} failed: {error.message}",
        location=f"detector:{error.detector}",
        detection_method=DETECTOR_FAILURE_METHOD,
        evidence={"detector": error.detector, "timed_out": error.timed_out},
    )


@dataclass
class DetectionSummary:
    """What one detection pass did to the finding store."""

    created: list[Finding] = field(default_factory=list)
    refreshed: list[Finding] = field(default_factory=list)
    failures: list[DetectorError] = field(default_factory=list)

    @property
    def findings(self) -> list[Finding]:
        return self.created + self.refreshed


async def detect(
    ctx: EngineContext,
    detectors: list[Detector] | None = None,
    store: FindingStore | None = None,
) -> DetectionSummary:
    """Run every detector in order and persist what they found."""
    store = store or FindingStore(ctx)
    summary = DetectionSummary()

    for detector in detectors if detectors is not None else default_detectors():
        result = await run_detector(ctx, detector)
        if isinstance(result, ScanFailed):
            logger.error("Detector %s failed: %s", detector.name, result.error.message)
            summary.failures.append(result.error)
            candidates = [failure_finding(result.error)]
        else:
            candidates = result.findings
            logger.info("Detector %s produced %d finding(s)", detector.name, len(candidates))

        for candidate in candidates:
            upserted = await store.dedupe_upsert(candidate.compute_fingerprint(), candidate)
            if upserted.created:
                summary.created.append(upserted.finding)
            else:
                summary.refreshed.append(upserted.finding)

    return summary
