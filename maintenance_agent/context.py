"""Explicit per-invocation context threaded through every component.

Replaces process-wide singleton state: the store handle, configuration
and clock travel with each call, so claim and staleness logic can be
exercised against a fixed clock without a live scheduler.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from uuid import uuid4

from .config import Config, get_config
from .db import DatabaseClient, get_db


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class EngineContext:
    """Everything one tick needs: store, configuration, clock and identity."""

    db: DatabaseClient
    config: Config
    clock: Callable[[], datetime] = utc_now
    invocation_id: str = field(default_factory=lambda: uuid4().hex)

    def now(self) -> datetime:
        return self.clock()

    @classmethod
    def from_globals(cls) -> EngineContext:
        """Build a context from the lazily loaded global config and client."""
        return cls(db=get_db(), config=get_config())
