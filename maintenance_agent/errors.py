"""Exception taxonomy for the maintenance engine.

Only AuthError is surfaced to a trigger caller. Everything else is absorbed
by the engine and persisted as data (error findings, failed tasks).
"""

from __future__ import annotations

from typing import Any


class MaintenanceError(Exception):
    """Base class for engine errors."""


class AuthError(MaintenanceError):
    """Trigger credential was missing or invalid."""


class DetectorError(MaintenanceError):
    """A detector failed or timed out."""

    def __init__(self, detector: str, message: str, *, timed_out: bool = False):
        super().__init__(f"{detector}: {message}")
        self.detector = detector
        self.message = message
        self.timed_out = timed_out


class ExecutionError(MaintenanceError):
    """A task's action could not be carried out.

    ``result`` holds what the action recorded before it failed, such as the
    prior values of rows it already changed; it is kept on the failed task.
    """

    def __init__(self, message: str, *, result: dict[str, Any] | None = None):
        super().__init__(message)
        self.result = result


class ConflictError(MaintenanceError):
    """A write violated a unique constraint in the backing store."""
