"""Shared types for bucketsync.

This module defines the enums used by the catalog, the activity log,
the transfer registry and the scheduler.
"""

from __future__ import annotations

from enum import Enum


class SchedulerState(str, Enum):
    """Lifecycle state of the sync scheduler."""

    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class ActivityAction(str, Enum):
    """Kind of action recorded in the activity log."""

    DOWNLOAD = "DOWNLOAD"
    UPLOAD = "UPLOAD"
    DELETE = "DELETE"
    SKIP = "SKIP"


class ActivityStatus(str, Enum):
    """Outcome recorded in the activity log."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class TransferKind(str, Enum):
    """Type of a tracked transfer."""

    DOWNLOAD = "download"
    UPLOAD = "upload"


class TransferStatus(str, Enum):
    """Status of a tracked transfer.

    ACTIVE is the only non-terminal status.
    """

    ACTIVE = "active"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        """Check if no further transitions are allowed."""
        return self is not TransferStatus.ACTIVE


class SyncCursorStatus(str, Enum):
    """Status stored in a per-resource sync cursor."""

    SYNCED = "synced"
    ERROR = "error"
