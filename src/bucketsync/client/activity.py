"""Sync activity audit log.

This module provides:
- ActivityLog: records sync actions into the catalog, flushes and prunes them

Rows are written to the catalog as soon as they are logged (``synced`` is
false). ``flush()`` runs at the end of every sync cycle: it hands the
unsynced rows to an optional publisher (the push towards the coordination
service), marks them synced and prunes the table.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from typing import TYPE_CHECKING

from bucketsync.client.catalog import SyncActivity
from bucketsync.core.config import DEFAULT_RETENTION_DAYS
from bucketsync.core.types import ActivityAction, ActivityStatus

if TYPE_CHECKING:
    from bucketsync.client.catalog import LocalCatalog

logger = logging.getLogger(__name__)

ActivityPublisher = Callable[[list[SyncActivity]], None]


class ActivityLog:
    """Append-mostly record of sync actions, bounded by pruning."""

    def __init__(
        self,
        catalog: LocalCatalog,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        publisher: ActivityPublisher | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the activity log.

        Args:
            catalog: Catalog holding the activity table.
            retention_days: Rows older than this are pruned.
            publisher: Optional callable receiving unsynced rows on flush.
            clock: Time source (epoch seconds).
        """
        self._catalog = catalog
        self._retention_seconds = retention_days * 24 * 3600.0
        self._publisher = publisher
        self._clock = clock

    def log_activity(
        self,
        action: ActivityAction,
        file_name: str,
        status: ActivityStatus,
        error: str | None = None,
    ) -> SyncActivity | None:
        """Record one sync action.

        SKIP actions are never recorded.

        Returns:
            The stored row, or None for SKIP.
        """
        if action is ActivityAction.SKIP:
            return None

        activity = SyncActivity(
            id=str(uuid.uuid4()),
            action=action,
            file_name=file_name,
            status=status,
            created_at=self._clock(),
            error=error,
        )
        self._catalog.insert_activity(activity)
        logger.debug("Activity %s %s %s", action.value, status.value, file_name)
        return activity

    def flush(self) -> int:
        """Publish unsynced rows, mark them synced and prune the log.

        If the publisher raises, rows stay unsynced for the next flush and
        the error propagates.

        Returns:
            Number of rows marked synced.
        """
        pending = self._catalog.list_activities(limit=1000, unsynced_only=True)
        marked = 0
        if pending:
            if self._publisher is not None:
                self._publisher(pending)
            marked = self._catalog.mark_activities_synced([a.id for a in pending])
            logger.debug("Flushed %d activities", marked)
        self.prune()
        return marked

    def prune(self) -> int:
        """Drop SKIP rows, duplicate triples and rows past retention.

        Returns:
            Number of rows deleted.
        """
        cutoff = self._clock() - self._retention_seconds
        deleted = self._catalog.prune_activities(cutoff)
        if deleted:
            logger.info("Pruned %d activity rows", deleted)
        return deleted

    def list_activities(self, limit: int = 200) -> list[SyncActivity]:
        """Most recent activity rows, newest first."""
        return self._catalog.list_activities(limit=limit)
