"""Filesystem watcher honoring the watcher guard.

This module provides:
- GuardedWatcher: watches the mirror root with watchdog and forwards user
  changes, dropping events for paths the sync engine is writing
- FileChange / ChangeType: the forwarded change record
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import (
    DirCreatedEvent,
    DirDeletedEvent,
    DirModifiedEvent,
    DirMovedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from bucketsync.client.guard import normalize_path

if TYPE_CHECKING:
    from watchdog.observers.api import BaseObserver

    from bucketsync.client.guard import WatcherGuard

logger = logging.getLogger(__name__)

STATE_DIR_NAME = ".bucketsync"


class ChangeType(Enum):
    """Type of file system change."""

    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"
    MOVED = "moved"


@dataclass
class FileChange:
    """A user-initiated change under the mirror root."""

    path: Path
    change_type: ChangeType
    is_directory: bool
    timestamp: float = field(default_factory=time.time)
    dest_path: Path | None = None  # For MOVED events


ChangeCallback = Callable[[FileChange], None]


def _event_path(raw: str | bytes) -> Path:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    return Path(raw)


class GuardedEventHandler(FileSystemEventHandler):
    """Translates watchdog events, suppressing guarded and internal paths."""

    def __init__(self, base_path: Path, guard: WatcherGuard, on_change: ChangeCallback) -> None:
        super().__init__()
        self._base_path = base_path
        self._guard = guard
        self._on_change = on_change

    def _is_internal(self, path: Path) -> bool:
        try:
            rel = path.relative_to(self._base_path)
        except ValueError:
            return True
        return bool(rel.parts) and rel.parts[0] == STATE_DIR_NAME

    def handle(self, event: FileSystemEvent) -> FileChange | None:
        """Forward one event unless it is suppressed.

        Returns:
            The forwarded change, or None if the event was dropped.
        """
        if isinstance(event, FileCreatedEvent | DirCreatedEvent):
            change_type = ChangeType.CREATED
        elif isinstance(event, FileModifiedEvent | DirModifiedEvent):
            change_type = ChangeType.MODIFIED
        elif isinstance(event, FileDeletedEvent | DirDeletedEvent):
            change_type = ChangeType.DELETED
        elif isinstance(event, FileMovedEvent | DirMovedEvent):
            change_type = ChangeType.MOVED
        else:
            return None

        path = _event_path(event.src_path)
        dest_path = None
        if change_type is ChangeType.MOVED:
            dest_path = _event_path(event.dest_path)

        if self._is_internal(path):
            return None
        if self._guard.is_held(path) or (dest_path and self._guard.is_held(dest_path)):
            logger.debug("Suppressed guarded event: %s %s", change_type.value, path)
            return None

        change = FileChange(
            path=path,
            change_type=change_type,
            is_directory=event.is_directory,
            dest_path=dest_path,
        )
        try:
            self._on_change(change)
        except Exception:
            logger.exception("Change callback failed for %s", path)
        return change

    def on_created(self, event: FileSystemEvent) -> None:
        """Handle created event."""
        self.handle(event)

    def on_modified(self, event: FileSystemEvent) -> None:
        """Handle modified event."""
        self.handle(event)

    def on_deleted(self, event: FileSystemEvent) -> None:
        """Handle deleted event."""
        self.handle(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        """Handle moved event."""
        self.handle(event)


class GuardedWatcher:
    """Watches the mirror root and reports changes not caused by the engine."""

    def __init__(self, watch_path: Path, guard: WatcherGuard, on_change: ChangeCallback) -> None:
        """Initialize the watcher.

        Args:
            watch_path: Mirror root to watch recursively.
            guard: Guard consulted before forwarding an event.
            on_change: Receives every forwarded change.
        """
        self._watch_path = Path(normalize_path(watch_path))
        if not self._watch_path.is_dir():
            raise ValueError(f"Watch path must be a directory: {watch_path}")

        self._handler = GuardedEventHandler(self._watch_path, guard, on_change)
        self._observer: BaseObserver = Observer()
        self._running = False

    @property
    def watch_path(self) -> Path:
        """Get the watched directory path."""
        return self._watch_path

    @property
    def handler(self) -> GuardedEventHandler:
        """Event handler attached to the observer."""
        return self._handler

    @property
    def is_running(self) -> bool:
        """Check if the watcher is running."""
        return self._running

    def start(self) -> None:
        """Start watching for changes."""
        if self._running:
            return
        self._observer.schedule(self._handler, str(self._watch_path), recursive=True)
        self._observer.start()
        self._running = True
        logger.info(f"Watching {self._watch_path}")

    def stop(self) -> None:
        """Stop watching for changes."""
        if not self._running:
            return
        self._observer.stop()
        self._observer.join(timeout=5.0)
        self._running = False

    def __enter__(self) -> GuardedWatcher:
        """Context manager entry."""
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.stop()
