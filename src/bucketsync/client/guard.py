"""Watcher guard interlock.

This module provides:
- WatcherGuard: synchronized set of local paths currently written by the engine

A filesystem watcher consults ``is_held()`` before treating an event as a
user change worth uploading, so files written by a download never loop back
as uploads. The engine is the only writer; the watcher only reads.
"""

from __future__ import annotations

import logging
import os
import threading
from collections import Counter
from pathlib import Path

logger = logging.getLogger(__name__)


def normalize_path(path: str | os.PathLike[str]) -> str:
    """Normalize a path to the absolute form used as guard key."""
    return os.path.normpath(os.path.abspath(os.fspath(path)))


class WatcherGuard:
    """Thread-safe set of held paths.

    Holds are counted, so two overlapping downloads of the same path keep it
    held until both released it.
    """

    def __init__(self) -> None:
        self._held: Counter[str] = Counter()
        self._lock = threading.Lock()
        self._timers: set[threading.Timer] = set()

    def acquire(self, path: str | Path) -> None:
        """Hold a path."""
        key = normalize_path(path)
        with self._lock:
            self._held[key] += 1
        logger.debug("Guard acquired: %s", key)

    def release(self, path: str | Path) -> None:
        """Release one hold on a path. Releasing an unheld path is a no-op."""
        key = normalize_path(path)
        with self._lock:
            if self._held[key] <= 1:
                self._held.pop(key, None)
            else:
                self._held[key] -= 1
        logger.debug("Guard released: %s", key)

    def release_after(self, path: str | Path, delay: float) -> None:
        """Release one hold on a path once ``delay`` seconds have passed."""
        if delay <= 0:
            self.release(path)
            return

        def _fire() -> None:
            with self._lock:
                self._timers.discard(timer)
            self.release(path)

        timer = threading.Timer(delay, _fire)
        timer.daemon = True
        with self._lock:
            self._timers.add(timer)
        timer.start()

    def is_held(self, path: str | Path) -> bool:
        """Check if a path is currently held by the engine."""
        key = normalize_path(path)
        with self._lock:
            return self._held.get(key, 0) > 0

    def held_paths(self) -> list[str]:
        """Snapshot of the held paths."""
        with self._lock:
            return sorted(self._held)

    def clear(self) -> None:
        """Cancel pending delayed releases and drop every hold."""
        with self._lock:
            timers = list(self._timers)
            self._timers.clear()
            self._held.clear()
        for timer in timers:
            timer.cancel()
