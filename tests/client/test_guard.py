"""Tests for the watcher guard interlock."""

from __future__ import annotations

import threading
import time
from pathlib import Path

from bucketsync.client.guard import WatcherGuard, normalize_path


class TestNormalizePath:
    """Tests for guard key normalization."""

    def test_relative_and_absolute_match(self, tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
        """Should map relative and absolute spellings to one key."""
        monkeypatch.chdir(tmp_path)
        assert normalize_path("a/../b.txt") == normalize_path(tmp_path / "b.txt")


class TestWatcherGuard:
    """Tests for WatcherGuard."""

    def test_acquire_release(self, tmp_path: Path) -> None:
        """Should hold a path between acquire and release."""
        guard = WatcherGuard()
        path = tmp_path / "file.txt"

        assert guard.is_held(path) is False
        guard.acquire(path)
        assert guard.is_held(path) is True
        assert guard.is_held(str(path)) is True
        guard.release(path)
        assert guard.is_held(path) is False

    def test_release_unheld_is_noop(self, tmp_path: Path) -> None:
        """Should ignore releases of paths never acquired."""
        guard = WatcherGuard()
        guard.release(tmp_path / "nothing")
        assert guard.held_paths() == []

    def test_counted_holds(self, tmp_path: Path) -> None:
        """Should keep a path held until every hold is released."""
        guard = WatcherGuard()
        path = tmp_path / "file.txt"

        guard.acquire(path)
        guard.acquire(path)
        guard.release(path)
        assert guard.is_held(path) is True
        guard.release(path)
        assert guard.is_held(path) is False

    def test_release_after_delay(self, tmp_path: Path) -> None:
        """Should keep the path held until the delay has passed."""
        guard = WatcherGuard()
        path = tmp_path / "file.txt"

        guard.acquire(path)
        guard.release_after(path, 0.2)
        assert guard.is_held(path) is True

        deadline = time.time() + 5.0
        while guard.is_held(path) and time.time() < deadline:
            time.sleep(0.02)
        assert guard.is_held(path) is False

    def test_release_after_zero_is_immediate(self, tmp_path: Path) -> None:
        """Should release at once with a zero delay."""
        guard = WatcherGuard()
        path = tmp_path / "file.txt"

        guard.acquire(path)
        guard.release_after(path, 0)
        assert guard.is_held(path) is False

    def test_clear_cancels_pending_release(self, tmp_path: Path) -> None:
        """Should drop holds and cancel delayed releases."""
        guard = WatcherGuard()
        path = tmp_path / "file.txt"

        guard.acquire(path)
        guard.release_after(path, 10.0)
        guard.clear()

        assert guard.is_held(path) is False
        assert guard.held_paths() == []

    def test_held_paths_snapshot(self, tmp_path: Path) -> None:
        """Should list held paths in normalized form."""
        guard = WatcherGuard()
        guard.acquire(tmp_path / "b.txt")
        guard.acquire(tmp_path / "a.txt")

        assert guard.held_paths() == [
            normalize_path(tmp_path / "a.txt"),
            normalize_path(tmp_path / "b.txt"),
        ]

    def test_concurrent_acquire_release(self, tmp_path: Path) -> None:
        """Should stay consistent under concurrent access."""
        guard = WatcherGuard()
        path = tmp_path / "shared.txt"

        def worker() -> None:
            for _ in range(200):
                guard.acquire(path)
                guard.release(path)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert guard.is_held(path) is False
