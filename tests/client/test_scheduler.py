"""Tests for the sync scheduler."""

from __future__ import annotations

import threading
import time
from unittest.mock import MagicMock

import pytest

from bucketsync.client.api import AuthenticationError
from bucketsync.client.guard import WatcherGuard
from bucketsync.client.sync.scheduler import SyncScheduler
from bucketsync.client.sync.types import CycleResult, ManifestFetchError
from bucketsync.core.types import SchedulerState


def wait_until(predicate, timeout: float = 5.0) -> bool:  # type: ignore[no-untyped-def]
    """Poll until predicate() is true or timeout expires."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def reconciler() -> MagicMock:
    """Mock reconciler returning an empty cycle."""
    r = MagicMock()
    r.sync_all.return_value = CycleResult()
    return r


@pytest.fixture
def scheduler(reconciler: MagicMock) -> SyncScheduler:
    """Create a scheduler with a long interval."""
    s = SyncScheduler(MagicMock(), reconciler, MagicMock(), interval=3600)
    yield s
    s.stop()


class TestRunSync:
    """Tests for SyncScheduler.run_sync."""

    def test_no_token_skips(self, scheduler: SyncScheduler, reconciler: MagicMock) -> None:
        """Should not run a cycle without a token."""
        assert scheduler.run_sync() is None
        reconciler.sync_all.assert_not_called()

    def test_runs_cycle_and_flushes(self, scheduler: SyncScheduler, reconciler: MagicMock) -> None:
        """Should return the cycle result and flush the activity log."""
        scheduler.set_token("tok")

        result = scheduler.run_sync()

        assert result is reconciler.sync_all.return_value
        scheduler._activity_log.flush.assert_called_once()  # type: ignore[attr-defined]
        scheduler._client.set_token.assert_called_once_with("tok")  # type: ignore[attr-defined]

    def test_single_flight(self, scheduler: SyncScheduler, reconciler: MagicMock) -> None:
        """Should drop triggers while a cycle is running."""
        started = threading.Event()
        release = threading.Event()

        def slow_cycle() -> CycleResult:
            started.set()
            release.wait(5.0)
            return CycleResult()

        reconciler.sync_all.side_effect = slow_cycle
        scheduler.set_token("tok")
        worker = threading.Thread(target=scheduler.run_sync)
        worker.start()
        assert started.wait(5.0)

        assert scheduler.run_sync() is None
        release.set()
        worker.join(5.0)

        assert reconciler.sync_all.call_count == 1

    def test_manifest_error_logged(self, scheduler: SyncScheduler, reconciler: MagicMock) -> None:
        """Should swallow ManifestFetchError and still flush."""
        reconciler.sync_all.side_effect = ManifestFetchError("unreachable")
        scheduler.set_token("tok")

        assert scheduler.run_sync() is None
        scheduler._activity_log.flush.assert_called_once()  # type: ignore[attr-defined]

    def test_unexpected_error_releases_lock(
        self, scheduler: SyncScheduler, reconciler: MagicMock
    ) -> None:
        """Should allow the next cycle after an unexpected failure."""
        reconciler.sync_all.side_effect = [RuntimeError("boom"), CycleResult()]
        scheduler.set_token("tok")

        assert scheduler.run_sync() is None
        assert scheduler.run_sync() is not None

    def test_flush_failure_logged(self, scheduler: SyncScheduler) -> None:
        """Should not propagate activity flush failures."""
        scheduler._activity_log.flush.side_effect = RuntimeError("offline")  # type: ignore[attr-defined]
        scheduler.set_token("tok")

        assert scheduler.run_sync() is not None


class TestAuthExpiry:
    """Tests for token rejection handling."""

    def test_callback_once_and_stopped(
        self, scheduler: SyncScheduler, reconciler: MagicMock
    ) -> None:
        """Should stop the scheduler and call the callback exactly once."""
        reconciler.sync_all.side_effect = AuthenticationError("expired", 401)
        callback = MagicMock()
        scheduler.set_token("tok", on_auth_expired=callback)

        scheduler.run_sync()
        scheduler.run_sync()

        callback.assert_called_once()
        assert scheduler.state is SchedulerState.STOPPED
        assert reconciler.sync_all.call_count == 1

    def test_periodic_timer_cancelled(self, reconciler: MagicMock) -> None:
        """Should fire no further cycles after a rejected manifest request."""
        reconciler.sync_all.side_effect = AuthenticationError("expired", 401)
        callback = MagicMock()
        scheduler = SyncScheduler(MagicMock(), reconciler, MagicMock(), interval=0.05)

        scheduler.init("tok", on_auth_expired=callback)

        assert wait_until(lambda: callback.call_count == 1)
        time.sleep(0.5)
        assert reconciler.sync_all.call_count == 1
        callback.assert_called_once()
        assert scheduler.state is SchedulerState.STOPPED
        scheduler.stop()

    def test_failing_callback_isolated(
        self, scheduler: SyncScheduler, reconciler: MagicMock
    ) -> None:
        """Should log callback failures without raising."""
        reconciler.sync_all.side_effect = AuthenticationError("expired", 401)
        scheduler.set_token("tok", on_auth_expired=MagicMock(side_effect=RuntimeError("ui gone")))

        assert scheduler.run_sync() is None


class TestLifecycle:
    """Tests for init, stop and force_sync."""

    def test_initial_state(self, scheduler: SyncScheduler) -> None:
        """Should start STOPPED."""
        assert scheduler.state is SchedulerState.STOPPED
        assert scheduler.interval == 3600

    def test_init_runs_immediately(self, scheduler: SyncScheduler, reconciler: MagicMock) -> None:
        """Should run the first cycle right away and then become IDLE."""
        scheduler.init("tok")

        assert wait_until(lambda: reconciler.sync_all.call_count == 1)
        assert wait_until(lambda: scheduler.state is SchedulerState.IDLE)

    def test_init_wires_guard(self, scheduler: SyncScheduler, reconciler: MagicMock) -> None:
        """Should hand the shared guard to the download pipeline."""
        guard = WatcherGuard()

        scheduler.init("tok", guard=guard)

        assert reconciler.pipeline.guard is guard

    def test_periodic_cycles(self, reconciler: MagicMock) -> None:
        """Should keep running cycles every interval."""
        scheduler = SyncScheduler(MagicMock(), reconciler, MagicMock(), interval=0.05)
        scheduler.init("tok")

        assert wait_until(lambda: reconciler.sync_all.call_count >= 3)
        scheduler.stop()

    def test_stop_prevents_future_cycles(self, reconciler: MagicMock) -> None:
        """Should not run cycles after stop()."""
        scheduler = SyncScheduler(MagicMock(), reconciler, MagicMock(), interval=0.05)
        scheduler.init("tok")
        assert wait_until(lambda: reconciler.sync_all.call_count >= 1)

        scheduler.stop()
        time.sleep(0.1)
        count = reconciler.sync_all.call_count
        time.sleep(0.2)

        assert reconciler.sync_all.call_count == count
        assert scheduler.state is SchedulerState.STOPPED
        assert scheduler.run_sync() is None

    def test_force_sync_blocking(self, scheduler: SyncScheduler, reconciler: MagicMock) -> None:
        """Should run inline and return the result."""
        scheduler.set_token("tok")

        assert scheduler.force_sync(block=True) is reconciler.sync_all.return_value

    def test_force_sync_background(self, scheduler: SyncScheduler, reconciler: MagicMock) -> None:
        """Should run the cycle in a background thread."""
        scheduler.set_token("tok")

        assert scheduler.force_sync() is None
        assert wait_until(lambda: reconciler.sync_all.call_count == 1)
