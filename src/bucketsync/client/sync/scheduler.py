"""Sync lifecycle scheduling.

This module provides:
- SyncScheduler: immediate and periodic sync cycles with single-flight
  execution, auth-expiry handling and stop/force-run control

States:
    STOPPED ──init()──► IDLE ◄──► RUNNING
       ▲                  │
       └──stop() / 401 ───┘

Only one cycle runs at a time. A trigger arriving while a cycle is running
is dropped, not queued. stop() prevents future cycles but an in-flight cycle
runs to completion or natural failure.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING

from bucketsync.client.api import AuthenticationError
from bucketsync.client.sync.types import ManifestFetchError
from bucketsync.core.config import DEFAULT_SYNC_INTERVAL
from bucketsync.core.types import SchedulerState

if TYPE_CHECKING:
    from bucketsync.client.activity import ActivityLog
    from bucketsync.client.api import CoordinationClient
    from bucketsync.client.guard import WatcherGuard
    from bucketsync.client.sync.reconciler import Reconciler
    from bucketsync.client.sync.types import CycleResult

logger = logging.getLogger(__name__)

AuthExpiredCallback = Callable[[], None]


class SyncScheduler:
    """Owns the sync loop of the agent.

    Usage:
        scheduler = SyncScheduler(client, reconciler, activity_log, interval=300)
        scheduler.init(token, on_auth_expired=prompt_login, guard=guard)
        ...
        scheduler.force_sync()
        scheduler.stop()
    """

    def __init__(
        self,
        client: CoordinationClient,
        reconciler: Reconciler,
        activity_log: ActivityLog,
        interval: float = DEFAULT_SYNC_INTERVAL,
    ) -> None:
        """Initialize the scheduler.

        Args:
            client: Coordination client receiving the bearer token.
            reconciler: Runs one reconciliation pass per cycle.
            activity_log: Flushed at the end of every cycle.
            interval: Seconds between two scheduled cycles.
        """
        self._client = client
        self._reconciler = reconciler
        self._activity_log = activity_log
        self._interval = interval

        self._token: str | None = None
        self._on_auth_expired: AuthExpiredCallback | None = None
        self._cycle_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._stop_event: threading.Event | None = None
        self._thread: threading.Thread | None = None

    @property
    def state(self) -> SchedulerState:
        """Current lifecycle state."""
        with self._state_lock:
            if self._stop_event is None or self._stop_event.is_set():
                return SchedulerState.STOPPED
        if self._cycle_lock.locked():
            return SchedulerState.RUNNING
        return SchedulerState.IDLE

    @property
    def interval(self) -> float:
        """Seconds between two scheduled cycles."""
        return self._interval

    def init(
        self,
        token: str,
        on_auth_expired: AuthExpiredCallback | None = None,
        guard: WatcherGuard | None = None,
    ) -> None:
        """Start syncing with a fresh token.

        Runs one cycle immediately in the background, then one every
        ``interval`` seconds. Calling init() again replaces the token and
        restarts the timer.

        Args:
            token: Bearer token for the coordination service.
            on_auth_expired: Called once when the token is rejected.
            guard: WatcherGuard shared with the filesystem watcher.
        """
        stop_event = threading.Event()
        with self._state_lock:
            if self._stop_event is not None:
                self._stop_event.set()
            self._token = token
            self._on_auth_expired = on_auth_expired
            self._stop_event = stop_event
            self._client.set_token(token)
            if guard is not None:
                self._reconciler.pipeline.guard = guard

            self._thread = threading.Thread(
                target=self._run_loop,
                args=(stop_event,),
                name="SyncScheduler",
                daemon=True,
            )
            self._thread.start()
        logger.info(f"Sync scheduler started (every {self._interval:.0f}s)")

    def set_token(
        self,
        token: str,
        on_auth_expired: AuthExpiredCallback | None = None,
    ) -> None:
        """Set the token and auth-expiry callback without arming the timer.

        Cycles then only run through run_sync() or force_sync().
        """
        with self._state_lock:
            self._token = token
            self._on_auth_expired = on_auth_expired
            self._client.set_token(token)

    def stop(self) -> None:
        """Cancel future cycles and forget the token.

        An in-flight cycle is not interrupted.
        """
        with self._state_lock:
            if self._stop_event is not None:
                self._stop_event.set()
            self._token = None
            self._thread = None
        logger.info("Sync scheduler stopped")

    def run_sync(self) -> CycleResult | None:
        """Run one sync cycle unless one is already running or no token is set.

        Cycle-level errors are logged here and never propagate.

        Returns:
            The cycle result, or None if the cycle did not run or failed.
        """
        if not self._token:
            logger.debug("No token set, skipping sync cycle")
            return None
        if not self._cycle_lock.acquire(blocking=False):
            logger.debug("Sync cycle already running, trigger dropped")
            return None

        try:
            return self._reconciler.sync_all()
        except AuthenticationError as e:
            logger.warning(f"Authentication expired: {e}")
            self._handle_auth_expired()
        except ManifestFetchError as e:
            logger.error(f"Sync cycle aborted: {e}")
        except Exception:
            logger.exception("Sync cycle failed")
        finally:
            try:
                self._activity_log.flush()
            except Exception:
                logger.exception("Failed to flush activity log")
            self._cycle_lock.release()
        return None

    def force_sync(self, block: bool = False) -> CycleResult | None:
        """Trigger an out-of-band cycle, honoring the single-flight rule.

        Args:
            block: Run in the calling thread and return the result.

        Returns:
            The cycle result when ``block`` is true, else None.
        """
        if block:
            return self.run_sync()
        threading.Thread(target=self.run_sync, name="SyncScheduler-force", daemon=True).start()
        return None

    def _run_loop(self, stop_event: threading.Event) -> None:
        """Run a cycle now, then every interval until ``stop_event`` is set."""
        self.run_sync()
        while not stop_event.wait(self._interval):
            self.run_sync()

    def _handle_auth_expired(self) -> None:
        with self._state_lock:
            callback = self._on_auth_expired
            self._on_auth_expired = None
        self.stop()
        if callback is None:
            return
        try:
            callback()
        except Exception:
            logger.exception("Auth expired callback failed")
