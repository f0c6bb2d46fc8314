"""Transfer status registry.

This module provides:
- Transfer: transient record of one download/upload
- TransferStatusRegistry: in-memory table of active and recent transfers

Architecture:
    Registry ──listeners──► UI consumer (push)
    Registry ◄──get_transfers()── UI consumer (poll)

    Lifecycle changes (start, completion, removal) notify listeners at once.
    Progress updates are coalesced: the first update inside a throttle window
    arms a timer, later ones only change state, and the timer sends a single
    snapshot when it fires.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, replace
from typing import Any

from bucketsync.core.config import DEFAULT_GRACE_PERIOD, DEFAULT_NOTIFY_THROTTLE
from bucketsync.core.types import TransferKind, TransferStatus

logger = logging.getLogger(__name__)


@dataclass
class Transfer:
    """State of one tracked transfer.

    Attributes:
        id: Unique transfer id.
        name: Display name (file name).
        type: Download or upload.
        size: Expected size in bytes (0 when unknown).
        progress: Percentage 0-100.
        loaded: Bytes transferred so far.
        status: active, done or error.
        start_time: Epoch seconds when the transfer started.
        last_update: Epoch seconds of the last progress update.
        speed: Instantaneous speed in bytes/second.
    """

    id: str
    name: str
    type: TransferKind
    size: int = 0
    progress: float = 0.0
    loaded: int = 0
    status: TransferStatus = TransferStatus.ACTIVE
    start_time: float = 0.0
    last_update: float = 0.0
    speed: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        data = asdict(self)
        data["type"] = self.type.value
        data["status"] = self.status.value
        return data


TransferListener = Callable[[list[Transfer]], None]


class TransferStatusRegistry:
    """Thread-safe table of transfers with throttled change notification.

    Usage:
        registry = TransferStatusRegistry()
        registry.subscribe(lambda transfers: render(transfers))

        registry.start_transfer("dl-1", "report.pdf", TransferKind.DOWNLOAD, 1024)
        registry.update_progress("dl-1", 50.0, 512)
        registry.complete_transfer("dl-1", TransferStatus.DONE)
    """

    def __init__(
        self,
        throttle: float = DEFAULT_NOTIFY_THROTTLE,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the registry.

        Args:
            throttle: Window in seconds for coalescing progress notifications.
            grace_period: Seconds a finished transfer stays before removal.
            clock: Time source (epoch seconds).
        """
        self._throttle = throttle
        self._grace_period = grace_period
        self._clock = clock

        self._transfers: dict[str, Transfer] = {}
        self._lock = threading.RLock()
        self._listeners: list[TransferListener] = []

        self._pending_notify: threading.Timer | None = None
        self._removal_timers: dict[str, threading.Timer] = {}

    # === Listeners ===

    def subscribe(self, listener: TransferListener) -> None:
        """Register a listener receiving transfer snapshots."""
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: TransferListener) -> None:
        """Remove a listener."""
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    # === Transfer lifecycle ===

    def start_transfer(
        self,
        transfer_id: str,
        name: str,
        transfer_type: TransferKind,
        size: int = 0,
    ) -> str:
        """Create an active transfer and notify listeners immediately.

        Returns:
            The transfer id.
        """
        now = self._clock()
        logger.debug("Starting %s: %s (%s) - size %d", transfer_type.value, name, transfer_id, size)
        with self._lock:
            self._transfers[transfer_id] = Transfer(
                id=transfer_id,
                name=name,
                type=transfer_type,
                size=size,
                start_time=now,
                last_update=now,
            )
        self._notify(immediate=True)
        return transfer_id

    def update_progress(self, transfer_id: str, progress: float, loaded: int | None = None) -> None:
        """Record progress of an active transfer.

        Progress never goes backwards; updates for unknown or finished
        transfers are ignored.

        Args:
            transfer_id: Transfer to update.
            progress: Percentage 0-100.
            loaded: Bytes transferred so far, used for the speed estimate.
        """
        with self._lock:
            transfer = self._transfers.get(transfer_id)
            if transfer is None or transfer.status.is_terminal:
                return

            now = self._clock()
            elapsed = now - transfer.last_update
            if loaded is not None and elapsed > 0:
                transfer.speed = (loaded - transfer.loaded) / elapsed
                transfer.loaded = loaded
            elif loaded is not None:
                transfer.loaded = max(transfer.loaded, loaded)

            transfer.progress = max(transfer.progress, min(progress, 100.0))
            transfer.last_update = now
        self._notify()

    def complete_transfer(self, transfer_id: str, status: TransferStatus = TransferStatus.DONE) -> None:
        """Move an active transfer to a terminal status.

        Listeners are notified immediately and the entry is removed after
        the grace period.
        """
        if not status.is_terminal:
            raise ValueError(f"Cannot complete a transfer with status {status.value}")

        with self._lock:
            transfer = self._transfers.get(transfer_id)
            if transfer is None or transfer.status.is_terminal:
                return
            transfer.status = status
            transfer.progress = 100.0
            transfer.speed = 0.0
            transfer.last_update = self._clock()

            timer = threading.Timer(self._grace_period, self._remove, args=(transfer_id,))
            timer.daemon = True
            self._removal_timers[transfer_id] = timer

        logger.debug("Completed %s with status: %s", transfer_id, status.value)
        self._notify(immediate=True)
        timer.start()

    def get_transfers(self) -> list[Transfer]:
        """Snapshot of all tracked transfers, oldest first."""
        with self._lock:
            return [replace(t) for t in self._transfers.values()]

    def get_transfer(self, transfer_id: str) -> Transfer | None:
        """Snapshot of one transfer."""
        with self._lock:
            transfer = self._transfers.get(transfer_id)
            return replace(transfer) if transfer else None

    def close(self) -> None:
        """Cancel pending timers and drop all listeners."""
        with self._lock:
            timers = list(self._removal_timers.values())
            self._removal_timers.clear()
            if self._pending_notify:
                timers.append(self._pending_notify)
                self._pending_notify = None
            self._listeners.clear()
        for timer in timers:
            timer.cancel()

    # === Internals ===

    def _remove(self, transfer_id: str) -> None:
        with self._lock:
            self._removal_timers.pop(transfer_id, None)
            removed = self._transfers.pop(transfer_id, None)
        if removed is not None:
            self._notify(immediate=True)

    def _notify(self, immediate: bool = False) -> None:
        """Send a snapshot to listeners, now or at the end of the throttle window."""
        with self._lock:
            if immediate or self._throttle <= 0:
                if self._pending_notify:
                    self._pending_notify.cancel()
                    self._pending_notify = None
            else:
                if self._pending_notify is not None:
                    return
                self._pending_notify = threading.Timer(self._throttle, self._flush_notify)
                self._pending_notify.daemon = True
                self._pending_notify.start()
                return
        self._send_update()

    def _flush_notify(self) -> None:
        with self._lock:
            self._pending_notify = None
        self._send_update()

    def _send_update(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
        if not listeners:
            return
        snapshot = self.get_transfers()
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Transfer listener failed")
