"""Sync agent control surface.

This module provides:
- SyncAgent: builds the sync engine from an AgentConfig and exposes the
  operations used by a UI or the CLI

Outbound events are plain listener callbacks:
- transfer updates: ``listener(list[Transfer])``
- auth expiry: ``listener()``
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from bucketsync.client.activity import ActivityLog
from bucketsync.client.api import CoordinationClient
from bucketsync.client.catalog import LocalCatalog, SearchResult, SyncActivity
from bucketsync.client.guard import WatcherGuard
from bucketsync.client.remote import BucketStorage
from bucketsync.client.status import Transfer, TransferListener, TransferStatusRegistry
from bucketsync.client.sync.download import DownloadPipeline
from bucketsync.client.sync.reconciler import Reconciler
from bucketsync.client.sync.scheduler import SyncScheduler
from bucketsync.client.sync.types import CycleResult
from bucketsync.client.watcher import ChangeCallback, GuardedWatcher
from bucketsync.core.config import AgentConfig
from bucketsync.core.types import SchedulerState

logger = logging.getLogger(__name__)


class SyncAgent:
    """Local sync agent wiring catalog, engine and status tracking together.

    Usage:
        agent = SyncAgent(AgentConfig(root_path=Path("~/Buckets"), server_url=url))
        agent.subscribe_transfers(render)
        agent.add_auth_expired_listener(prompt_login)
        agent.init_sync(token)
        ...
        agent.close()
    """

    def __init__(self, config: AgentConfig, client: CoordinationClient | None = None) -> None:
        """Build the engine.

        Args:
            config: Agent configuration.
            client: Coordination client; built from ``config`` when omitted.

        Raises:
            CatalogInitializationError: If the catalog cannot be opened.
        """
        self._config = config
        self._catalog = LocalCatalog(config.db_path)
        self._client = client or CoordinationClient(config.server_config())
        self._guard = WatcherGuard()
        self._transfers = TransferStatusRegistry(
            throttle=config.notify_throttle,
            grace_period=config.transfer_grace_period,
        )
        self._activity_log = ActivityLog(self._catalog, config.activity_retention_days)
        self._pipeline = DownloadPipeline(
            self._client, self._transfers, self._guard, config.stability_delay
        )
        self._reconciler = Reconciler(
            self._client,
            self._catalog,
            self._pipeline,
            self._activity_log,
            config.root_path,
            manifest_max_retries=config.manifest_max_retries,
            manifest_retry_backoff=config.manifest_retry_backoff,
        )
        self._scheduler = SyncScheduler(
            self._client, self._reconciler, self._activity_log, config.sync_interval
        )
        self._storage = BucketStorage(
            self._catalog, self._activity_log, config.encryption_key_bytes
        )
        self._auth_listeners: list[Callable[[], None]] = []

        self._activity_log.prune()

    @property
    def config(self) -> AgentConfig:
        """Agent configuration."""
        return self._config

    @property
    def catalog(self) -> LocalCatalog:
        """Local metadata catalog."""
        return self._catalog

    @property
    def guard(self) -> WatcherGuard:
        """Guard shared with filesystem watchers."""
        return self._guard

    @property
    def storage(self) -> BucketStorage:
        """Remote deletion helper."""
        return self._storage

    @property
    def state(self) -> SchedulerState:
        """Scheduler state."""
        return self._scheduler.state

    # === Sync control ===

    def init_sync(self, token: str) -> None:
        """Start immediate and periodic syncing with ``token``."""
        self._scheduler.init(token, on_auth_expired=self._emit_auth_expired, guard=self._guard)

    def stop_sync(self) -> None:
        """Stop scheduling cycles."""
        self._scheduler.stop()

    def force_sync(self, block: bool = False) -> CycleResult | None:
        """Run a cycle now unless one is already running."""
        return self._scheduler.force_sync(block=block)

    def run_once(self, token: str) -> CycleResult | None:
        """Run a single cycle in the calling thread, without the periodic timer."""
        self._scheduler.set_token(token, on_auth_expired=self._emit_auth_expired)
        return self._scheduler.run_sync()

    # === Queries ===

    def get_active_transfers(self) -> list[Transfer]:
        """Snapshot of active and recently finished transfers."""
        return self._transfers.get_transfers()

    def get_local_sync_activities(self, limit: int = 200) -> list[SyncActivity]:
        """Most recent activity rows, newest first."""
        return self._activity_log.list_activities(limit)

    def search_files(self, query: str, limit: int = 30) -> list[SearchResult]:
        """Search the catalog by file name."""
        return self._catalog.search_files(query, limit)

    # === Remote deletion ===

    def delete_remote(self, bucket_id: str, key: str) -> int:
        """Delete an object, or a whole folder when ``key`` names a folder row.

        Returns:
            Number of objects deleted.
        """
        row = self._catalog.get_file_by_key(bucket_id, key)
        if key.endswith("/") or (row is not None and row.is_folder):
            return self._storage.delete_prefix(bucket_id, key)
        self._storage.delete_object(bucket_id, key)
        return 1

    # === Events ===

    def subscribe_transfers(self, listener: TransferListener) -> None:
        """Receive transfer snapshots on every change."""
        self._transfers.subscribe(listener)

    def add_auth_expired_listener(self, listener: Callable[[], None]) -> None:
        """Be notified once when the coordination service rejects the token."""
        self._auth_listeners.append(listener)

    def watch(self, on_change: ChangeCallback) -> GuardedWatcher:
        """Build a watcher of the mirror root that honors the guard."""
        self._config.root_path.mkdir(parents=True, exist_ok=True)
        return GuardedWatcher(self._config.root_path, self._guard, on_change)

    def _emit_auth_expired(self) -> None:
        for listener in list(self._auth_listeners):
            try:
                listener()
            except Exception:
                logger.exception("Auth expired listener failed")

    def close(self) -> None:
        """Stop syncing and release resources."""
        self._scheduler.stop()
        self._transfers.close()
        self._guard.clear()
        self._client.close()
        self._catalog.close()
