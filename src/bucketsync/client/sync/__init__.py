"""Sync engine: manifest reconciliation and downloads.

Architecture:
    SyncScheduler → Reconciler → DownloadPipeline
                        │              │
                        ▼              ├──► WatcherGuard
                   LocalCatalog        └──► TransferStatusRegistry
                        ▲
                   ActivityLog (flushed at cycle end)

Components:
- **SyncScheduler**: Immediate + periodic cycles, single-flight, auth expiry
- **Reconciler**: Walks the manifest, upserts metadata, skips or downloads files
- **DownloadPipeline**: Capability URL fetch and streamed write of one object
"""

from bucketsync.client.sync.download import DownloadPipeline
from bucketsync.client.sync.reconciler import Reconciler
from bucketsync.client.sync.retry import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_INITIAL_BACKOFF,
    DEFAULT_MAX_BACKOFF,
    DEFAULT_MAX_RETRIES,
    retry_with_backoff,
)
from bucketsync.client.sync.scheduler import SyncScheduler
from bucketsync.client.sync.types import (
    BucketResult,
    CycleResult,
    DirectoryCreationError,
    DownloadError,
    DownloadResult,
    ManifestFetchError,
    SyncError,
)

__all__ = [
    # Engine
    "DownloadPipeline",
    "Reconciler",
    "SyncScheduler",
    # Retry
    "DEFAULT_BACKOFF_MULTIPLIER",
    "DEFAULT_INITIAL_BACKOFF",
    "DEFAULT_MAX_BACKOFF",
    "DEFAULT_MAX_RETRIES",
    "retry_with_backoff",
    # Types
    "BucketResult",
    "CycleResult",
    "DirectoryCreationError",
    "DownloadError",
    "DownloadResult",
    "ManifestFetchError",
    "SyncError",
]
